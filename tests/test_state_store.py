from datetime import date
from decimal import Decimal

import pytest

from reconciliation import state_store
from reconciliation.duplicate_detector import qr_fingerprint
from reconciliation.errors import ConflictError
from reconciliation.models import DuplicateMethod, ExtractedFields


def _fields(**overrides):
    values = dict(
        issuer_tax_id="20100070970",
        document_type_code="01",
        series_number="F001-00012345",
        issue_date=date(2025, 3, 14),
        total_amount=Decimal("118.00"),
        currency="PEN",
        qr_payload="20100070970|01|F001|00012345|18.00|118.00|2025-03-14",
    )
    values.update(overrides)
    return ExtractedFields(**values)


def test_insert_and_get_document(db):
    fields = _fields()
    doc = state_store.insert_document("t1", fields, qr_fingerprint=qr_fingerprint(fields.qr_payload))

    loaded = state_store.get_document(doc.id)
    assert loaded.tenant_id == "t1"
    assert loaded.issue_date == date(2025, 3, 14)
    assert loaded.total_amount == Decimal("118.00")
    assert loaded.verified is None
    assert loaded.is_duplicate is False
    assert loaded.seq > 0


def test_qr_unique_among_originals(db):
    fields = _fields()
    fp = qr_fingerprint(fields.qr_payload)
    first = state_store.insert_document("t1", fields, qr_fingerprint=fp)

    with pytest.raises(ConflictError) as excinfo:
        state_store.insert_document("t1", fields, qr_fingerprint=fp)
    assert excinfo.value.existing_id == first.id

    # 重複として登録する行と、別テナントの原本は制約の対象外
    dup = state_store.insert_document(
        "t1", fields, qr_fingerprint=fp, duplicate_of_id=first.id, duplicate_method=DuplicateMethod.QR
    )
    assert dup.is_duplicate
    other = state_store.insert_document("t2", fields, qr_fingerprint=fp)
    assert other.is_duplicate is False


def test_find_earliest_original_orders_by_creation(db):
    a = state_store.insert_document("t1", _fields(qr_payload=None))
    state_store.insert_document("t1", _fields(qr_payload=None))

    found = state_store.find_earliest_original("t1", issuer_tax_id="20100070970", series_number="F001-00012345")
    assert found.id == a.id
    assert state_store.find_earliest_original("t1") is None


def test_save_verification_skips_duplicates(db):
    original = state_store.insert_document("t1", _fields(qr_payload=None))
    dup = state_store.insert_document(
        "t1", _fields(qr_payload=None), duplicate_of_id=original.id, duplicate_method=DuplicateMethod.COMPOSITE_KEY
    )
    kwargs = dict(
        verified=True, state_code="1", ruc_state="00", observations=["ok"], attempt_count=2, variation_used="+1day"
    )

    assert state_store.save_verification(original.id, **kwargs) is True
    assert state_store.save_verification(dup.id, **kwargs) is False

    saved = state_store.get_document(original.id)
    assert saved.verified is True
    assert saved.retry_count == 2
    assert saved.variation_used == "+1day"
    assert saved.verification_observations == ["ok"]
    assert saved.verified_at is not None
    assert state_store.get_document(dup.id).verified is None


def test_audit_log(db):
    state_store.write_audit("INFO", "u1", "approve", ["r1"], "APPROVED")
    rows = state_store.read_audit("approve")
    assert len(rows) == 1
    assert rows[0]["actor"] == "u1"
    assert rows[0]["target_ids"] == '["r1"]'


def test_transaction_keeps_original_error_after_sqlite_rollback(db):
    """SQLite 側で既にロールバックされていても元の例外がそのまま伝わる"""
    with pytest.raises(ValueError, match="boom"):
        with state_store._transaction() as con:
            state_store.write_counter(con, "X", 1, create=True)
            con.execute("ROLLBACK")
            raise ValueError("boom")
    assert state_store.read_counter("X") is None


def test_transaction_rolls_back_on_error(db):
    with pytest.raises(RuntimeError):
        with state_store._transaction() as con:
            state_store.write_counter(con, "Y", 5, create=True)
            raise RuntimeError("abort")
    assert state_store.read_counter("Y") is None
