from datetime import date
from decimal import Decimal

import pytest

from reconciliation import duplicate_detector, state_store
from reconciliation.errors import ConcurrencyError, NotFoundError, ValidationError
from reconciliation.models import DuplicateMethod, ExtractedFields


QR = "20100070970|01|F001|00012345|18.00|118.00|2025-03-14|6|20601234567|hash"


def _register(tenant="t1", qr=QR, ruc="20100070970", series="F001-00012345"):
    fields = ExtractedFields(
        issuer_tax_id=ruc,
        document_type_code="01",
        series_number=series,
        issue_date=date(2025, 3, 14),
        total_amount=Decimal("118.00"),
        qr_payload=qr,
    )
    return state_store.insert_document(tenant, fields, qr_fingerprint=duplicate_detector.qr_fingerprint(qr))


def test_qr_match_wins_with_full_confidence(db):
    original = _register()
    result = duplicate_detector.check_duplicate("t1", qr_payload=QR, issuer_tax_id="x", series_number="y")

    assert result.is_duplicate
    assert result.method == DuplicateMethod.QR
    assert result.confidence == 100
    assert result.original_ref == original.id


def test_composite_key_match(db):
    original = _register(qr=None)
    result = duplicate_detector.check_duplicate(
        "t1", qr_payload="other-qr", issuer_tax_id="20100070970", series_number="F001-00012345"
    )

    assert result.is_duplicate
    assert result.method == DuplicateMethod.COMPOSITE_KEY
    assert result.confidence == 95
    assert result.original.id == original.id


def test_no_match_and_tenant_isolation(db):
    _register(tenant="t2")
    result = duplicate_detector.check_duplicate(
        "t1", qr_payload=QR, issuer_tax_id="20100070970", series_number="F001-00012345"
    )
    assert result.is_duplicate is False
    assert result.original is None
    assert result.method is None
    assert result.confidence == 100


def test_check_is_read_only(db):
    _register()
    before = state_store.document_counts("t1")
    for _ in range(3):
        duplicate_detector.check_duplicate("t1", qr_payload=QR)
    assert state_store.document_counts("t1") == before


def test_composite_check_requires_both_fields(db):
    with pytest.raises(ValidationError):
        duplicate_detector.check_by_composite_key("t1", "20100070970", None)


def test_mark_duplicate_rules(db):
    original = _register(qr=None)
    later = _register(qr=None)

    with pytest.raises(ValidationError):
        # 後から登録された書類を原本にはできない
        duplicate_detector.mark_duplicate(original.id, later.id, DuplicateMethod.COMPOSITE_KEY)

    marked = duplicate_detector.mark_duplicate(later.id, original.id, "COMPOSITE_KEY")
    assert marked.is_duplicate
    assert marked.duplicate_of_id == original.id

    with pytest.raises(ValidationError):
        duplicate_detector.mark_duplicate(later.id, original.id, DuplicateMethod.COMPOSITE_KEY)
    with pytest.raises(NotFoundError):
        duplicate_detector.mark_duplicate("missing", original.id, DuplicateMethod.QR)

    assert [d.id for d in duplicate_detector.get_duplicates(original.id)] == [later.id]


def test_mark_duplicate_rejects_other_tenant(db):
    original = _register(tenant="t2", qr=None)
    doc = _register(tenant="t1", qr=None)
    with pytest.raises(ValidationError):
        duplicate_detector.mark_duplicate(doc.id, original.id, DuplicateMethod.COMPOSITE_KEY)


def test_stats(db):
    assert duplicate_detector.get_stats("t1")["duplicate_rate"] == "0%"
    original = _register(qr=None)
    later = _register(qr=None)
    duplicate_detector.mark_duplicate(later.id, original.id, DuplicateMethod.COMPOSITE_KEY)

    stats = duplicate_detector.get_stats("t1")
    assert stats["total"] == 2
    assert stats["duplicates"] == 1
    assert stats["duplicate_rate"] == "50.00%"
    assert stats["by_method"] == {"COMPOSITE_KEY": 1}


def test_original_with_duplicates_cannot_be_demoted(db):
    """既に原本になっている書類を重複にすると参照先が重複になってしまう"""
    a = _register(qr=None)
    b = _register(qr=None)
    c = _register(qr=None)
    duplicate_detector.mark_duplicate(c.id, b.id, DuplicateMethod.COMPOSITE_KEY)

    with pytest.raises(ValidationError):
        duplicate_detector.mark_duplicate(b.id, a.id, DuplicateMethod.COMPOSITE_KEY)

    assert state_store.get_document(b.id).is_duplicate is False
    assert state_store.get_document(c.id).duplicate_of_id == b.id
    assert state_store.read_audit("mark_duplicate")[-1]["target_ids"] == f'["{c.id}", "{b.id}"]'


def test_duplicates_always_point_at_originals(db):
    docs = [_register(qr=None) for _ in range(4)]
    duplicate_detector.mark_duplicate(docs[1].id, docs[0].id, DuplicateMethod.COMPOSITE_KEY)
    duplicate_detector.mark_duplicate(docs[3].id, docs[2].id, DuplicateMethod.COMPOSITE_KEY)
    for target, original in ((docs[2], docs[0]), (docs[3], docs[1])):
        with pytest.raises(ValidationError):
            duplicate_detector.mark_duplicate(target.id, original.id, DuplicateMethod.COMPOSITE_KEY)

    for doc in docs:
        stored = state_store.get_document(doc.id)
        if stored.is_duplicate:
            assert state_store.get_document(stored.duplicate_of_id).is_duplicate is False


def test_mark_duplicate_lock_timeout_raises_concurrency_error(db, short_lock):
    original = _register(qr=None)
    later = _register(qr=None)
    with state_store._transaction():
        with pytest.raises(ConcurrencyError):
            duplicate_detector.mark_duplicate(later.id, original.id, DuplicateMethod.COMPOSITE_KEY)
    assert state_store.get_document(later.id).is_duplicate is False
