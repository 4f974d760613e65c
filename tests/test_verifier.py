from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from reconciliation import state_store
from reconciliation.errors import ExternalServiceError, ValidationError
from reconciliation.models import DuplicateMethod, ExtractedFields, VerdictKind
from reconciliation.verifier import ExternalVerifier, build_payload, build_variations


def _identity(**overrides):
    values = dict(
        issuer_tax_id="20100070970",
        document_type_code="01",
        series_number="F001-00012345",
        issue_date=date(2025, 3, 14),
        total_amount=Decimal("118.00"),
        currency="PEN",
    )
    values.update(overrides)
    return ExtractedFields(**values)


def _client(responder):
    client = MagicMock()
    client.validate.side_effect = responder
    return client


def _state(code):
    return {"state_code": code, "ruc_state": "00", "observations": []}


def test_build_payload():
    payload = build_payload(_identity())
    assert payload == {
        "numRuc": "20100070970",
        "codComp": "01",
        "numeroSerie": "F001",
        "numero": "00012345",
        "fechaEmision": "14/03/2025",
        "monto": "118.00",
    }


def test_build_payload_requires_identity_fields():
    with pytest.raises(ValidationError):
        build_payload(_identity(series_number=None))
    with pytest.raises(ValidationError):
        build_payload(_identity(series_number="F001/123"))


def test_variation_order():
    labels = [label for label, _ in build_variations(build_payload(_identity(issue_date=date(2025, 3, 11))), date(2025, 3, 11))]
    assert labels == [None, "+1day", "-1day", "day-month-swap", "amount+0.01", "amount-0.01"]

    # 日が12を超える場合は入れ替えない
    labels = [label for label, _ in build_variations(build_payload(_identity()), date(2025, 3, 14))]
    assert "day-month-swap" not in labels


def test_plus_one_day_found_on_second_attempt():
    """元データで0、翌日で1が返れば2回目で確定"""
    def responder(payload):
        return _state("1" if payload["fechaEmision"] == "15/03/2025" else "0")

    client = _client(responder)
    outcome = ExternalVerifier(client, max_attempts=6).verify_with_retries(_identity())

    assert outcome.verdict.kind == VerdictKind.VALID
    assert outcome.verified is True
    assert outcome.attempt_count == 2
    assert outcome.variation_used == "+1day"
    assert client.validate.call_count == 2


def test_always_not_found_stops_at_plan_length():
    client = _client(lambda payload: _state("0"))
    outcome = ExternalVerifier(client, max_attempts=6).verify_with_retries(_identity())

    # 14日は入れ替え対象外なので変形は5通り
    assert outcome.attempt_count == 5
    assert outcome.verdict.kind == VerdictKind.NOT_FOUND
    assert outcome.verified is False
    assert outcome.variation_used is None


def test_max_attempts_truncates_plan():
    client = _client(lambda payload: _state("0"))
    outcome = ExternalVerifier(client, max_attempts=2).verify_with_retries(_identity())
    assert outcome.attempt_count == 2
    assert client.validate.call_count == 2


def test_annulled_and_unknown_stop_with_observation():
    client = _client(lambda payload: _state("2"))
    outcome = ExternalVerifier(client).verify_with_retries(_identity())
    assert outcome.verdict.kind == VerdictKind.ANNULLED
    assert outcome.verified is False
    assert outcome.attempt_count == 1
    assert "Comprobante ANULADO" in outcome.observations

    client = _client(lambda payload: _state("9"))
    outcome = ExternalVerifier(client).verify_with_retries(_identity())
    assert outcome.verdict.kind == VerdictKind.UNKNOWN
    assert "Estado desconocido: 9" in outcome.observations


def test_non_verifiable_type_makes_no_calls():
    client = _client(lambda payload: _state("1"))
    outcome = ExternalVerifier(client).verify_with_retries(_identity(document_type_code="12"))
    assert outcome.verdict.kind == VerdictKind.NOT_APPLICABLE
    assert outcome.attempt_count == 0
    client.validate.assert_not_called()


def test_verify_document_persists_outcome(db):
    doc = state_store.insert_document("t1", _identity())

    def responder(payload):
        return _state("1" if payload["fechaEmision"] == "15/03/2025" else "0")

    ExternalVerifier(_client(responder)).verify_document(doc.id)

    saved = state_store.get_document(doc.id)
    assert saved.verified is True
    assert saved.verification_state_code == "1"
    assert saved.retry_count == 2
    assert saved.variation_used == "+1day"
    assert saved.verified_at is not None


def test_service_error_leaves_document_unchecked(db):
    doc = state_store.insert_document("t1", _identity())

    def responder(payload):
        raise ExternalServiceError("SUNAT down", status_code=503)

    with pytest.raises(ExternalServiceError):
        ExternalVerifier(_client(responder)).verify_document(doc.id)

    saved = state_store.get_document(doc.id)
    assert saved.verified is None
    assert saved.verified_at is None


def test_duplicates_are_not_verified(db):
    original = state_store.insert_document("t1", _identity())
    dup = state_store.insert_document(
        "t1", _identity(), duplicate_of_id=original.id, duplicate_method=DuplicateMethod.COMPOSITE_KEY
    )
    client = _client(lambda payload: _state("1"))
    with pytest.raises(ValidationError):
        ExternalVerifier(client).verify_document(dup.id)
    client.validate.assert_not_called()
