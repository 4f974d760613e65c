from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock, patch

import requests

from reconciliation import state_store
from reconciliation.authority_client import AuthorityClient
from reconciliation.errors import ExternalServiceError
from reconciliation.ingestion import ingest_document
from reconciliation.models import DuplicateMethod, ExtractedFields, VerdictKind
from reconciliation.verifier import ExternalVerifier


QR = "20100070970|01|F001|00012345|18.00|118.00|2025-03-14|6|20601234567"


def _fields(**overrides):
    values = dict(
        issuer_tax_id="20100070970",
        document_type_code="01",
        series_number="F001-00012345",
        issue_date=date(2025, 3, 14),
        total_amount=Decimal("118.00"),
        currency="PEN",
        qr_payload=QR,
    )
    values.update(overrides)
    return ExtractedFields(**values)


def _verifier(code="1"):
    client = MagicMock()
    client.validate.return_value = {"state_code": code, "ruc_state": "00", "observations": []}
    return ExternalVerifier(client)


def test_unique_document_is_verified(db):
    result = ingest_document("t1", _fields(), verifier=_verifier("1"))

    assert result.duplicate.is_duplicate is False
    assert result.verification.verdict.kind == VerdictKind.VALID
    assert result.document.verified is True
    assert result.document.retry_count == 1


def test_duplicate_is_stored_but_not_verified(db):
    first = ingest_document("t1", _fields(), verifier=_verifier())
    verifier = _verifier()
    second = ingest_document("t1", _fields(), verifier=verifier)

    assert second.duplicate.is_duplicate
    assert second.duplicate.method == DuplicateMethod.QR
    assert second.document.duplicate_of_id == first.document.id
    assert second.verification is None
    verifier.client.validate.assert_not_called()


def test_non_verifiable_type_skips_verification(db):
    verifier = _verifier()
    result = ingest_document("t1", _fields(document_type_code="12", qr_payload=None), verifier=verifier)
    assert result.verification is None
    assert result.document.verified is None
    verifier.client.validate.assert_not_called()


def test_service_error_keeps_document_unchecked(db):
    client = MagicMock()
    client.validate.side_effect = ExternalServiceError("timeout")
    result = ingest_document("t1", _fields(), verifier=ExternalVerifier(client))

    assert result.verification is None
    assert result.verification_error == "timeout"
    assert result.document.verified is None
    assert state_store.read_audit("verify")[0]["result"] == "unchecked"


def test_concurrent_ingestion_leaves_one_original(db):
    """同じQRを同時に取り込んでも原本は1件だけ"""
    n = 10
    with ThreadPoolExecutor(max_workers=n) as pool:
        results = list(pool.map(lambda _: ingest_document("t1", _fields()), range(n)))

    originals = [r for r in results if not r.document.is_duplicate]
    assert len(originals) == 1
    original_id = originals[0].document.id
    for r in results:
        if r.document.is_duplicate:
            assert r.document.duplicate_of_id == original_id

    counts = state_store.document_counts("t1")
    assert counts["total"] == n
    assert counts["duplicates"] == n - 1


def test_non_json_authority_response_keeps_document_unchecked(db):
    tokens = MagicMock()
    tokens.get_token.return_value = "token"
    client = AuthorityClient(tokens, "20601234567", api_base_url="https://api.example", retry_delay=0)
    html = MagicMock(status_code=200, text="<html>gateway</html>")
    html.json.side_effect = requests.exceptions.JSONDecodeError("Expecting value", "<html>", 0)

    with patch("reconciliation.authority_client.requests.post", return_value=html) as post:
        result = ingest_document("t1", _fields(), verifier=ExternalVerifier(client))

    assert post.call_count == client.network_retries
    assert result.verification is None
    assert result.verification_error
    assert result.document.verified is None
