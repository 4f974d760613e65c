"""
OCR 抽出結果の取り込み

重複判定 → 登録 → （重複でなく検証対象の種別なら）SUNAT 検証 の順に処理する。
"""

from dataclasses import dataclass
from typing import Optional

from . import duplicate_detector, state_store
from .errors import ConflictError, ExternalServiceError, ValidationError
from .models import Document, DuplicateCheckResult, DuplicateMethod, ExtractedFields, VerificationOutcome
from .verifier import ExternalVerifier


@dataclass
class IngestionResult:
    document: Document
    duplicate: DuplicateCheckResult
    verification: Optional[VerificationOutcome] = None
    verification_error: Optional[str] = None


def _insert_as_duplicate(tenant_id: str, fields: ExtractedFields, fingerprint: Optional[str],
                         check: DuplicateCheckResult) -> Document:
    return state_store.insert_document(
        tenant_id,
        fields,
        qr_fingerprint=fingerprint,
        duplicate_of_id=check.original.id,
        duplicate_method=check.method,
    )


def ingest_document(tenant_id: str, fields: ExtractedFields,
                    verifier: Optional[ExternalVerifier] = None) -> IngestionResult:
    """1件の書類を取り込む

    同じQRを同時に取り込んだ場合、一意制約で負けた側は勝った側の重複として登録される。
    検証で ExternalServiceError が起きても登録は取り消さない（未検証のまま残す）。
    """
    if not tenant_id:
        raise ValidationError("tenant_id は必須です")

    fingerprint = duplicate_detector.qr_fingerprint(fields.qr_payload)
    check = duplicate_detector.check_duplicate(
        tenant_id,
        qr_payload=fields.qr_payload,
        issuer_tax_id=fields.issuer_tax_id,
        series_number=fields.series_number,
    )

    if check.is_duplicate:
        doc = _insert_as_duplicate(tenant_id, fields, fingerprint, check)
        state_store.write_audit(
            "INFO", "system", "ingest", [doc.id, check.original.id], f"duplicate:{check.method.value}"
        )
        return IngestionResult(document=doc, duplicate=check)

    try:
        doc = state_store.insert_document(tenant_id, fields, qr_fingerprint=fingerprint)
    except ConflictError as e:
        winner = state_store.get_document(e.existing_id) if e.existing_id else None
        if winner is None:
            raise
        print(f"⚠️ 同時登録で重複になりました: 原本 {winner.id}")
        check = DuplicateCheckResult(
            is_duplicate=True,
            confidence=duplicate_detector.QR_CONFIDENCE,
            original=winner,
            method=DuplicateMethod.QR,
        )
        doc = _insert_as_duplicate(tenant_id, fields, fingerprint, check)
        state_store.write_audit("INFO", "system", "ingest", [doc.id, winner.id], "duplicate:QR")
        return IngestionResult(document=doc, duplicate=check)

    state_store.write_audit("INFO", "system", "ingest", [doc.id], "original")
    result = IngestionResult(document=doc, duplicate=check)
    if verifier is None or not verifier.is_verifiable(fields.document_type_code):
        return result

    try:
        result.verification = verifier.verify_document(doc.id)
    except (ExternalServiceError, ValidationError) as e:
        print(f"⚠️ SUNAT検証できませんでした（未検証のまま登録）: {e}")
        state_store.write_audit("WARN", "system", "verify", [doc.id], "unchecked", error=str(e))
        result.verification_error = str(e)
    result.document = state_store.get_document(doc.id)
    return result
