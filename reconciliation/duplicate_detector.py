import hashlib
from typing import Dict, List, Optional

from . import state_store
from .errors import NotFoundError, ValidationError
from .models import Document, DuplicateCheckResult, DuplicateMethod


QR_CONFIDENCE = 100
COMPOSITE_KEY_CONFIDENCE = 95


def qr_fingerprint(qr_payload: Optional[str]) -> Optional[str]:
    """QRの生データから検索用のSHA-256を作る"""
    if not qr_payload:
        return None
    return hashlib.sha256(qr_payload.encode("utf-8")).hexdigest()


def check_by_qr(tenant_id: str, qr_payload: str) -> DuplicateCheckResult:
    """QR一致による重複判定（署名付きのため確度100）"""
    if not qr_payload:
        return DuplicateCheckResult(is_duplicate=False, confidence=0)

    print("🔍 QRコードで重複を確認中...")
    original = state_store.find_earliest_original(tenant_id, qr_fingerprint=qr_fingerprint(qr_payload))
    if original:
        print(f"⚠️ QRコードで重複を検出: {original.id} ({original.series_number})")
        return DuplicateCheckResult(
            is_duplicate=True,
            confidence=QR_CONFIDENCE,
            original=original,
            method=DuplicateMethod.QR,
        )
    return DuplicateCheckResult(is_duplicate=False, confidence=QR_CONFIDENCE)


def check_by_composite_key(tenant_id: str, issuer_tax_id: Optional[str], series_number: Optional[str]) -> DuplicateCheckResult:
    """RUC+シリーズ番号による重複判定（訂正・再発行で衝突しうるため確度95）"""
    if not issuer_tax_id or not series_number:
        raise ValidationError("RUCとシリーズ番号の両方が必要です")

    print(f"🔍 RUC+シリーズ番号で重複を確認中: {issuer_tax_id} / {series_number}")
    original = state_store.find_earliest_original(
        tenant_id, issuer_tax_id=issuer_tax_id, series_number=series_number
    )
    if original:
        print(f"⚠️ RUC+シリーズ番号で重複を検出: {original.id}")
        return DuplicateCheckResult(
            is_duplicate=True,
            confidence=COMPOSITE_KEY_CONFIDENCE,
            original=original,
            method=DuplicateMethod.COMPOSITE_KEY,
        )
    return DuplicateCheckResult(is_duplicate=False, confidence=COMPOSITE_KEY_CONFIDENCE)


def check_duplicate(
    tenant_id: str,
    qr_payload: Optional[str] = None,
    issuer_tax_id: Optional[str] = None,
    series_number: Optional[str] = None,
) -> DuplicateCheckResult:
    """QR → RUC+シリーズ番号の順で判定する。状態は一切変更しない。"""
    if not tenant_id:
        raise ValidationError("tenant_id は必須です")

    if qr_payload:
        result = check_by_qr(tenant_id, qr_payload)
        if result.is_duplicate:
            return result

    if issuer_tax_id and series_number:
        result = check_by_composite_key(tenant_id, issuer_tax_id, series_number)
        if result.is_duplicate:
            return result

    print("✅ 重複は見つかりませんでした")
    return DuplicateCheckResult(is_duplicate=False, confidence=100)


def mark_duplicate(document_id: str, original_id: str, method: DuplicateMethod) -> Document:
    """書類を original_id の重複として確定させる

    原本は同一テナントの「重複でない」書類で、かつ先に登録されていること。
    既に他の書類の原本になっている書類は重複にできない。
    確認と更新は1つの直列化トランザクションで行う。
    """
    method = DuplicateMethod(method)
    with state_store.locked_transaction("mark_duplicate") as con:
        doc = state_store.get_document(document_id, con=con)
        original = state_store.get_document(original_id, con=con)
        if doc is None:
            raise NotFoundError(f"書類が見つかりません: {document_id}")
        if original is None:
            raise NotFoundError(f"原本が見つかりません: {original_id}")
        if doc.is_duplicate:
            raise ValidationError(f"既に重複として確定済みです: {document_id}")
        if original.is_duplicate:
            raise ValidationError(f"原本に重複書類は指定できません: {original_id}")
        if original.tenant_id != doc.tenant_id:
            raise ValidationError("異なるテナントの書類は指定できません")
        if original.seq >= doc.seq:
            raise ValidationError("原本は重複書類より先に登録されている必要があります")
        children = state_store.list_duplicates_of(document_id, con=con)
        if children:
            raise ValidationError(
                f"{len(children)}件の重複書類の原本になっているため重複にできません: {document_id}"
            )

        if not state_store.set_duplicate(document_id, original_id, method, con=con):
            raise ValidationError(f"既に重複として確定済みです: {document_id}")
        state_store.write_audit(
            "INFO", "system", "mark_duplicate", [document_id, original_id], method.value, con=con
        )
        marked = state_store.get_document(document_id, con=con)
    print(f"✅ 重複として登録しました: {document_id} -> {original_id} ({method.value})")
    return marked


def get_duplicates(original_id: str) -> List[Document]:
    return state_store.list_duplicates_of(original_id)


def get_stats(tenant_id: str) -> Dict:
    counts = state_store.document_counts(tenant_id)
    total = counts["total"]
    duplicates = counts["duplicates"]
    rate = f"{duplicates / total * 100:.2f}%" if total > 0 else "0%"
    return {
        "total": total,
        "duplicates": duplicates,
        "duplicate_rate": rate,
        "by_method": counts["by_method"],
    }
