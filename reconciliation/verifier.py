"""
SUNAT による comprobante 検証

SUNAT はタイムゾーン正規化のずれで日付が1日ずれると「存在しない(0)」を返すことがある。
そのため「存在しない」の場合だけ、決まった順序の変形（日付±1日など）で再照会する。
通信・認証エラーは変形では再試行しない（AuthorityClient 側の固定回数リトライのみ）。
"""

import re
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from . import state_store
from .authority_client import AuthorityClient
from .config_loader import load_reconciliation_config
from .errors import NotFoundError, ValidationError
from .models import Document, ExtractedFields, Verdict, VerdictKind, VerificationOutcome, to_money


SERIES_PATTERN = re.compile(r"^([A-Z0-9]+)-(\d+)$")


def _format_date(d: date) -> str:
    return d.strftime("%d/%m/%Y")


def build_payload(identity: ExtractedFields) -> Dict:
    """OCRの識別項目を SUNAT の validarcomprobante 形式に変換する"""
    missing = [
        name for name, value in (
            ("issuer_tax_id", identity.issuer_tax_id),
            ("document_type_code", identity.document_type_code),
            ("series_number", identity.series_number),
            ("issue_date", identity.issue_date),
            ("total_amount", identity.total_amount),
        )
        if value is None or value == ""
    ]
    if missing:
        raise ValidationError(f"検証に必要な項目が不足しています: {', '.join(missing)}")

    match = SERIES_PATTERN.match(identity.series_number.strip().upper())
    if not match:
        raise ValidationError(f"シリーズ番号の形式が不正です: {identity.series_number}")
    series, number = match.groups()

    return {
        "numRuc": identity.issuer_tax_id,
        "codComp": identity.document_type_code,
        "numeroSerie": series,
        "numero": number,
        "fechaEmision": _format_date(identity.issue_date),
        "monto": f"{to_money(identity.total_amount):.2f}",
    }


def build_variations(payload: Dict, issue_date: date) -> List[Tuple[Optional[str], Dict]]:
    """照会する変形の一覧（順序固定）。先頭は元データそのもの。"""
    variations: List[Tuple[Optional[str], Dict]] = [(None, payload)]
    for label, days in (("+1day", 1), ("-1day", -1)):
        variations.append((label, {**payload, "fechaEmision": _format_date(issue_date + timedelta(days=days))}))

    # OCRが日と月を取り違えた場合（両方12以下で異なるときのみ）
    if issue_date.day <= 12 and issue_date.day != issue_date.month:
        swapped = date(issue_date.year, issue_date.day, issue_date.month)
        variations.append(("day-month-swap", {**payload, "fechaEmision": _format_date(swapped)}))

    amount = Decimal(payload["monto"])
    for label, delta in (("amount+0.01", Decimal("0.01")), ("amount-0.01", Decimal("-0.01"))):
        variations.append((label, {**payload, "monto": f"{amount + delta:.2f}"}))
    return variations


class ExternalVerifier:
    """SUNAT 検証（変形リトライ付き）と結果の保存"""

    def __init__(self, client: AuthorityClient, max_attempts: Optional[int] = None,
                 verifiable_types: Optional[List[str]] = None):
        vcfg = load_reconciliation_config()["verification"]
        self.client = client
        self.max_attempts = max(1, int(max_attempts if max_attempts is not None else vcfg["max_attempts"]))
        self.verifiable_types = set(verifiable_types if verifiable_types is not None else vcfg["verifiable_types"])

    def is_verifiable(self, document_type_code: Optional[str]) -> bool:
        return document_type_code in self.verifiable_types

    def verify_with_retries(self, identity: ExtractedFields) -> VerificationOutcome:
        if not self.is_verifiable(identity.document_type_code):
            print(f"⚪ SUNAT検証の対象外の書類種別です: {identity.document_type_code}")
            return VerificationOutcome(
                verdict=Verdict(VerdictKind.NOT_APPLICABLE),
                state_code=None,
                ruc_state=None,
                observations=[],
                attempt_count=0,
            )

        payload = build_payload(identity)
        plan = build_variations(payload, identity.issue_date)[: self.max_attempts]
        print(f"🧠 SUNAT - 検証開始（最大 {len(plan)} 回）")

        attempts = 0
        last: Dict = {}
        for label, variant in plan:
            attempts += 1
            if label:
                print(f"🔄 SUNAT - 変形して再照会: {label}")
            last = self.client.validate(variant)
            verdict = Verdict.from_state_code(last["state_code"])
            if verdict.kind != VerdictKind.NOT_FOUND:
                print(f"✅ SUNAT - 応答 {verdict.kind.value} ({attempts}回目{', ' + label if label else ''})")
                return self._outcome(verdict, last, attempts, label)

        print(f"⚠️ SUNAT - {attempts}回照会しても見つかりませんでした")
        return self._outcome(Verdict.from_state_code(last.get("state_code", "0")), last, attempts, None)

    @staticmethod
    def _outcome(verdict: Verdict, response: Dict, attempts: int, label: Optional[str]) -> VerificationOutcome:
        observations = list(response.get("observations") or [])
        if verdict.observation and verdict.observation not in observations:
            observations.append(verdict.observation)
        return VerificationOutcome(
            verdict=verdict,
            state_code=response.get("state_code"),
            ruc_state=response.get("ruc_state"),
            observations=observations,
            attempt_count=attempts,
            variation_used=label,
        )

    def verify_document(self, document_id: str) -> VerificationOutcome:
        """保存済みの書類を検証し、結果を1回の更新で書き戻す

        ExternalServiceError の場合は何も書かない（verified は None のまま）。
        """
        doc = state_store.get_document(document_id)
        if doc is None:
            raise NotFoundError(f"書類が見つかりません: {document_id}")
        if doc.is_duplicate:
            raise ValidationError(f"重複書類は検証しません: {document_id}")

        outcome = self.verify_with_retries(identity_of(doc))
        if outcome.verdict.kind == VerdictKind.NOT_APPLICABLE:
            return outcome

        state_store.save_verification(
            document_id,
            verified=outcome.verified,
            state_code=outcome.state_code,
            ruc_state=outcome.ruc_state,
            observations=outcome.observations,
            attempt_count=outcome.attempt_count,
            variation_used=outcome.variation_used,
        )
        state_store.write_audit(
            "INFO", "system", "verify", [document_id], outcome.verdict.kind.value,
        )
        return outcome

    def lookup_ruc(self, tax_id: str) -> Dict:
        return self.client.lookup_ruc(tax_id)


def identity_of(doc: Document) -> ExtractedFields:
    return ExtractedFields(
        issuer_tax_id=doc.issuer_tax_id,
        document_type_code=doc.document_type_code,
        series_number=doc.series_number,
        issue_date=doc.issue_date,
        total_amount=doc.total_amount,
        currency=doc.currency,
        qr_payload=doc.qr_payload,
    )
