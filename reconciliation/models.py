from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import List, Optional


CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """金額を小数2桁のDecimalに揃える"""
    if value is None or value == "":
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class DuplicateMethod(str, Enum):
    QR = "QR"
    COMPOSITE_KEY = "COMPOSITE_KEY"


class ApprovalState(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class BucketType(str, Enum):
    NONE = "NONE"
    ADVANCE_SETTLEMENT = "ADVANCE_SETTLEMENT"  # rendición
    PETTY_CASH = "PETTY_CASH"  # caja chica


class BulkActionType(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    DELETE = "DELETE"


class VerdictKind(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    VALID = "VALID"
    ANNULLED = "ANNULLED"
    UNKNOWN = "UNKNOWN"
    NOT_APPLICABLE = "NOT_APPLICABLE"


@dataclass(frozen=True)
class Verdict:
    """SUNAT の estadoCp を境界で一度だけ解釈した結果"""
    kind: VerdictKind
    raw_code: Optional[str] = None

    @classmethod
    def from_state_code(cls, code) -> "Verdict":
        raw = None if code is None else str(code).strip()
        if raw == "0":
            return cls(VerdictKind.NOT_FOUND, raw)
        if raw == "1":
            return cls(VerdictKind.VALID, raw)
        if raw == "2":
            return cls(VerdictKind.ANNULLED, raw)
        return cls(VerdictKind.UNKNOWN, raw)

    @property
    def is_valid(self) -> bool:
        return self.kind == VerdictKind.VALID

    @property
    def observation(self) -> Optional[str]:
        if self.kind == VerdictKind.ANNULLED:
            return "Comprobante ANULADO"
        if self.kind == VerdictKind.UNKNOWN:
            return f"Estado desconocido: {self.raw_code}"
        return None


@dataclass
class ExtractedFields:
    """OCR側から渡される書類の識別項目"""
    issuer_tax_id: Optional[str] = None
    document_type_code: Optional[str] = None
    series_number: Optional[str] = None
    issue_date: Optional[date] = None
    total_amount: Optional[Decimal] = None
    currency: Optional[str] = None
    qr_payload: Optional[str] = None


@dataclass
class Document:
    id: str
    tenant_id: str
    issuer_tax_id: Optional[str]
    document_type_code: Optional[str]
    series_number: Optional[str]
    issue_date: Optional[date]
    total_amount: Optional[Decimal]
    currency: Optional[str]
    qr_payload: Optional[str]
    qr_fingerprint: Optional[str]
    created_at: datetime
    seq: int = 0  # 登録順（小さいほど古い）
    verified: Optional[bool] = None
    verification_state_code: Optional[str] = None
    authority_ruc_state: Optional[str] = None
    verification_observations: List[str] = field(default_factory=list)
    verified_at: Optional[datetime] = None
    retry_count: int = 0
    variation_used: Optional[str] = None
    is_duplicate: bool = False
    duplicate_of_id: Optional[str] = None
    duplicate_method: Optional[DuplicateMethod] = None


@dataclass
class DuplicateCheckResult:
    is_duplicate: bool
    confidence: int
    original: Optional[Document] = None
    method: Optional[DuplicateMethod] = None

    @property
    def original_ref(self) -> Optional[str]:
        return self.original.id if self.original else None


@dataclass
class VerificationOutcome:
    verdict: Verdict
    state_code: Optional[str]
    ruc_state: Optional[str]
    observations: List[str]
    attempt_count: int
    variation_used: Optional[str] = None

    @property
    def verified(self) -> bool:
        return self.verdict.is_valid


@dataclass
class ExpenseLine:
    expense_date: Optional[date] = None
    reason: Optional[str] = None
    origin: Optional[str] = None
    destination: Optional[str] = None
    trip_amount: Decimal = Decimal("0.00")
    day_amount: Decimal = Decimal("0.00")

    @property
    def subtotal(self) -> Decimal:
        return to_money(self.trip_amount) + to_money(self.day_amount)


@dataclass
class ExpenseReport:
    id: str
    tenant_id: str
    user_id: str
    report_number: str
    approval_state: ApprovalState
    total_trip: Decimal
    total_day: Decimal
    total_amount: Decimal
    created_at: datetime
    business_name: Optional[str] = None
    tax_id: Optional[str] = None
    period: Optional[str] = None
    issue_date: Optional[date] = None
    employee_name: Optional[str] = None
    position: Optional[str] = None
    national_id: Optional[str] = None
    cost_center: Optional[str] = None
    approver_ref: Optional[str] = None
    approved_at: Optional[datetime] = None
    approval_comment: Optional[str] = None
    bucket_type: BucketType = BucketType.NONE
    bucket_number: Optional[str] = None
    assigned_at: Optional[datetime] = None
    lines: List[ExpenseLine] = field(default_factory=list)


@dataclass
class TransitionResult:
    """ローカル遷移の結果と会計DBへの反映結果"""
    report: ExpenseReport
    mirror_saved: bool = False
    mirror_error: Optional[str] = None


@dataclass
class ItemOutcome:
    report_id: str
    ok: bool
    mirror_saved: bool = False
    mirror_error: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BulkResult:
    affected: int = 0
    errors: List[str] = field(default_factory=list)
    items: List[ItemOutcome] = field(default_factory=list)
