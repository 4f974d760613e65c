import json
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from .config_loader import load_reconciliation_config
from .errors import ConcurrencyError, ConflictError
from .models import (
    ApprovalState,
    BucketType,
    Document,
    DuplicateMethod,
    ExpenseLine,
    ExpenseReport,
    ExtractedFields,
)


def _get_db_path() -> str:
    """環境変数から毎回DBパスを取得（テストでの monkeypatch に追従するため）。"""
    return os.getenv("RECONCILIATION_DB", "reconciliation.db")


def _busy_timeout() -> float:
    return float(load_reconciliation_config()["sequence"]["lock_timeout_seconds"])


def _now() -> datetime:
    return datetime.utcnow()


@contextmanager
def _conn():
    con = sqlite3.connect(_get_db_path(), timeout=_busy_timeout())
    con.row_factory = sqlite3.Row
    try:
        yield con
        con.commit()
    finally:
        con.close()


@contextmanager
def _transaction(timeout: Optional[float] = None):
    """書き込みロックを先に取得する直列化トランザクション（BEGIN IMMEDIATE）

    読み取り前にロックを取るため、SELECT ... FOR UPDATE と同じく
    他の書き込み側はコミットまで待たされる。
    """
    con = sqlite3.connect(
        _get_db_path(),
        timeout=_busy_timeout() if timeout is None else timeout,
        isolation_level=None,
    )
    con.row_factory = sqlite3.Row
    try:
        con.execute("BEGIN IMMEDIATE")
        try:
            yield con
        except BaseException:
            # SQLite が自動でロールバック済みの場合がある
            if con.in_transaction:
                con.execute("ROLLBACK")
            raise
        con.execute("COMMIT")
    finally:
        con.close()


def _is_lock_error(e: sqlite3.OperationalError) -> bool:
    msg = str(e).lower()
    return "locked" in msg or "busy" in msg


@contextmanager
def locked_transaction(label: str, timeout: Optional[float] = None):
    """_transaction() と同じだが、ロック待ちのタイムアウトを ConcurrencyError にする

    自動リトライはしない。
    """
    wait = _busy_timeout() if timeout is None else timeout
    try:
        with _transaction(timeout=wait) as con:
            yield con
    except sqlite3.OperationalError as e:
        if _is_lock_error(e):
            print(f"❌ ロックを取得できませんでした ({label}, {wait}秒): {e}")
            raise ConcurrencyError(f"ロック待ちがタイムアウトしました: {label}") from e
        raise


def init_db():
    with _conn() as con:
        con.execute("PRAGMA journal_mode=WAL;")
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS documents (
              seq INTEGER PRIMARY KEY AUTOINCREMENT,
              id TEXT NOT NULL UNIQUE,
              tenant_id TEXT NOT NULL,
              issuer_tax_id TEXT,
              document_type_code TEXT,
              series_number TEXT,
              issue_date TEXT,
              total_amount TEXT,
              currency TEXT,
              qr_payload TEXT,
              qr_fingerprint TEXT,
              verified INTEGER,
              verification_state_code TEXT,
              authority_ruc_state TEXT,
              verification_observations TEXT,
              verified_at TEXT,
              retry_count INTEGER NOT NULL DEFAULT 0,
              variation_used TEXT,
              is_duplicate INTEGER NOT NULL DEFAULT 0,
              duplicate_of_id TEXT,
              duplicate_method TEXT,
              created_at TEXT NOT NULL
            );
            """
        )
        # 同一テナント内で QR が同じ「原本」は1件だけ（重複行は対象外）
        con.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_documents_tenant_qr
            ON documents(tenant_id, qr_fingerprint)
            WHERE is_duplicate = 0 AND qr_fingerprint IS NOT NULL;
            """
        )
        con.execute(
            "CREATE INDEX IF NOT EXISTS ix_documents_composite ON documents(tenant_id, issuer_tax_id, series_number);"
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS sequence_counters (
              domain_key TEXT PRIMARY KEY,
              last_value INTEGER NOT NULL CHECK (last_value >= 0),
              updated_at TEXT
            );
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS expense_reports (
              id TEXT PRIMARY KEY,
              tenant_id TEXT NOT NULL,
              user_id TEXT NOT NULL,
              report_number TEXT NOT NULL UNIQUE,
              business_name TEXT,
              tax_id TEXT,
              period TEXT,
              issue_date TEXT,
              employee_name TEXT,
              position TEXT,
              national_id TEXT,
              cost_center TEXT,
              total_trip TEXT NOT NULL,
              total_day TEXT NOT NULL,
              total_amount TEXT NOT NULL,
              approval_state TEXT NOT NULL,
              approver_ref TEXT,
              approved_at TEXT,
              approval_comment TEXT,
              bucket_type TEXT NOT NULL DEFAULT 'NONE',
              bucket_number TEXT,
              assigned_at TEXT,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS expense_lines (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              report_id TEXT NOT NULL REFERENCES expense_reports(id) ON DELETE CASCADE,
              position INTEGER NOT NULL,
              expense_date TEXT,
              reason TEXT,
              origin TEXT,
              destination TEXT,
              trip_amount TEXT NOT NULL,
              day_amount TEXT NOT NULL
            );
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_log (
              ts TEXT,
              level TEXT,
              actor TEXT,
              action TEXT,
              target_ids TEXT,
              result TEXT,
              error TEXT
            );
            """
        )


def write_audit(level: str, actor: str, action: str, target_ids: list, result: str, error: str | None = None, con=None):
    row = (_now().isoformat(), level, actor, action, json.dumps(target_ids), result, error)
    sql = "INSERT INTO audit_log(ts, level, actor, action, target_ids, result, error) VALUES (?,?,?,?,?,?,?)"
    if con is not None:
        con.execute(sql, row)
        return
    with _conn() as c:
        c.execute(sql, row)


def read_audit(action: Optional[str] = None) -> List[Dict]:
    with _conn() as con:
        if action:
            cur = con.execute("SELECT * FROM audit_log WHERE action=? ORDER BY rowid", (action,))
        else:
            cur = con.execute("SELECT * FROM audit_log ORDER BY rowid")
        return [dict(r) for r in cur.fetchall()]


# ---------------------------------------------------------------------------
# documents
# ---------------------------------------------------------------------------

def _parse_date(value) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _parse_dt(value) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _parse_money(value) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _row_to_document(row) -> Document:
    return Document(
        id=row["id"],
        tenant_id=row["tenant_id"],
        issuer_tax_id=row["issuer_tax_id"],
        document_type_code=row["document_type_code"],
        series_number=row["series_number"],
        issue_date=_parse_date(row["issue_date"]),
        total_amount=_parse_money(row["total_amount"]),
        currency=row["currency"],
        qr_payload=row["qr_payload"],
        qr_fingerprint=row["qr_fingerprint"],
        created_at=_parse_dt(row["created_at"]),
        seq=row["seq"],
        verified=None if row["verified"] is None else bool(row["verified"]),
        verification_state_code=row["verification_state_code"],
        authority_ruc_state=row["authority_ruc_state"],
        verification_observations=json.loads(row["verification_observations"] or "[]"),
        verified_at=_parse_dt(row["verified_at"]),
        retry_count=row["retry_count"],
        variation_used=row["variation_used"],
        is_duplicate=bool(row["is_duplicate"]),
        duplicate_of_id=row["duplicate_of_id"],
        duplicate_method=DuplicateMethod(row["duplicate_method"]) if row["duplicate_method"] else None,
    )


def insert_document(
    tenant_id: str,
    fields: ExtractedFields,
    qr_fingerprint: Optional[str] = None,
    duplicate_of_id: Optional[str] = None,
    duplicate_method: Optional[DuplicateMethod] = None,
) -> Document:
    """書類を登録する。QR の一意制約に負けた場合は ConflictError。"""
    doc_id = uuid.uuid4().hex
    is_duplicate = duplicate_of_id is not None
    try:
        with _conn() as con:
            con.execute(
                """
                INSERT INTO documents(id, tenant_id, issuer_tax_id, document_type_code, series_number,
                  issue_date, total_amount, currency, qr_payload, qr_fingerprint,
                  is_duplicate, duplicate_of_id, duplicate_method, created_at)
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    doc_id,
                    tenant_id,
                    fields.issuer_tax_id,
                    fields.document_type_code,
                    fields.series_number,
                    fields.issue_date.isoformat() if fields.issue_date else None,
                    str(fields.total_amount) if fields.total_amount is not None else None,
                    fields.currency,
                    fields.qr_payload,
                    qr_fingerprint,
                    1 if is_duplicate else 0,
                    duplicate_of_id,
                    duplicate_method.value if duplicate_method else None,
                    _now().isoformat(),
                ),
            )
    except sqlite3.IntegrityError as e:
        winner = find_earliest_original(tenant_id, qr_fingerprint=qr_fingerprint) if qr_fingerprint else None
        raise ConflictError(
            f"同一QRの原本が既に登録されています: {e}",
            existing_id=winner.id if winner else None,
        ) from e
    return get_document(doc_id)


def get_document(document_id: str, con=None) -> Optional[Document]:
    if con is None:
        with _conn() as c:
            return get_document(document_id, con=c)
    row = con.execute("SELECT * FROM documents WHERE id=?", (document_id,)).fetchone()
    return _row_to_document(row) if row else None


def find_earliest_original(
    tenant_id: str,
    *,
    qr_fingerprint: Optional[str] = None,
    issuer_tax_id: Optional[str] = None,
    series_number: Optional[str] = None,
) -> Optional[Document]:
    """テナント内で条件に一致する最も古い原本（is_duplicate=0）を返す"""
    clauses = ["tenant_id=?", "is_duplicate=0"]
    params: list = [tenant_id]
    if qr_fingerprint is not None:
        clauses.append("qr_fingerprint=?")
        params.append(qr_fingerprint)
    if issuer_tax_id is not None:
        clauses.append("issuer_tax_id=?")
        params.append(issuer_tax_id)
    if series_number is not None:
        clauses.append("series_number=?")
        params.append(series_number)
    if len(params) == 1:
        return None
    sql = f"SELECT * FROM documents WHERE {' AND '.join(clauses)} ORDER BY seq ASC LIMIT 1"
    with _conn() as con:
        row = con.execute(sql, params).fetchone()
        return _row_to_document(row) if row else None


def set_duplicate(document_id: str, original_id: str, method: DuplicateMethod, con=None) -> bool:
    """原本のままの書類だけを重複に切り替える。更新できたら True。"""
    if con is None:
        with _conn() as c:
            return set_duplicate(document_id, original_id, method, con=c)
    cur = con.execute(
        "UPDATE documents SET is_duplicate=1, duplicate_of_id=?, duplicate_method=? WHERE id=? AND is_duplicate=0",
        (original_id, method.value, document_id),
    )
    return cur.rowcount == 1


def list_duplicates_of(original_id: str, con=None) -> List[Document]:
    if con is None:
        with _conn() as c:
            return list_duplicates_of(original_id, con=c)
    rows = con.execute(
        "SELECT * FROM documents WHERE duplicate_of_id=? ORDER BY seq ASC", (original_id,)
    ).fetchall()
    return [_row_to_document(r) for r in rows]


def document_counts(tenant_id: str) -> Dict:
    with _conn() as con:
        total = con.execute("SELECT COUNT(*) FROM documents WHERE tenant_id=?", (tenant_id,)).fetchone()[0]
        rows = con.execute(
            """
            SELECT duplicate_method, COUNT(*) AS n FROM documents
            WHERE tenant_id=? AND is_duplicate=1 GROUP BY duplicate_method
            """,
            (tenant_id,),
        ).fetchall()
    by_method = {r["duplicate_method"]: r["n"] for r in rows if r["duplicate_method"]}
    return {"total": total, "duplicates": sum(by_method.values()), "by_method": by_method}


def save_verification(
    document_id: str,
    *,
    verified: bool,
    state_code: Optional[str],
    ruc_state: Optional[str],
    observations: List[str],
    attempt_count: int,
    variation_used: Optional[str],
) -> bool:
    """検証結果を1回の UPDATE で書き戻す（重複書類は更新しない）"""
    with _conn() as con:
        cur = con.execute(
            """
            UPDATE documents SET verified=?, verification_state_code=?, authority_ruc_state=?,
              verification_observations=?, verified_at=?, retry_count=?, variation_used=?
            WHERE id=? AND is_duplicate=0
            """,
            (
                1 if verified else 0,
                state_code,
                ruc_state,
                json.dumps(observations, ensure_ascii=False),
                _now().isoformat(),
                attempt_count,
                variation_used,
                document_id,
            ),
        )
        return cur.rowcount == 1


# ---------------------------------------------------------------------------
# sequence counters
# ---------------------------------------------------------------------------

def select_counter(con, domain_key: str) -> Optional[int]:
    row = con.execute("SELECT last_value FROM sequence_counters WHERE domain_key=?", (domain_key,)).fetchone()
    return row["last_value"] if row else None


def write_counter(con, domain_key: str, value: int, create: bool):
    if create:
        con.execute(
            "INSERT INTO sequence_counters(domain_key, last_value, updated_at) VALUES (?,?,?)",
            (domain_key, value, _now().isoformat()),
        )
    else:
        con.execute(
            "UPDATE sequence_counters SET last_value=?, updated_at=? WHERE domain_key=?",
            (value, _now().isoformat(), domain_key),
        )


def read_counter(domain_key: str) -> Optional[int]:
    with _conn() as con:
        return select_counter(con, domain_key)


# ---------------------------------------------------------------------------
# expense reports
# ---------------------------------------------------------------------------

HEADER_FIELDS = (
    "business_name",
    "tax_id",
    "period",
    "issue_date",
    "employee_name",
    "position",
    "national_id",
    "cost_center",
)


def _encode(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, "value"):  # Enum
        return value.value
    return value


def _row_to_line(row) -> ExpenseLine:
    return ExpenseLine(
        expense_date=_parse_date(row["expense_date"]),
        reason=row["reason"],
        origin=row["origin"],
        destination=row["destination"],
        trip_amount=Decimal(row["trip_amount"]),
        day_amount=Decimal(row["day_amount"]),
    )


def _row_to_report(row, lines: List[ExpenseLine]) -> ExpenseReport:
    return ExpenseReport(
        id=row["id"],
        tenant_id=row["tenant_id"],
        user_id=row["user_id"],
        report_number=row["report_number"],
        approval_state=ApprovalState(row["approval_state"]),
        total_trip=Decimal(row["total_trip"]),
        total_day=Decimal(row["total_day"]),
        total_amount=Decimal(row["total_amount"]),
        created_at=_parse_dt(row["created_at"]),
        business_name=row["business_name"],
        tax_id=row["tax_id"],
        period=row["period"],
        issue_date=_parse_date(row["issue_date"]),
        employee_name=row["employee_name"],
        position=row["position"],
        national_id=row["national_id"],
        cost_center=row["cost_center"],
        approver_ref=row["approver_ref"],
        approved_at=_parse_dt(row["approved_at"]),
        approval_comment=row["approval_comment"],
        bucket_type=BucketType(row["bucket_type"]),
        bucket_number=row["bucket_number"],
        assigned_at=_parse_dt(row["assigned_at"]),
        lines=lines,
    )


def insert_report(con, *, tenant_id: str, user_id: str, report_number: str, header: Dict, totals: Dict) -> str:
    report_id = uuid.uuid4().hex
    now = _now().isoformat()
    values = {
        "id": report_id,
        "tenant_id": tenant_id,
        "user_id": user_id,
        "report_number": report_number,
        "approval_state": ApprovalState.PENDING.value,
        "bucket_type": BucketType.NONE.value,
        "created_at": now,
        "updated_at": now,
    }
    values.update({k: _encode(header.get(k)) for k in HEADER_FIELDS})
    values.update({k: _encode(v) for k, v in totals.items()})
    cols = ", ".join(values.keys())
    marks = ",".join("?" for _ in values)
    con.execute(f"INSERT INTO expense_reports({cols}) VALUES ({marks})", tuple(values.values()))
    return report_id


def replace_lines(con, report_id: str, lines: Iterable[ExpenseLine]):
    con.execute("DELETE FROM expense_lines WHERE report_id=?", (report_id,))
    for position, line in enumerate(lines):
        con.execute(
            """
            INSERT INTO expense_lines(report_id, position, expense_date, reason, origin, destination, trip_amount, day_amount)
            VALUES (?,?,?,?,?,?,?,?)
            """,
            (
                report_id,
                position,
                _encode(line.expense_date),
                line.reason,
                line.origin,
                line.destination,
                _encode(line.trip_amount),
                _encode(line.day_amount),
            ),
        )


def get_report(report_id: str, con=None) -> Optional[ExpenseReport]:
    if con is None:
        with _conn() as c:
            return get_report(report_id, con=c)
    row = con.execute("SELECT * FROM expense_reports WHERE id=?", (report_id,)).fetchone()
    if not row:
        return None
    line_rows = con.execute(
        "SELECT * FROM expense_lines WHERE report_id=? ORDER BY position", (report_id,)
    ).fetchall()
    return _row_to_report(row, [_row_to_line(r) for r in line_rows])


def list_reports(tenant_id: str, report_ids: Iterable[str]) -> List[ExpenseReport]:
    ids = list(dict.fromkeys(report_ids))
    if not ids:
        return []
    with _conn() as con:
        marks = ",".join("?" for _ in ids)
        rows = con.execute(
            f"SELECT id FROM expense_reports WHERE tenant_id=? AND id IN ({marks})", [tenant_id] + ids
        ).fetchall()
        found = {r["id"] for r in rows}
        return [get_report(i, con=con) for i in ids if i in found]


def update_report_where(con, report_id: str, expected: Dict, values: Dict) -> bool:
    """expected の条件（None は IS NULL）を満たす場合だけ更新する。更新できたら True。"""
    values = dict(values)
    values["updated_at"] = _now()
    sets = ", ".join(f"{k}=?" for k in values)
    where = ["id=?"]
    params = [_encode(v) for v in values.values()] + [report_id]
    for k, v in expected.items():
        if v is None:
            where.append(f"{k} IS NULL")
        else:
            where.append(f"{k}=?")
            params.append(_encode(v))
    cur = con.execute(f"UPDATE expense_reports SET {sets} WHERE {' AND '.join(where)}", params)
    return cur.rowcount == 1


def delete_report_where(con, report_id: str, states: Iterable[ApprovalState]) -> bool:
    states = [s.value for s in states]
    marks = ",".join("?" for _ in states)
    cur = con.execute(
        f"DELETE FROM expense_reports WHERE id=? AND approval_state IN ({marks})", [report_id] + states
    )
    if cur.rowcount == 1:
        con.execute("DELETE FROM expense_lines WHERE report_id=?", (report_id,))
        return True
    return False
