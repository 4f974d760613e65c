"""
会計システム側DBへの精算書ミラー

会計DBは下流の複製であり正本ではない。書き込みは1件ずつ独立して行い、
失敗しても呼び出し側のローカル状態は巻き戻さない（結果だけを返す）。
"""

import os
import re
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional

from .config_loader import load_reconciliation_config
from .errors import ExternalServiceError
from .models import BucketType, ExpenseReport


DOCUMENT_TYPE_LABEL = "PLANILLA MOVILIDAD"

_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F]")


def sanitize_string(value: Optional[str], max_length: int) -> Optional[str]:
    """制御文字を除去し、空白を1つにまとめて最大長で切る"""
    if not value:
        return None
    cleaned = _CONTROL_CHARS.sub("", str(value))
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned[:max_length]


def describe_lines(report: ExpenseReport) -> str:
    """会計側の摘要を作る"""
    if not report.lines:
        return "Gastos de movilidad"
    if len(report.lines) == 1:
        line = report.lines[0]
        if line.origin and line.destination:
            return f"{line.origin} → {line.destination}"
        return line.reason or "Gasto de movilidad"
    return f"Gastos varios de movilidad ({len(report.lines)} items)"


class AccountingMirror:
    """会計DB（独立管理の別DBファイル）へのクライアント"""

    def __init__(self, db_path: str, timeout: Optional[float] = None):
        self.db_path = db_path
        self.timeout = timeout if timeout is not None else load_reconciliation_config()["mirror"]["timeout_seconds"]

    @classmethod
    def from_env(cls) -> Optional["AccountingMirror"]:
        """ACCOUNTING_MIRROR_DB が未設定なら None（ミラー無効）"""
        path = os.getenv("ACCOUNTING_MIRROR_DB")
        return cls(path) if path else None

    @contextmanager
    def _conn(self):
        try:
            con = sqlite3.connect(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise ExternalServiceError(f"会計DBに接続できません: {e}") from e
        con.row_factory = sqlite3.Row
        try:
            self._ensure_schema(con)
            yield con
            con.commit()
        except sqlite3.Error as e:
            con.rollback()
            raise ExternalServiceError(f"会計DBへの書き込みに失敗: {e}") from e
        finally:
            con.close()

    @staticmethod
    def _ensure_schema(con):
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS mirror_reports (
              id TEXT PRIMARY KEY,
              report_number TEXT,
              business_name TEXT,
              tax_id TEXT,
              period TEXT,
              issue_date TEXT,
              employee_name TEXT,
              position TEXT,
              national_id TEXT,
              cost_center TEXT,
              total_trip REAL,
              total_day REAL,
              total_amount REAL,
              username TEXT,
              state TEXT,
              synced_at TEXT
            );
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS mirror_report_lines (
              report_id TEXT NOT NULL,
              position INTEGER NOT NULL,
              expense_date TEXT,
              reason TEXT,
              origin TEXT,
              destination TEXT,
              trip_amount REAL,
              day_amount REAL,
              PRIMARY KEY (report_id, position)
            );
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS bucket_documents (
              report_id TEXT PRIMARY KEY,
              bucket_type TEXT NOT NULL,
              bucket_number TEXT NOT NULL,
              tax_id TEXT,
              business_name TEXT,
              series_number TEXT,
              document_type TEXT,
              description TEXT,
              item_count INTEGER,
              total_amount REAL,
              username TEXT,
              inserted_at TEXT
            );
            """
        )

    def upsert_report(self, report: ExpenseReport, username: Optional[str] = None):
        """精算書のヘッダと明細を会計DBへ反映する（承認時）"""
        print(f"🚗 会計DB - 精算書を反映中: {report.report_number}")
        with self._conn() as con:
            con.execute(
                """
                INSERT OR REPLACE INTO mirror_reports(id, report_number, business_name, tax_id, period, issue_date,
                  employee_name, position, national_id, cost_center, total_trip, total_day, total_amount,
                  username, state, synced_at)
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    report.id,
                    sanitize_string(report.report_number, 50),
                    sanitize_string(report.business_name, 255),
                    sanitize_string(report.tax_id, 50),
                    sanitize_string(report.period, 100),
                    report.issue_date.isoformat() if report.issue_date else None,
                    sanitize_string(report.employee_name, 255),
                    sanitize_string(report.position, 255),
                    sanitize_string(report.national_id, 20),
                    sanitize_string(report.cost_center, 100),
                    float(report.total_trip),
                    float(report.total_day),
                    float(report.total_amount),
                    sanitize_string(username or report.user_id, 100),
                    report.approval_state.value,
                    datetime.utcnow().isoformat(),
                ),
            )
            con.execute("DELETE FROM mirror_report_lines WHERE report_id=?", (report.id,))
            for position, line in enumerate(report.lines):
                con.execute(
                    """
                    INSERT INTO mirror_report_lines(report_id, position, expense_date, reason, origin, destination,
                      trip_amount, day_amount)
                    VALUES (?,?,?,?,?,?,?,?)
                    """,
                    (
                        report.id,
                        position,
                        line.expense_date.isoformat() if line.expense_date else None,
                        sanitize_string(line.reason, 255),
                        sanitize_string(line.origin, 255),
                        sanitize_string(line.destination, 255),
                        float(line.trip_amount),
                        float(line.day_amount),
                    ),
                )
        print("✅ 会計DB - 精算書を反映しました")

    def insert_bucket_document(self, report: ExpenseReport, username: Optional[str] = None):
        """割当先（rendición / caja chica）の書類として1回だけ挿入する

        二重挿入の防止は会計DB側の責務（主キー違反はそのままエラーとして返る）。
        """
        if report.bucket_type == BucketType.NONE or not report.bucket_number:
            raise ExternalServiceError("割当先が未設定の精算書は会計DBに登録できません")
        print(f"📄 会計DB - {report.bucket_type.value} #{report.bucket_number} に登録中: {report.report_number}")
        with self._conn() as con:
            con.execute(
                """
                INSERT INTO bucket_documents(report_id, bucket_type, bucket_number, tax_id, business_name,
                  series_number, document_type, description, item_count, total_amount, username, inserted_at)
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    report.id,
                    report.bucket_type.value,
                    report.bucket_number,
                    sanitize_string(report.tax_id, 50),
                    sanitize_string(report.business_name, 255),
                    sanitize_string(report.report_number or "MOVILIDAD", 255),
                    DOCUMENT_TYPE_LABEL,
                    sanitize_string(describe_lines(report), 255) or "Gastos de movilidad",
                    len(report.lines),
                    float(report.total_amount),
                    sanitize_string(username or report.user_id, 100),
                    datetime.utcnow().isoformat(),
                ),
            )
        print("✅ 会計DB - 登録しました")

    def bucket_documents(self, bucket_type: BucketType, bucket_number: str) -> List[Dict]:
        with self._conn() as con:
            rows = con.execute(
                "SELECT * FROM bucket_documents WHERE bucket_type=? AND bucket_number=? ORDER BY inserted_at",
                (BucketType(bucket_type).value, bucket_number),
            ).fetchall()
            return [dict(r) for r in rows]
