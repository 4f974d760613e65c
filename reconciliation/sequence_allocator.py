"""
精算書番号の採番

番号は一度も巻き戻らない通し番号で、年は表示上の接頭辞にすぎない。
例: 2025-149, 2025-150, 2026-151, 2026-152 ...
"""

from datetime import datetime
from typing import Optional

from . import state_store
from .config_loader import load_reconciliation_config
from .errors import ValidationError


def _settings() -> dict:
    return load_reconciliation_config()["sequence"]


def format_sequence(value: int, now: Optional[datetime] = None, pad_width: Optional[int] = None) -> str:
    year = (now or datetime.now()).year
    width = pad_width if pad_width is not None else int(_settings()["pad_width"])
    return f"{year}-{str(value).zfill(width)}"


def next_value(con, domain_key: str) -> int:
    """直列化トランザクション内でカウンタを1つ進めて新しい値を返す

    con は state_store.locked_transaction() で開いた接続であること。
    """
    current = state_store.select_counter(con, domain_key)
    if current is None:
        value = 1
        state_store.write_counter(con, domain_key, value, create=True)
    else:
        value = current + 1
        state_store.write_counter(con, domain_key, value, create=False)
    return value


def allocate(domain_key: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """次の番号を採番して "YYYY-NNN" 形式で返す

    ロックが時間内に取れない場合は ConcurrencyError。自動リトライはしない。
    """
    key = domain_key or _settings()["domain_key"]
    timeout = float(_settings()["lock_timeout_seconds"])
    with state_store.locked_transaction(f"sequence {key}", timeout=timeout) as con:
        value = next_value(con, key)
    formatted = format_sequence(value, now)
    print(f"📋 番号を採番しました: {formatted}")
    return formatted


def last_value(domain_key: Optional[str] = None) -> int:
    """最後に払い出した値（未採番なら0）"""
    key = domain_key or _settings()["domain_key"]
    return state_store.read_counter(key) or 0


def last_formatted(domain_key: Optional[str] = None, now: Optional[datetime] = None) -> Optional[str]:
    value = last_value(domain_key)
    if value == 0:
        return None
    return format_sequence(value, now)


def initialize_counter(value: int, domain_key: Optional[str] = None):
    """既存データ移行用にカウンタを指定値へ設定する"""
    if value < 0:
        raise ValidationError("カウンタ値は0以上である必要があります")
    key = domain_key or _settings()["domain_key"]
    with state_store.locked_transaction(f"sequence {key}") as con:
        current = state_store.select_counter(con, key)
        if current is not None and value < current:
            raise ValidationError(f"カウンタを巻き戻すことはできません: {current} -> {value}")
        state_store.write_counter(con, key, value, create=current is None)
        state_store.write_audit("WARN", "system", "sequence_initialize", [key], str(value), con=con)
    print(f"🔄 カウンタを初期化しました: {key} = {value}")
