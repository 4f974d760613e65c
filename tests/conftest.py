import pytest

from reconciliation import state_store


@pytest.fixture
def db(tmp_path, monkeypatch):
    """テストごとに独立した SQLite ファイルを使う"""
    path = tmp_path / "reconciliation.db"
    monkeypatch.setenv("RECONCILIATION_DB", str(path))
    monkeypatch.delenv("ACCOUNTING_MIRROR_DB", raising=False)
    state_store.init_db()
    return path


@pytest.fixture
def short_lock(tmp_path, monkeypatch):
    """ロック待ちを短くした設定ファイル"""
    cfg = tmp_path / "reconciliation.yml"
    cfg.write_text("sequence:\n  lock_timeout_seconds: 0.2\n", encoding="utf-8")
    monkeypatch.setenv("RECONCILIATION_CONFIG", str(cfg))
    return cfg
