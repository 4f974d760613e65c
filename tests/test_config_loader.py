import pytest

from reconciliation import config_loader
from reconciliation.errors import ValidationError


def test_missing_file_returns_independent_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("RECONCILIATION_CONFIG", str(tmp_path / "missing.yml"))

    cfg = config_loader.load_reconciliation_config()
    cfg["verification"]["max_attempts"] = 1
    cfg["sequence"] = {}

    again = config_loader.load_reconciliation_config()
    assert again["verification"]["max_attempts"] == 6
    assert again["sequence"]["domain_key"] == "GLOBAL"
    assert config_loader.DEFAULTS["verification"]["max_attempts"] == 6


def test_file_values_merge_over_defaults(tmp_path, monkeypatch):
    path = tmp_path / "reconciliation.yml"
    path.write_text("verification:\n  max_attempts: 3\n", encoding="utf-8")
    monkeypatch.setenv("RECONCILIATION_CONFIG", str(path))

    cfg = config_loader.load_reconciliation_config()
    assert cfg["verification"]["max_attempts"] == 3
    assert cfg["verification"]["network_retries"] == 3
    assert cfg["mirror"]["timeout_seconds"] == 15

    cfg["verification"]["verifiable_types"].append("99")
    assert "99" not in config_loader.load_reconciliation_config()["verification"]["verifiable_types"]


def test_authority_settings_report_missing_variables(monkeypatch):
    monkeypatch.setenv("SUNAT_CLIENT_ID", "id")
    monkeypatch.delenv("SUNAT_CLIENT_SECRET", raising=False)
    monkeypatch.delenv("SUNAT_RUC", raising=False)

    with pytest.raises(ValidationError) as excinfo:
        config_loader.load_authority_settings()
    assert "SUNAT_CLIENT_SECRET" in str(excinfo.value)
    assert "SUNAT_RUC" in str(excinfo.value)
