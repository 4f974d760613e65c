import copy
import os
import yaml
from dotenv import load_dotenv

from .errors import ValidationError

load_dotenv()


DEFAULTS = {
    "sequence": {"domain_key": "GLOBAL", "lock_timeout_seconds": 10, "pad_width": 3},
    "verification": {
        "verifiable_types": ["01", "03", "07", "08"],
        "max_attempts": 6,
        "network_retries": 3,
        "retry_delay_seconds": 2,
        "request_timeout_seconds": 15,
        "token_expiry_margin_seconds": 300,
    },
    "authority": {
        "token_url": "https://api-seguridad.sunat.gob.pe/v1/clientesextranet/{client_id}/oauth2/token/",
        "api_base_url": "https://api.sunat.gob.pe/v1/contribuyente/contribuyentes",
        "scope": "https://api.sunat.gob.pe/v1/contribuyente/contribuyentes",
    },
    "mirror": {"timeout_seconds": 15},
}


def _config_path() -> str:
    default = os.path.join(os.path.dirname(os.path.dirname(__file__)), "config", "reconciliation.yml")
    return os.getenv("RECONCILIATION_CONFIG", default)


def load_reconciliation_config() -> dict:
    try:
        with open(_config_path(), "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return copy.deepcopy(DEFAULTS)

    # shallow merge defaults
    merged = copy.deepcopy(DEFAULTS)
    for k, v in (cfg or {}).items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            mv = dict(merged[k])
            mv.update(v)
            merged[k] = mv
        else:
            merged[k] = v
    return merged


def load_authority_settings() -> dict:
    """SUNAT の認証情報を環境変数から取得"""
    settings = {
        "client_id": os.getenv("SUNAT_CLIENT_ID"),
        "client_secret": os.getenv("SUNAT_CLIENT_SECRET"),
        "company_ruc": os.getenv("SUNAT_RUC"),
    }
    missing = [
        name for name, key in (
            ("SUNAT_CLIENT_ID", "client_id"),
            ("SUNAT_CLIENT_SECRET", "client_secret"),
            ("SUNAT_RUC", "company_ruc"),
        )
        if not settings[key]
    ]
    if missing:
        raise ValidationError(f"必須の環境変数が設定されていません: {', '.join(missing)}")
    return settings
