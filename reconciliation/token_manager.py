import requests
from datetime import datetime, timedelta
from typing import Dict, Optional

from .config_loader import load_authority_settings, load_reconciliation_config
from .errors import ExternalServiceError


class AuthorityTokenManager:
    """SUNAT のアクセストークンを client_credentials で取得・キャッシュするクラス"""

    def __init__(self, client_id: str, client_secret: str, token_url: Optional[str] = None,
                 scope: Optional[str] = None, timeout: Optional[float] = None,
                 expiry_margin: Optional[int] = None):
        cfg = load_reconciliation_config()
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url or cfg["authority"]["token_url"].format(client_id=client_id)
        self.scope = scope or cfg["authority"]["scope"]
        self.timeout = timeout if timeout is not None else cfg["verification"]["request_timeout_seconds"]
        self.expiry_margin = (
            expiry_margin if expiry_margin is not None else cfg["verification"]["token_expiry_margin_seconds"]
        )
        self._cached: Optional[Dict] = None

    def request_token(self) -> Dict:
        """新しいアクセストークンを取得"""
        data = {
            "grant_type": "client_credentials",
            "scope": self.scope,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }

        # デバッグ情報を表示（センシティブな情報は隠す）
        print("🔐 SUNAT - 新しいトークンを要求中...")
        print(f"  - Client ID: {self.client_id[:10]}... (length: {len(self.client_id)})")

        try:
            response = requests.post(self.token_url, data=data, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            print(f"❌ トークン取得の通信エラー: {e}")
            raise ExternalServiceError(f"SUNAT token request failed: {e}") from e

        if response.status_code != 200:
            print(f"❌ トークン取得エラー: ステータスコード {response.status_code}")
            raise ExternalServiceError(
                f"SUNAT token error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            token_data = response.json()
        except ValueError as e:
            raise ExternalServiceError(f"SUNAT token response is not JSON: {str(response.text)[:200]}") from e
        if not isinstance(token_data, dict) or not token_data.get("access_token"):
            raise ExternalServiceError("SUNAT token response has no access_token")

        # 有効期限の少し前に失効扱いにする
        expires_in = int(token_data.get("expires_in", 3600))
        expires_at = datetime.now() + timedelta(seconds=max(0, expires_in - self.expiry_margin))
        token_data["expires_at"] = expires_at.isoformat()
        print("✅ SUNAT - トークンを取得しました")
        return token_data

    def get_token(self) -> str:
        """キャッシュが有効ならそれを、切れていれば新しいトークンを返す"""
        if self._cached and datetime.now() < datetime.fromisoformat(self._cached["expires_at"]):
            return self._cached["access_token"]
        self._cached = self.request_token()
        return self._cached["access_token"]

    def invalidate(self):
        """401を受けた時などにキャッシュを破棄"""
        self._cached = None


def token_manager_from_env() -> AuthorityTokenManager:
    settings = load_authority_settings()
    return AuthorityTokenManager(settings["client_id"], settings["client_secret"])
