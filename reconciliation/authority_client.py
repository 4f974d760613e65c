"""SUNAT API クライアント（comprobante 検証・RUC 照会）"""

import time
import requests
from typing import Dict, Optional

from .config_loader import load_authority_settings, load_reconciliation_config
from .errors import ExternalServiceError
from .token_manager import AuthorityTokenManager, token_manager_from_env


RETRYABLE_STATUS = {401, 403, 408, 429}


def _is_retryable(error: ExternalServiceError) -> bool:
    # status_code なし = 通信エラー/タイムアウト
    if error.status_code is None:
        return True
    return error.status_code in RETRYABLE_STATUS or error.status_code >= 500


def _json_body(response, what: str) -> Dict:
    """JSON以外（ゲートウェイのHTMLなど）は通信エラーと同じ扱いにする"""
    try:
        body = response.json()
    except ValueError as e:
        raise ExternalServiceError(f"SUNAT {what} returned a non-JSON body: {str(response.text)[:200]}") from e
    if not isinstance(body, dict):
        raise ExternalServiceError(f"SUNAT {what} returned an unexpected body: {str(body)[:200]}")
    return body


class AuthorityClient:
    """SUNAT API の簡易クライアント"""

    def __init__(self, token_manager: AuthorityTokenManager, company_ruc: str,
                 api_base_url: Optional[str] = None, timeout: Optional[float] = None,
                 network_retries: Optional[int] = None, retry_delay: Optional[float] = None):
        cfg = load_reconciliation_config()
        vcfg = cfg["verification"]
        self.token_manager = token_manager
        self.company_ruc = company_ruc
        self.base_url = (api_base_url or cfg["authority"]["api_base_url"]).rstrip("/")
        self.validate_url = f"{self.base_url}/{company_ruc}/validarcomprobante"
        self.timeout = timeout if timeout is not None else vcfg["request_timeout_seconds"]
        self.network_retries = max(1, int(network_retries if network_retries is not None else vcfg["network_retries"]))
        self.retry_delay = retry_delay if retry_delay is not None else vcfg["retry_delay_seconds"]

    def _headers(self) -> Dict:
        return {
            "Authorization": f"Bearer {self.token_manager.get_token()}",
            "Content-Type": "application/json",
        }

    def _validate_once(self, payload: Dict) -> Dict:
        headers = self._headers()
        try:
            response = requests.post(self.validate_url, headers=headers, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ExternalServiceError(f"SUNAT validation request failed: {e}") from e

        if response.status_code != 200:
            raise ExternalServiceError(
                f"SUNAT validation error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        body = _json_body(response, "validation")
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        if "estadoCp" not in data:
            raise ExternalServiceError(
                f"SUNAT validation response without estadoCp: {body}", status_code=response.status_code
            )
        return {
            "state_code": str(data.get("estadoCp")),
            "ruc_state": data.get("estadoRuc"),
            "observations": list(data.get("observaciones") or []),
        }

    def validate(self, payload: Dict) -> Dict:
        """comprobante を1回検証する

        通信・認証エラーのみ固定回数・固定間隔で再試行し、
        それでも失敗したら ExternalServiceError を送出する。
        """
        print(f"📝 SUNAT - 検証中: {payload.get('numRuc')} {payload.get('codComp')} "
              f"{payload.get('numeroSerie')}-{payload.get('numero')} {payload.get('fechaEmision')}")
        last_error: Optional[ExternalServiceError] = None
        for attempt in range(self.network_retries):
            try:
                return self._validate_once(payload)
            except ExternalServiceError as e:
                last_error = e
                if not _is_retryable(e):
                    print(f"❌ SUNAT - 再試行できないエラー: {e}")
                    raise
                print(f"⚠️ SUNAT - 通信エラー (試行 {attempt + 1}/{self.network_retries}): {e}")
                if e.status_code == 401:
                    self.token_manager.invalidate()
                if attempt < self.network_retries - 1:
                    time.sleep(self.retry_delay)
        raise last_error

    def lookup_ruc(self, tax_id: str) -> Dict:
        """RUC の登録情報を照会する（1回のみ・再試行なし）"""
        print(f"🔍 SUNAT - RUC照会: {tax_id}")
        headers = self._headers()
        try:
            response = requests.get(f"{self.base_url}/{tax_id}", headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ExternalServiceError(f"SUNAT RUC query failed: {e}") from e
        if response.status_code != 200:
            raise ExternalServiceError(
                f"SUNAT RUC query error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        data = _json_body(response, "RUC query")
        print(f"✅ SUNAT - RUC情報を取得: {data.get('ddpNombre')} ({data.get('descEstado')})")

        # 住所は表示用なので取れなくても続行
        try:
            address = requests.get(f"{self.base_url}/{tax_id}/domiciliofiscal", headers=headers, timeout=self.timeout)
            if address.status_code == 200:
                data["domicilioFiscal"] = _json_body(address, "address query")
        except (requests.exceptions.RequestException, ExternalServiceError) as e:
            print(f"⚠️ SUNAT - 住所を取得できませんでした（処理は続行）: {e}")
        return data


def interpret_ruc_status(status: Optional[str]) -> Dict:
    if not status:
        return {"active": False, "message": "Estado desconocido"}
    upper = status.upper()
    if "ACTIVO" in upper:
        return {"active": True, "message": "RUC ACTIVO"}
    if "BAJA DEFINITIVA" in upper:
        return {"active": False, "message": "RUC con BAJA DEFINITIVA"}
    if "BAJA" in upper:
        return {"active": False, "message": "RUC dado de BAJA"}
    if "SUSPENDIDO" in upper:
        return {"active": False, "message": "RUC SUSPENDIDO"}
    return {"active": False, "message": status}


def authority_client_from_env() -> AuthorityClient:
    settings = load_authority_settings()
    return AuthorityClient(token_manager_from_env(), settings["company_ruc"])
