"""照合コアで使う例外クラス"""

from typing import Optional


class ReconciliationError(Exception):
    """照合コアの基底例外"""


class ValidationError(ReconciliationError):
    """入力不足・対象外など、呼び出し側で修正できるエラー"""


class TransitionError(ValidationError):
    """承認ワークフローで許可されていない状態遷移"""


class NotFoundError(ReconciliationError):
    """対象の書類・精算書が存在しない"""


class ConflictError(ReconciliationError):
    """一意制約に違反した（同時登録の競合など）

    Args:
        existing_id: 先に登録された書類のID（判明している場合）
    """

    def __init__(self, message: str, existing_id: Optional[str] = None):
        super().__init__(message)
        self.existing_id = existing_id


class ExternalServiceError(ReconciliationError):
    """SUNAT・会計DBなど外部システムの通信/認証エラー"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConcurrencyError(ReconciliationError):
    """採番トランザクションがタイムアウト内に完了しなかった"""
