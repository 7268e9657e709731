"""エラー分類.

呼び出し側（HTTP ハンドラ等）は code で分岐する。HTTP ステータスへの
変換はこのパッケージの責務ではない。
"""

from __future__ import annotations

from typing import Any


class SurfacedError(Exception):
    """全エラーの基底クラス."""

    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class CatalogUnavailableError(SurfacedError):
    """カタログ（Shopify）の取得失敗."""

    code = "CATALOG_UNAVAILABLE"
    retryable = True


class AuditFailedError(SurfacedError):
    """監査実行の中断. 監査は冪等なので丸ごと再実行してよい."""

    code = "AUDIT_FAILED"
    retryable = True


class PlatformUnavailableError(SurfacedError):
    """AI プラットフォーム 1 件の失敗. 実行全体は止めない."""

    code = "PLATFORM_UNAVAILABLE"
    retryable = True


class QuotaExceededError(SurfacedError):
    code = "QUOTA_EXCEEDED"


class ValidationError(SurfacedError):
    code = "VALIDATION_ERROR"


class NotFoundError(SurfacedError):
    code = "NOT_FOUND"


class RateLimitedError(SurfacedError):
    code = "RATE_LIMITED"
    retryable = True
