from __future__ import annotations

from typing import Optional


class AplDailyError(Exception):
    pass


class ConfigError(AplDailyError):
    pass


class CatalogError(AplDailyError):
    pass


class StoreError(AplDailyError):
    """A StateStore call failed (timeout, auth, type mismatch, transport)."""

    def __init__(self, operation: str, key: str, cause: Optional[BaseException] = None) -> None:
        self.operation = operation
        self.key = key
        self.cause = cause
        message = f"store {operation} failed for {key!r}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class WebhookVerificationError(AplDailyError):
    status_code = 500


class InvalidEventDataError(WebhookVerificationError):
    status_code = 400


class InvalidAppKeyError(WebhookVerificationError):
    status_code = 401


class VerifyAppKeyError(WebhookVerificationError):
    status_code = 500
