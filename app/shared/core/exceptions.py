from typing import Optional, Dict, Any, Sequence


class UsageSentinelException(Exception):
    """Base exception for all Usage Sentinel errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class ConfigurationError(UsageSentinelException):
    """Raised when accounts, credentials or monitoring configuration are missing or invalid."""
    def __init__(
        self,
        message: str,
        code: str = "config_error",
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 500,
    ):
        super().__init__(message, code=code, status_code=status_code, details=details)


class UpstreamFetchError(UsageSentinelException):
    """Raised when a single account/SKU analytics query fails or times out."""
    def __init__(
        self,
        message: str,
        account_id: Optional[str] = None,
        sku_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = {"account_id": account_id, "sku_id": sku_id}
        merged.update(details or {})
        super().__init__(message, code="upstream_fetch_error", status_code=502, details=merged)
        self.account_id = account_id
        self.sku_id = sku_id


class CacheWriteError(UsageSentinelException):
    """Raised when persisting a cache entry fails."""
    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message, code="cache_write_error", status_code=503, details={"key": key})
        self.key = key


class CacheIncompleteError(UsageSentinelException):
    """Raised when a cached bundle lacks a SKU that is currently enabled."""
    def __init__(self, missing_skus: Sequence[str], key: Optional[str] = None):
        missing = sorted(missing_skus)
        super().__init__(
            f"Cached bundle is missing enabled SKUs: {', '.join(missing)}",
            code="cache_incomplete",
            status_code=409,
            details={"missing_skus": missing, "key": key},
        )
        self.missing_skus = missing


class NotificationDeliveryError(UsageSentinelException):
    """Raised when the outbound webhook rejects or cannot receive a message."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(
            message,
            code="notification_delivery_error",
            status_code=502,
            details={"upstream_status": status_code},
        )
        self.upstream_status = status_code
