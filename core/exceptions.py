"""Shared exception types for the scan/ledger core."""

import errno
from datetime import datetime
from typing import Optional


class MarketDataUnavailable(RuntimeError):
    """Raised when quotes or candles cannot be fetched for a symbol."""

    def __init__(self, message: str, source: str = "", original: Optional[Exception] = None):
        super().__init__(message)
        self.source = source
        self.original = original


class MarketDataBlocked(MarketDataUnavailable):
    """Raised while the upstream data source has us in a cool-down."""

    def __init__(self, until: Optional[datetime] = None, source: str = ""):
        when = until.isoformat() if until else "unknown"
        super().__init__(f"{source or 'market data'} blocked until {when}", source=source)
        self.until = until


class StorageQuotaExceeded(OSError):
    """Raised when the durable store rejects a write for lack of space."""


_QUOTA_ERRNOS = {errno.ENOSPC}
if hasattr(errno, "EDQUOT"):
    _QUOTA_ERRNOS.add(errno.EDQUOT)


def is_quota_error(exc: BaseException) -> bool:
    """True if ``exc`` means the store is out of space rather than broken."""
    if isinstance(exc, StorageQuotaExceeded):
        return True
    if isinstance(exc, OSError) and exc.errno in _QUOTA_ERRNOS:
        return True
    return "quota" in str(exc).lower()
