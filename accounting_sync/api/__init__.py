"""
accounting_sync.api - Accounting provider REST client
"""

from accounting_sync.api.accounting_api import (
    AccountingAPI,
    AccountingAPIError,
    NetworkTransientError,
    RateLimitedError,
    ValidationError,
    parse_retry_after,
)

__all__ = [
    "AccountingAPI",
    "AccountingAPIError",
    "NetworkTransientError",
    "RateLimitedError",
    "ValidationError",
    "parse_retry_after",
]
