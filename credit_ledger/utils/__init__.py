"""
Utilities package for the credit ledger.

Exports shared helpers for logging and timestamp handling.
Keep this package lightweight and free of ledger-specific logic.
"""

from credit_ledger.utils.logging import configure_logging, get_logger
from credit_ledger.utils.timestamps import MILLISECOND_THRESHOLD, to_utc_datetime

__all__ = [
    "configure_logging",
    "get_logger",
    "MILLISECOND_THRESHOLD",
    "to_utc_datetime",
]
