"""Utility modules for SolPay."""

from solpay.utils.clock import utcnow
from solpay.utils.locks import KeyedLock, LockTimeoutError

__all__ = ["KeyedLock", "LockTimeoutError", "utcnow"]
