"""
Brute-force lockout guard for authentication identifiers.
"""

from .guard import FailedAttemptResult, LockoutGuard, LockStatus

__all__ = ["FailedAttemptResult", "LockoutGuard", "LockStatus"]
