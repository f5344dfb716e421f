"""
Session tracking, distributed revocation and signed session tokens.
"""

from .revocation import RevocationCheck, SessionRevocationStore
from .tokens import SessionTokenService

__all__ = ["RevocationCheck", "SessionRevocationStore", "SessionTokenService"]
