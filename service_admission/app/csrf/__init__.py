"""
Stateless double-submit CSRF protection.
"""

from .verifier import CSRF_HEADER_NAME, CsrfToken, CsrfVerifier

__all__ = ["CSRF_HEADER_NAME", "CsrfToken", "CsrfVerifier"]
