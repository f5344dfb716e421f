"""
Admission-control service.

Gatekeepers consulted on the request path before privileged or costly
work: rate limiting, quota ledger, account lockout, session revocation
and CSRF verification.
"""
