"""
Rate limit key derivation and route policies.
"""

from typing import Dict, Optional, Tuple

from .base import RateLimitOptions

HOUR_MS = 60 * 60 * 1000
MINUTE_MS = 60 * 1000

# Per-route budgets. Stricter for auth endpoints, tighter for costly AI calls.
ROUTE_POLICIES: Dict[str, RateLimitOptions] = {
    "auth/register": RateLimitOptions(limit=5, window_ms=HOUR_MS),
    "auth/login": RateLimitOptions(limit=10, window_ms=15 * MINUTE_MS),
    "auth/forgot-password": RateLimitOptions(limit=3, window_ms=HOUR_MS),
    "ai/chat": RateLimitOptions(limit=100, window_ms=HOUR_MS),
    "ai/embeddings": RateLimitOptions(limit=200, window_ms=HOUR_MS),
    "rag/query": RateLimitOptions(limit=50, window_ms=HOUR_MS),
    "rag/upload": RateLimitOptions(limit=10, window_ms=HOUR_MS),
    "admin": RateLimitOptions(limit=60, window_ms=MINUTE_MS),
    "default": RateLimitOptions(limit=200, window_ms=HOUR_MS),
}

_PATH_SCOPES: Tuple[Tuple[str, str], ...] = (
    ("/api/auth/signup", "auth/register"),
    ("/api/auth/register", "auth/register"),
    ("/api/auth/signin", "auth/login"),
    ("/api/auth/login", "auth/login"),
    ("/api/auth/forgot-password", "auth/forgot-password"),
    ("/api/auth/reset", "auth/forgot-password"),
    ("/api/chat", "ai/chat"),
    ("/api/ai/embeddings", "ai/embeddings"),
    ("/api/rag/query", "rag/query"),
    ("/api/rag/upload", "rag/upload"),
    ("/admission/", "admin"),
)


def scope_for_path(path: str) -> str:
    """Categorize a request path into a rate limit scope."""
    for prefix, scope in _PATH_SCOPES:
        if path.startswith(prefix):
            return scope
    return "default"


def policy_for_scope(scope: str, default: Optional[RateLimitOptions] = None) -> RateLimitOptions:
    """Budget for a scope; unknown scopes get ``default`` or the catch-all."""
    if scope in ROUTE_POLICIES:
        return ROUTE_POLICIES[scope]
    return default or ROUTE_POLICIES["default"]


def derive_key(
    scope: str,
    user_id: Optional[str] = None,
    ip: Optional[str] = None,
    route: Optional[str] = None
) -> str:
    """Pick exactly one identity for the bucket key.

    Authenticated user first, then client IP, then an anonymous bucket
    shared by everyone on the route. Identities are never combined, so
    switching identity mid-window cannot mint a fresh budget.
    """
    if user_id:
        return f"{scope}:user:{user_id}"
    if ip:
        return f"{scope}:ip:{ip}"
    return f"{scope}:anon:{route or 'global'}"
