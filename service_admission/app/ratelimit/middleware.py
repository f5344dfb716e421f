"""
Rate limiting helpers for FastAPI request handling.
"""

from typing import Optional

from fastapi import Request

from shared.logging import get_logger
from .base import RateLimiter, RateLimitOptions, RateLimitResult
from .keys import derive_key, policy_for_scope, scope_for_path


class RateLimitMiddleware:
    """Applies a rate limiter to incoming requests.

    ``trusted_proxies`` is the number of reverse proxies in front of the
    service. With none, forwarding headers are ignored and the socket peer
    is the client. With ``n``, the ``n``-th ``X-Forwarded-For`` entry from
    the right is the client; entries left of it are caller-controlled.
    """

    def __init__(self, rate_limiter: RateLimiter, trusted_proxies: int = 0):
        if trusted_proxies < 0:
            raise ValueError("trusted_proxies must be non-negative")
        self.rate_limiter = rate_limiter
        self.trusted_proxies = trusted_proxies
        self.logger = get_logger("admission.rate_limit_middleware")

    async def check_request(
        self,
        request: Request,
        scope: Optional[str] = None,
        opts: Optional[RateLimitOptions] = None
    ) -> RateLimitResult:
        """Consume one unit for the request's identity within ``scope``."""
        scope = scope or scope_for_path(request.url.path)
        key = derive_key(
            scope,
            user_id=self._get_user_id(request),
            ip=self._get_client_ip(request),
            route=request.url.path
        )
        opts = opts or policy_for_scope(scope, self.rate_limiter.default_options)

        result = await self.rate_limiter.consume(key, opts)
        request.state.rate_limit = result
        return result

    def _get_user_id(self, request: Request) -> Optional[str]:
        """Authenticated user id, set on request state by the auth layer."""
        user_info = getattr(request.state, 'user_info', None)
        if isinstance(user_info, dict):
            return user_info.get('user_id')
        return None

    def _get_client_ip(self, request: Request) -> Optional[str]:
        """Extract the client address from trusted proxy headers or the socket."""
        peer = request.client.host if request.client else None
        if not self.trusted_proxies:
            return peer

        forwarded_for = request.headers.get('X-Forwarded-For')
        if isinstance(forwarded_for, str) and forwarded_for:
            hops = [hop.strip() for hop in forwarded_for.split(',') if hop.strip()]
            if len(hops) >= self.trusted_proxies:
                return hops[-self.trusted_proxies]

        real_ip = request.headers.get('X-Real-IP')
        if isinstance(real_ip, str) and real_ip:
            return real_ip.strip()

        return peer
