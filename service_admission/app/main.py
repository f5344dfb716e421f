"""
Admission-control service.

Wires the gates from configuration and exposes the operational surface:
CSRF token issuance, quota checks and usage recording, lockout and
session administration, and rate limit inspection.
"""

import hmac
import secrets
from dataclasses import asdict
from typing import Dict, Optional

from fastapi import Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import AuthenticationError, LedgerUnavailableError, StoreUnavailableError
from .csrf import CSRF_HEADER_NAME, CsrfVerifier
from .gates import AdmissionGates
from .lockout import LockoutGuard
from .quota import QuotaLedger, UsageMeta
from .quota.postgres import PostgresUsageRepository
from .quota.repository import InMemoryUsageRepository, UsageRepository
from .ratelimit import create_rate_limiter
from .ratelimit.keys import policy_for_scope
from .ratelimit.middleware import RateLimitMiddleware
from .sessions import SessionRevocationStore, SessionTokenService
from .store import InMemoryBucketStore, RedisBucketStore


class QuotaCheckRequest(BaseModel):
    user_id: str
    estimate_tokens: int = Field(ge=0)


class UsageRequest(BaseModel):
    user_id: str
    model: str
    tokens_in: int = Field(ge=0)
    tokens_out: int = Field(ge=0)
    cost_usd: Optional[float] = Field(default=None, ge=0)
    meta: UsageMeta = Field(default_factory=UsageMeta)


class AdmissionService(BaseService):
    """Admission-control service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None):
        super().__init__("admission", 8020, config)

        self.store = self._create_store()
        self.repository = self._create_repository()
        self.rate_limiter = create_rate_limiter(self.config, self.store)

        self.ledger = QuotaLedger(
            self.repository,
            idempotency_window_seconds=self.config.quota_idempotency_window_seconds,
            metrics=self.metrics
        )
        self.lockout = LockoutGuard(
            self.store,
            max_attempts=self.config.lockout_max_attempts,
            attempt_window_seconds=self.config.lockout_attempt_window_seconds,
            lockout_duration_seconds=self.config.lockout_duration_seconds,
            metrics=self.metrics
        )
        self.revocations = SessionRevocationStore(
            self.store,
            session_set_ttl_seconds=self.config.session_set_ttl_seconds,
            revocation_ttl_seconds=self.config.session_revocation_ttl_seconds,
            metrics=self.metrics
        )
        auth_secret = self._resolve_secret(self.config.auth_secret, "auth_secret")
        self.session_tokens = SessionTokenService(
            auth_secret,
            self.revocations,
            ttl_seconds=self.config.session_token_ttl_seconds
        )
        self.csrf = CsrfVerifier(
            self._resolve_secret(self.config.csrf_secret or auth_secret, "csrf_secret"),
            expiry_seconds=self.config.csrf_token_expiry_seconds,
            exempt_paths=self.config.csrf_exempt_paths,
            secure_cookie=self.config.csrf_cookie_secure
        )
        self.gates = AdmissionGates(
            RateLimitMiddleware(self.rate_limiter, trusted_proxies=self.config.rate_limit_trusted_proxies),
            self.ledger,
            self.lockout,
            self.session_tokens,
            self.csrf,
            metrics=self.metrics
        )

        self.app.state.service = self
        self._setup_admission_routes()

    def _create_store(self):
        if self.config.store_backend == "redis":
            return RedisBucketStore(self.config.redis_url)
        if self.config.store_backend == "memory":
            return InMemoryBucketStore()
        raise ValueError(f"Unknown store backend: {self.config.store_backend}")

    def _create_repository(self) -> UsageRepository:
        if self.config.ledger_backend == "postgres":
            return PostgresUsageRepository(self.config.postgres_dsn)
        if self.config.ledger_backend == "memory":
            return InMemoryUsageRepository(
                retention_seconds=self.config.quota_idempotency_window_seconds
            )
        raise ValueError(f"Unknown ledger backend: {self.config.ledger_backend}")

    def _resolve_secret(self, value: str, name: str) -> str:
        if value and len(value) >= 32:
            return value
        if self.config.env == "local":
            self.logger.warning("Secret missing or too short, using an ephemeral one", setting=name)
            return secrets.token_urlsafe(48)
        raise ValueError(f"{name} must be at least 32 characters long")

    def _authorize_admin(self, request: Request):
        """Require the admin API key; open only in local env without a key."""
        expected = self.config.admin_api_key
        if not expected:
            if self.config.env == "local":
                return
            raise AuthenticationError("Admin API key not configured")

        provided = request.headers.get("X-API-Key", "")
        if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            raise AuthenticationError("Invalid API key")

    async def startup(self):
        await self.store.start()
        await self.repository.start()
        await self.rate_limiter.start()

    async def shutdown(self):
        await self.rate_limiter.stop()
        await self.repository.stop()
        await self.store.stop()

    def _setup_admission_routes(self):
        """Set up admission-specific routes."""
        gates = self.gates

        async def admin_gate(request: Request):
            self._authorize_admin(request)
            await gates.admit(request, scope="admin")

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "admission",
                "message": "Admission control and usage governance",
                "version": "1.0.0"
            }

        @self.app.get("/csrf/token")
        async def issue_csrf_token():
            """Issue a CSRF token as cookie plus the value to echo in the header."""
            token = self.csrf.generate_csrf_token()
            response = JSONResponse({"csrf_token": token.token, "header": CSRF_HEADER_NAME})
            response.set_cookie(value=token.cookie_value, **self.csrf.cookie_config())
            return response

        @self.app.post("/admission/quota/check", dependencies=[Depends(admin_gate)])
        async def check_quota(body: QuotaCheckRequest):
            """Pre-spend quota check."""
            result = await self.ledger.can_spend(body.user_id, body.estimate_tokens)
            return result.model_dump(mode="json")

        @self.app.post("/admission/usage", dependencies=[Depends(admin_gate)])
        async def record_usage(body: UsageRequest):
            """Record actual spend for a completed operation."""
            result = await self.ledger.record_usage(
                user_id=body.user_id,
                model=body.model,
                tokens_in=body.tokens_in,
                tokens_out=body.tokens_out,
                cost_usd=body.cost_usd,
                meta=body.meta
            )
            return result.model_dump(mode="json")

        @self.app.get("/admission/users/{user_id}/usage", dependencies=[Depends(admin_gate)])
        async def usage_summary(user_id: str):
            """Monthly usage summary."""
            summary = await self.ledger.get_usage_summary(user_id)
            if summary is None:
                raise HTTPException(status_code=404, detail="User not found")
            return summary.model_dump(mode="json")

        @self.app.get("/admission/lockout/{identifier}", dependencies=[Depends(admin_gate)])
        async def lock_status(identifier: str):
            """Current lock state of an identifier."""
            status = await self.lockout.is_account_locked(identifier)
            return asdict(status)

        @self.app.post("/admission/lockout/{identifier}/unlock", dependencies=[Depends(admin_gate)])
        async def unlock(identifier: str):
            """Administrative unlock."""
            await self.lockout.unlock_account(identifier)
            return {"unlocked": True}

        @self.app.get("/admission/users/{user_id}/sessions", dependencies=[Depends(admin_gate)])
        async def user_sessions(user_id: str):
            """Tracked sessions of a user."""
            session_ids = await self.revocations.get_user_active_sessions(user_id)
            return {"user_id": user_id, "sessions": session_ids, "count": len(session_ids)}

        @self.app.post("/admission/sessions/{session_id}/revoke", dependencies=[Depends(admin_gate)])
        async def revoke_session(session_id: str):
            """Revoke one session."""
            await self.revocations.revoke_session(session_id)
            return {"revoked": True, "session_id": session_id}

        @self.app.post("/admission/users/{user_id}/sessions/revoke-all", dependencies=[Depends(admin_gate)])
        async def revoke_all_sessions(user_id: str):
            """Log a user out everywhere."""
            count = await self.revocations.revoke_all_user_sessions(user_id)
            return {"user_id": user_id, "revoked": count}

        @self.app.get("/admission/ratelimit/{key:path}", dependencies=[Depends(admin_gate)])
        async def rate_limit_status(key: str):
            """Budget of a derived key (e.g. ``ai/chat:user:42``) without consuming."""
            scope = key.split(":", 1)[0]
            opts = policy_for_scope(scope, self.rate_limiter.default_options)
            result = await self.rate_limiter.status(key, opts)
            return {"key": key, **result.to_dict()}

        @self.app.delete("/admission/ratelimit/{key:path}", dependencies=[Depends(admin_gate)])
        async def rate_limit_reset(key: str):
            """Forget a rate limit key."""
            return {"key": key, "reset": await self.rate_limiter.reset(key)}

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check bucket store and ledger connectivity."""
        dependencies = {}

        try:
            await self.store.ping()
            dependencies["store"] = "ok"
        except StoreUnavailableError:
            dependencies["store"] = "unavailable"

        try:
            await self.repository.ping()
            dependencies["ledger"] = "ok"
        except LedgerUnavailableError:
            dependencies["ledger"] = "unavailable"

        return dependencies


def create_app(config: Optional[ServiceConfig] = None):
    """Create FastAPI application."""
    service = AdmissionService(config)
    return service.app


if __name__ == "__main__":
    service = AdmissionService(get_config("admission", 8020))
    service.run()
