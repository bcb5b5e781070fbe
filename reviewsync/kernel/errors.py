from __future__ import annotations

import re
from typing import Any


_ERROR_CODE_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")


class ReviewSyncError(Exception):
    """Base typed error.

    - Stable `code` for programmatic handling across clients.
    - Human-readable `message` for status records and UI surfaces.
    - Optional `meta` payload for debugging (safe-to-expose only).
    """

    def __init__(
        self,
        *,
        code: str,
        message: str,
        status_code: int = 500,
        meta: dict[str, Any] | None = None,
    ) -> None:
        if not _ERROR_CODE_RE.fullmatch(code):
            raise ValueError(
                "Invalid error code. Expected dot-separated lowercase tokens, "
                f"got: {code!r}"
            )
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = int(status_code)
        self.meta = dict(meta or {})

    def to_public_dict(self, *, request_id: str | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            # Keep `detail` for compatibility with FastAPI error surfaces.
            "detail": self.message,
            "code": self.code,
        }
        if request_id:
            payload["request_id"] = request_id
        if self.meta:
            payload["meta"] = self.meta
        return payload


class NotFoundError(ReviewSyncError):
    def __init__(self, *, message: str = "Not found", code: str = "resource.not_found", meta: dict[str, Any] | None = None):
        super().__init__(code=code, message=message, status_code=404, meta=meta)


class UnauthorizedError(ReviewSyncError):
    def __init__(
        self,
        *,
        message: str = "Unauthorized",
        code: str = "auth.unauthorized",
        meta: dict[str, Any] | None = None,
        status_code: int = 403,
    ):
        super().__init__(code=code, message=message, status_code=status_code, meta=meta)


class ConflictError(ReviewSyncError):
    def __init__(
        self,
        *,
        message: str = "Conflict",
        code: str = "request.conflict",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=409, meta=meta)


class ValidationError(ReviewSyncError):
    def __init__(
        self,
        *,
        message: str = "Validation error",
        code: str = "request.validation_error",
        meta: dict[str, Any] | None = None,
        status_code: int = 422,
    ):
        super().__init__(code=code, message=message, status_code=status_code, meta=meta)


class ReauthRequired(ReviewSyncError):
    """The tenant's provider grant is gone; only the user can fix it by reconnecting."""

    MISSING_CONNECTION = "missing_connection"
    MISSING_REFRESH_TOKEN = "missing_refresh_token"
    TOKEN_REVOKED = "token_revoked"

    def __init__(self, *, tenant_id: str, reason: str, message: str | None = None):
        super().__init__(
            code="auth.reauth_required",
            message=message or f"reauth_required: {reason}",
            status_code=409,
            meta={"tenant_id": tenant_id, "reason": reason},
        )
        self.tenant_id = tenant_id
        self.reason = reason


class ProviderError(ReviewSyncError):
    def __init__(
        self,
        *,
        message: str = "Provider request failed",
        code: str = "provider.error",
        upstream_status: int | None = None,
        meta: dict[str, Any] | None = None,
    ):
        merged = dict(meta or {})
        if upstream_status is not None:
            merged["upstream_status"] = upstream_status
        super().__init__(code=code, message=message, status_code=502, meta=merged)
        self.upstream_status = upstream_status


class RateLimited(ProviderError):
    def __init__(self, *, message: str = "Provider rate limit exceeded", meta: dict[str, Any] | None = None):
        super().__init__(message=message, code="provider.rate_limited", upstream_status=429, meta=meta)


class EnqueueConflict(ConflictError):
    """An equivalent job is already in flight."""

    def __init__(self, *, message: str = "Job already in flight", meta: dict[str, Any] | None = None):
        super().__init__(message=message, code="jobs.enqueue_conflict", meta=meta)
