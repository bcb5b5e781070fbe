from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from reviewsync.kernel.errors import ReviewSyncError

logger = structlog.get_logger()


def get_request_id(request: Request) -> str | None:
    return getattr(getattr(request, "state", None), "request_id", None)


def register_exception_handlers(app: FastAPI) -> None:
    """Typed errors become `{detail, code, request_id, meta}` bodies."""

    @app.exception_handler(ReviewSyncError)
    async def _review_sync_error_handler(request: Request, exc: ReviewSyncError) -> Response:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_public_dict(request_id=get_request_id(request)),
        )

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException) -> Response:
        payload: dict[str, Any] = {"detail": exc.detail, "code": f"http.{exc.status_code}"}
        request_id = get_request_id(request)
        if request_id:
            payload["request_id"] = request_id
        return JSONResponse(status_code=int(exc.status_code), content=payload, headers=dict(exc.headers or {}))

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
        payload: dict[str, Any] = {"detail": exc.errors(), "code": "request.validation_error"}
        request_id = get_request_id(request)
        if request_id:
            payload["request_id"] = request_id
        return JSONResponse(status_code=422, content=payload)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception) -> Response:
        request_id = get_request_id(request)
        logger.exception("Unhandled exception", request_id=request_id, error=str(exc))
        payload: dict[str, Any] = {"detail": "Internal Server Error", "code": "internal.unhandled"}
        if request_id:
            payload["request_id"] = request_id
        return JSONResponse(status_code=500, content=payload)
