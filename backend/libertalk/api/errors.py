"""Global error handlers rendering the ``{success: false, error: ...}`` envelope."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from libertalk.api.request_id import get_request_id
from libertalk.domain.matchmaking.errors import MatchmakingError
from libertalk.infra.rate_limit import RateLimitExceeded

logger = logging.getLogger(__name__)


def error_response(
	request: Request,
	status_code: int,
	code: str,
	message: str,
	*,
	details: Optional[Any] = None,
	retryable: bool = False,
) -> JSONResponse:
	error: dict[str, Any] = {"code": code, "message": message}
	if retryable:
		error["retryable"] = True
	if details is not None:
		error["details"] = details
	payload = {"success": False, "error": error, "request_id": get_request_id(request)}
	return JSONResponse(status_code=status_code, content=payload)


def install_error_handlers(app: FastAPI) -> None:
	@app.exception_handler(MatchmakingError)
	async def matchmaking_exc_handler(request: Request, exc: MatchmakingError):  # type: ignore[override]
		if exc.status_code >= 500:
			logger.warning("matchmaking request failed: %s", exc.code)
		return error_response(request, exc.status_code, exc.code, exc.message, retryable=exc.retryable)

	@app.exception_handler(RateLimitExceeded)
	async def rate_limit_exc_handler(request: Request, exc: RateLimitExceeded):  # type: ignore[override]
		return error_response(request, 429, "rate_limited", f"too many {exc.kind} requests", retryable=True)

	@app.exception_handler(RequestValidationError)
	async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
		errors = [
			{"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
			for err in exc.errors()
		]
		return error_response(request, 422, "validation_error", "request validation failed", details=errors)

	@app.exception_handler(StarletteHTTPException)
	async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
		detail = exc.detail if isinstance(exc.detail, str) else "http_error"
		return error_response(request, exc.status_code, detail, detail)
