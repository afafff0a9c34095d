from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger


class ApiError(Exception):
    status_code = 500

    def __init__(self, error: str, *, message: str | None = None, details: Any = None, **extra: Any) -> None:
        super().__init__(error)
        self.error = error
        self.message = message
        self.details = details
        self.extra = extra

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {'error': self.error}
        if self.message:
            body['message'] = self.message
        if self.details is not None:
            body['details'] = self.details
        body.update(self.extra)
        return body


class BadRequestError(ApiError):
    status_code = 400


class UnauthorizedError(ApiError):
    status_code = 401


class ForbiddenError(ApiError):
    status_code = 403


class NotFoundError(ApiError):
    status_code = 404

    def __init__(self, resource: str = 'Resource') -> None:
        super().__init__(f'{resource} not found')


class ConflictError(ApiError):
    status_code = 409


class UpstreamError(ApiError):
    """A dependency (payment provider, ERP) failed; surfaced as a 500."""

    status_code = 500


def validation_details(exc: RequestValidationError) -> list[dict[str, str]]:
    details = []
    for err in exc.errors():
        # Drop the leading 'body'/'query' marker so paths match the payload.
        loc = [str(part) for part in err.get('loc', ())]
        if loc and loc[0] in {'body', 'query', 'path', 'header'}:
            loc = loc[1:]
        details.append({'path': '.'.join(loc), 'message': err.get('msg', 'Invalid value'), 'code': err.get('type', 'invalid')})
    return details


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        if exc.status_code >= 500:
            logger.error('{} {} failed: {}', request.method, request.url.path, exc.error)
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={'success': False, 'error': 'Validation failed', 'details': validation_details(exc)},
        )
