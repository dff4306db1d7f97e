"""
api/respond.py -- Map account flow results onto HTTP responses.

Every failure leaves through fail_response() so clients always receive the
ErrorResponse envelope. Status comes from the failure kind unless the route
overrides it for a specific code (POST /register answers a taken username
with 401, POST /me with 403).

Responses that establish or end a session carry Cache-Control: no-store [M5].
"""

from __future__ import annotations

from fastapi.responses import JSONResponse
from pydantic import BaseModel

from accounts.results import Fail, FailKind
from api.models import ErrorDetail, ErrorResponse

_STATUS_BY_KIND = {
    FailKind.INVALID: 400,
    FailKind.UNAUTHENTICATED: 401,
    FailKind.FORBIDDEN: 403,
    FailKind.NOT_FOUND: 404,
    FailKind.CONFLICT: 409,
}


def fail_response(fail: Fail, status_by_code: dict[str, int] | None = None) -> JSONResponse:
    status = (status_by_code or {}).get(fail.code, _STATUS_BY_KIND[fail.kind])
    form_errors = [] if fail.field_errors else [fail.message]
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(
            error=ErrorDetail(
                code=fail.code,
                message=fail.message,
                field_errors=fail.field_errors,
                form_errors=form_errors,
            )
        ).model_dump(),
    )


def ok_response(model: BaseModel, status_code: int = 200, no_store: bool = False) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=model.model_dump())
    if no_store:
        resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
