"""
api/routes/emails.py -- Email address management endpoints.

Routes:
  POST   /settings/email                   -- add an address (requires auth)
  DELETE /settings/email                   -- remove a non-primary address (requires auth)
  POST   /make-email-primary               -- promote a verified address (requires auth)
  POST   /resend-email-verification-code   -- reissue a verification link (requires auth)
  POST   /verify-email                     -- token-gated; no session needed

Ownership: the flows open a caller-scoped unit, so an email id belonging to
another user resolves to "not found" rather than to someone else's row.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from accounts.flows import AccountFlows
from api.models import (
    AddEmailRequest,
    EmailIdRequest,
    EmailListResponse,
    EmailResponse,
    MessageResponse,
    VerifyEmailRequest,
)
from api.respond import fail_response, ok_response
from auth.dependencies import get_caller, try_get_caller
from auth.models import Caller

router = APIRouter()


def _flows(request: Request) -> AccountFlows:
    return request.app.state.flows


def _email_list(emails) -> EmailListResponse:
    return EmailListResponse(emails=[EmailResponse.model_validate(e) for e in emails])


@router.post("/settings/email", response_model=EmailResponse, status_code=201)
def add_email(request: Request, body: AddEmailRequest, caller: Caller = Depends(get_caller)) -> JSONResponse:
    """Add an unverified address. Any address already registered, yours included, is a 409."""
    result = _flows(request).add_email(caller, body.email)
    if not result.ok:
        return fail_response(result)
    return ok_response(EmailResponse.model_validate(result.payload), status_code=201)


@router.delete("/settings/email", response_model=EmailListResponse)
def delete_email(request: Request, body: EmailIdRequest, caller: Caller = Depends(get_caller)) -> JSONResponse:
    """Remove an address. The primary or only address cannot be removed."""
    result = _flows(request).delete_email(caller, body.email_id)
    if not result.ok:
        return fail_response(result)
    return ok_response(_email_list(result.payload))


@router.post("/make-email-primary", response_model=EmailListResponse)
def make_email_primary(request: Request, body: EmailIdRequest, caller: Caller = Depends(get_caller)) -> JSONResponse:
    result = _flows(request).make_email_primary(caller, body.email_id)
    if not result.ok:
        return fail_response(result)
    return ok_response(_email_list(result.payload))


@router.post("/resend-email-verification-code", response_model=MessageResponse)
def resend_verification(request: Request, body: EmailIdRequest, caller: Caller = Depends(get_caller)) -> JSONResponse:
    """Issue a fresh verification link; the previous one stops working."""
    result = _flows(request).resend_verification(caller, body.email_id)
    if not result.ok:
        return fail_response(result)
    return ok_response(MessageResponse(messages=result.messages))


@router.post("/verify-email", response_model=EmailResponse)
def verify_email(
    request: Request,
    body: VerifyEmailRequest,
    caller: Optional[Caller] = Depends(try_get_caller),
) -> JSONResponse:
    """Mark an address verified using the token from its verification link."""
    result = _flows(request).verify_email(body.email_id, body.token, caller)
    if not result.ok:
        return fail_response(result)
    return ok_response(EmailResponse.model_validate(result.payload))
