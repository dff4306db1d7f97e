"""
api/routes/auth.py -- Registration, sign-in, profile, password and account deletion endpoints.

Routes:
  POST   /register          -- create account; sets session cookie
  POST   /login             -- username-or-email + password; sets session cookie
  POST   /logout            -- ends the session; clears cookie
  GET    /me                -- current user or null (auth optional)
  POST   /me                -- update profile (requires auth)
  DELETE /me                -- no token: request deletion (requires auth)
                               token: confirm deletion; clears cookie
  POST   /change-password   -- requires auth
  POST   /forgot-password   -- always the same answer
  POST   /reset-password    -- token-gated; sets a new session cookie
  GET    /settings          -- emails, linked identities, has_password (requires auth)

Security:
  [H2] /login, /forgot-password and /reset-password are rate-limited per IP.
  [C1] Login failures are answered with one generic message after a random
       delay; the flow handles both, routes never inspect why login failed.
  [M5] Cache-Control: no-store on every response that sets or clears the
       session cookie.

Handlers are plain def: flows block on the database and on the login delay,
so FastAPI runs them in its threadpool.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from accounts.flows import AccountFlows, SessionGrant
from api.limiter import limiter
from api.models import (
    AuthenticationResponse,
    ChangePasswordRequest,
    DeleteAccountRequest,
    EmailResponse,
    ForgotPasswordRequest,
    LoginRequest,
    MeResponse,
    MessageResponse,
    ProfileUpdate,
    RegisterRequest,
    ResetPasswordRequest,
    SettingsResponse,
    UserResponse,
)
from api.respond import fail_response, ok_response
from auth.dependencies import get_caller, get_session_token, try_get_caller
from auth.models import Caller
from auth.sessions import clear_session_cookie, set_session_cookie
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - POST   /register, /login, /logout, /forgot-password, /reset-password: public
# - GET    /me:                      optional (null when anonymous)
# - DELETE /me:                      session, or a deletion token
# - everything else:                 requires auth (get_caller)
router = APIRouter()


def _flows(request: Request) -> AccountFlows:
    return request.app.state.flows


def _signed_in(request: Request, grant: SessionGrant, status_code: int = 200) -> JSONResponse:
    """Answer with the user and, when the flow issued one, the new session cookie."""
    resp = ok_response(MeResponse(user=UserResponse.model_validate(grant.user)), status_code, no_store=True)
    if grant.token:
        set_session_cookie(resp, grant.token, request.app.state.settings)
    return resp


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/register", response_model=MeResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account, sign it in, and mail a verification link for the email."""
    result = _flows(request).register(body.username, body.email, body.password, get_session_token(request))
    if not result.ok:
        return _no_store(fail_response(result, {"username_taken": 401}))
    return _signed_in(request, result.payload, status_code=201)


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/login", response_model=MeResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Sign in with a username or email address and a password.

    Wrong username, wrong password and password-less account all produce
    the same 401 body after the same randomized delay [C1].
    """
    result = _flows(request).login(body.identifier, body.password, get_session_token(request))
    if not result.ok:
        return _no_store(fail_response(result))
    return _signed_in(request, result.payload)


@router.post("/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Delete the session row behind the cookie and clear the cookie."""
    result = _flows(request).logout(get_session_token(request))
    resp = ok_response(MessageResponse(messages=result.messages), no_store=True)
    clear_session_cookie(resp, request.app.state.settings)
    return resp


@limiter.limit("5/minute")  # [H2]
@router.post("/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Mail a reset link. The answer is identical whether or not the address is registered."""
    result = _flows(request).forgot_password(body.email)
    return MessageResponse(messages=result.messages)


@limiter.limit("10/minute")  # [H2]
@router.post("/reset-password", response_model=MeResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Set a new password with an emailed token; signs out every other session."""
    result = _flows(request).reset_password(body.user_id, body.token, body.password, get_session_token(request))
    if not result.ok:
        return _no_store(fail_response(result))
    return _signed_in(request, result.payload)


# ---------------------------------------------------------------------------
# Current user
# ---------------------------------------------------------------------------


@router.get("/me", response_model=MeResponse)
def me(request: Request, caller: Optional[Caller] = Depends(try_get_caller)) -> MeResponse:
    """Return the signed-in user, or {"user": null}."""
    user = _flows(request).current_user(caller).payload
    return MeResponse(user=UserResponse.model_validate(user) if user else None)


@router.post("/me", response_model=UserResponse)
def update_me(request: Request, body: ProfileUpdate, caller: Caller = Depends(get_caller)) -> JSONResponse:
    """Update username, name, bio or avatar. A taken username answers 403."""
    result = _flows(request).update_profile(
        caller,
        username=body.username,
        name=body.name,
        bio=body.bio,
        avatar_url=body.avatar_url,
    )
    if not result.ok:
        return fail_response(result, {"username_taken": 403})
    return ok_response(UserResponse.model_validate(result.payload))


@router.delete("/me", response_model=MessageResponse)
def delete_me(
    request: Request,
    body: Optional[DeleteAccountRequest] = Body(default=None),
    caller: Optional[Caller] = Depends(try_get_caller),
) -> JSONResponse:
    """Request (no token) or confirm (token) deletion of the account.

    Confirmation works without a session when user_id is supplied, so an
    owner locked out of the account can still delete it from the emailed
    link. Either way the caller's session ends.
    """
    flows = _flows(request)
    if body is None or not body.token:
        if caller is None:
            raise HTTPException(
                status_code=401,
                detail={"code": "unauthorized", "message": "you must be logged in to do that!"},
            )
        result = flows.request_account_deletion(caller)
        if not result.ok:
            return fail_response(result)
        return ok_response(MessageResponse(messages=result.messages))

    result = flows.confirm_account_deletion(caller, body.token, body.user_id, get_session_token(request))
    if not result.ok:
        return _no_store(fail_response(result))
    resp = ok_response(MessageResponse(messages=result.messages), no_store=True)
    clear_session_cookie(resp, request.app.state.settings)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    caller: Caller = Depends(get_caller),
) -> JSONResponse:
    """Change the password. Other sessions of the user are signed out."""
    result = _flows(request).change_password(caller, body.old_password, body.new_password)
    if not result.ok:
        return fail_response(result)
    return ok_response(MessageResponse(messages=result.messages))


@router.get("/settings", response_model=SettingsResponse)
def account_settings(request: Request, caller: Caller = Depends(get_caller)) -> SettingsResponse:
    """Everything the settings page shows about the caller's credentials."""
    settings = _flows(request).account_settings(caller).payload
    return SettingsResponse(
        emails=[EmailResponse.model_validate(e) for e in settings.emails],
        authentications=[AuthenticationResponse.model_validate(a) for a in settings.authentications],
        has_password=settings.has_password,
    )
