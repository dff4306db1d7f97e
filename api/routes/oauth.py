"""
api/routes/oauth.py -- External identity sign-in, linking and unlinking.

Routes:
  GET  /auth/providers           -- list enabled OAuth providers (public)
  GET  /auth/{provider}          -- redirect to the provider; sets state cookie
  GET  /auth/{provider}/callback -- verify state, exchange code, link or sign in
  POST /unlink-auth              -- remove a linked identity (requires auth)

Callback order [H2]:
  1. Compare the state query parameter with the {provider}_oauth_state
     cookie in constant time. Missing or different: 400, nothing else runs.
  2. Exchange the code and fetch the profile. Provider or network errors
     redirect to {ROOT_URL}/login?error=oauth_failed; the user can retry and
     no local state has changed.
  3. Only then run the linking flow, in the threadpool, inside one scoped
     access unit. No database connection is held across steps 1 and 2.

Route registration order: /auth/providers is declared before /auth/{provider}
so FastAPI doesn't treat "providers" as a provider name.
"""

from __future__ import annotations

import logging

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from accounts.flows import AccountFlows
from accounts.results import FailKind, form_fail
from api.models import MessageResponse, OAuthProviderInfo, UnlinkRequest
from api.respond import fail_response, ok_response
from auth.dependencies import get_caller, get_session_token, try_get_caller
from auth.models import Caller
from auth.oauth import (
    STATE_COOKIE_MAX_AGE,
    begin_authorization,
    exchange_code,
    get_enabled_providers,
    get_oauth_profile,
    state_cookie_name,
    state_matches,
)
from auth.sessions import set_session_cookie

logger = logging.getLogger("gatehouse.api.oauth")

router = APIRouter()

_PROVIDER_ERRORS = (OAuthError, httpx.HTTPError, ValueError, KeyError)


def _enabled(request: Request, provider: str) -> bool:
    return provider in {p["name"] for p in get_enabled_providers(request.app.state.settings)}


def _front_end(request: Request, path: str) -> str:
    return f"{request.app.state.settings.root_url.rstrip('/')}{path}"


def _finish(request: Request, provider: str, url: str) -> RedirectResponse:
    """Redirect back to the front end and drop the one-time state cookie."""
    resp = RedirectResponse(url, status_code=302)
    resp.delete_cookie(state_cookie_name(provider))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _unsupported(provider: str) -> JSONResponse:
    return fail_response(
        form_fail(FailKind.NOT_FOUND, "unsupported_provider", f"sign-in with {provider!r} is not available")
    )


def _identity_details(token: dict, raw_profile: dict) -> dict:
    """What is kept about a linked identity. Access and refresh tokens are not stored."""
    return {
        "profile": raw_profile,
        "scope": token.get("scope"),
        "token_type": token.get("token_type"),
    }


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty when no provider credentials are set."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.settings)]


@router.get("/auth/{provider}")
async def oauth_redirect(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page.

    Validates the provider name against the enabled provider list before
    redirecting, so a crafted name can never select an arbitrary client.
    """
    if not _enabled(request, provider):
        return _unsupported(provider)

    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    try:
        url, state = await begin_authorization(client, redirect_uri)
    except _PROVIDER_ERRORS:
        logger.exception("Could not build %s authorization URL", provider)
        return _finish(request, provider, _front_end(request, "/login?error=oauth_failed"))

    resp = RedirectResponse(url, status_code=302)
    resp.set_cookie(
        state_cookie_name(provider),
        value=state,
        httponly=True,
        samesite="lax",
        secure=request.app.state.settings.secure_cookies,
        max_age=STATE_COOKIE_MAX_AGE,
    )
    return resp


@router.get("/auth/{provider}/callback", name="oauth_callback")
async def oauth_callback(
    request: Request,
    provider: str,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
):
    """Complete the authorization code flow and sign in or link."""
    if not _enabled(request, provider):
        return _unsupported(provider)

    # Step 1: CSRF state [H2]
    if not state_matches(request.cookies.get(state_cookie_name(provider)), state):
        logger.warning("OAuth callback for %s rejected: state missing or mismatched", provider)
        resp = fail_response(form_fail(FailKind.INVALID, "invalid_state", "invalid or expired sign-in attempt"))
        resp.delete_cookie(state_cookie_name(provider))
        return resp

    failed = _front_end(request, "/login?error=oauth_failed")
    if error or not code:
        logger.warning("OAuth provider %s returned no code (error=%r)", provider, error)
        return _finish(request, provider, failed)

    # Step 2: provider round trips, outside any database scope
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    try:
        token = await exchange_code(client, redirect_uri, code)
        profile = await get_oauth_profile(client, provider, token)
    except _PROVIDER_ERRORS:
        logger.exception("OAuth exchange with %s failed", provider)
        return _finish(request, provider, failed)

    # Step 3: link or sign in
    flows: AccountFlows = request.app.state.flows
    caller = await run_in_threadpool(try_get_caller, request)
    result = await run_in_threadpool(
        flows.complete_oauth,
        caller,
        provider,
        profile,
        _identity_details(token, profile.raw),
        get_session_token(request),
    )
    if not result.ok:
        target = "/settings" if caller else "/login"
        return _finish(request, provider, _front_end(request, f"{target}?error={result.code}"))

    resp = _finish(request, provider, _front_end(request, "/settings" if caller else "/"))
    if result.payload.token:
        set_session_cookie(resp, result.payload.token, request.app.state.settings)
    return resp


@router.post("/unlink-auth", response_model=MessageResponse)
def unlink_auth(request: Request, body: UnlinkRequest, caller: Caller = Depends(get_caller)) -> JSONResponse:
    """Remove a linked identity, unless it is the account's last way to sign in."""
    flows: AccountFlows = request.app.state.flows
    result = flows.unlink_identity(caller, body.authentication_id)
    if not result.ok:
        return fail_response(result)
    return ok_response(MessageResponse(messages=result.messages))
