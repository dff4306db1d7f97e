"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The session cookie is the only credential. Its value is an opaque token;
SessionManager.lookup() maps it to a Caller (user id, role, session row id).

try_get_caller() is the soft variant (returns None when anonymous).
get_caller() wraps it and raises HTTP 401 before any scoped data access is
attempted.

Layer rule: no imports from api/ or accounts/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import Caller


def get_session_token(request: Request) -> str | None:
    """Return the raw session cookie value, or None."""
    cookie_name = request.app.state.settings.session_cookie_name
    return request.cookies.get(cookie_name) or None


def try_get_caller(request: Request) -> Caller | None:
    """Resolve the session cookie to a Caller. Never raises for a bad cookie."""
    return request.app.state.sessions.lookup(get_session_token(request))


def get_caller(request: Request) -> Caller:
    """Require authentication. Raises HTTP 401 if the request has no live session.

    Use as a FastAPI dependency:
        @router.post("/protected")
        def route(caller: Caller = Depends(get_caller)): ...
    """
    caller = try_get_caller(request)
    if caller is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "you must be logged in to do that!"},
        )
    return caller
