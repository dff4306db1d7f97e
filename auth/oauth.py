"""
auth/oauth.py -- External identity providers: Authlib registry, state cookie, profiles.

build_registry() registers one Authlib starlette client per provider whose
credentials are configured. The application builds it once at startup and
keeps it on app.state.oauth; tests swap in a fake there.

Security notes:
  [H1] An email from a provider is only trusted when the provider confirms it
       is verified. Unverified addresses are dropped from the ExternalProfile
       (email=None) so the identity linker never attaches an address the
       provider user may not own. Login itself is keyed on the provider's
       stable subject id, not on email.

  [H2] CSRF state is not kept in a server-side session. begin_authorization()
       returns the state nonce generated by authlib and the route stores it
       in a short-lived httpOnly cookie ({provider}_oauth_state). The callback
       compares it with state_matches() (constant time) before the code is
       exchanged. A missing or mismatched state stops the flow.

  All provider round trips (code exchange, profile fetch) happen before any
  database scope is opened.

Layer rule: no imports from api/ or accounts/. Import from core/ is allowed.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass

from authlib.integrations.starlette_client import OAuth

from auth.models import ExternalProfile
from core.config import Settings, get_settings

logger = logging.getLogger("gatehouse.auth.oauth")

STATE_COOKIE_MAX_AGE = 10 * 60

_OIDC_SCOPE = {"scope": "openid email profile"}


@dataclass(frozen=True)
class _Provider:
    name: str
    label: str
    endpoints: dict
    client_kwargs: dict


def _configured(settings: Settings) -> list[tuple[_Provider, str, str]]:
    """(provider, client_id, client_secret) for every provider with credentials set."""
    found = []
    if settings.github_client_id and settings.github_client_secret:
        github = _Provider(
            "github",
            "GitHub",
            {
                # static endpoints, GitHub publishes no discovery document
                "access_token_url": "https://github.com/login/oauth/access_token",  # noqa: S106 -- URL
                "authorize_url": "https://github.com/login/oauth/authorize",
                "api_base_url": "https://api.github.com/",
            },
            {"scope": "read:user user:email"},
        )
        found.append((github, settings.github_client_id, settings.github_client_secret))
    if settings.google_client_id and settings.google_client_secret:
        google = _Provider(
            "google",
            "Google",
            {"server_metadata_url": "https://accounts.google.com/.well-known/openid-configuration"},
            _OIDC_SCOPE,
        )
        found.append((google, settings.google_client_id, settings.google_client_secret))
    if settings.oidc_client_id and settings.oidc_client_secret and settings.oidc_discovery_url:
        generic = _Provider(
            "oidc",
            settings.oidc_display_name,
            {"server_metadata_url": settings.oidc_discovery_url},
            _OIDC_SCOPE,
        )
        found.append((generic, settings.oidc_client_id, settings.oidc_client_secret))
    return found


def build_registry(settings: Settings | None = None) -> OAuth:
    """Return an Authlib registry holding a client for each configured provider."""
    registry = OAuth()
    for provider, client_id, client_secret in _configured(settings or get_settings()):
        registry.register(
            name=provider.name,
            client_id=client_id,
            client_secret=client_secret,
            client_kwargs=provider.client_kwargs,
            **provider.endpoints,
        )
        logger.info("%s sign-in enabled", provider.label)
    return registry


def get_enabled_providers(settings: Settings | None = None) -> list[dict]:
    """Return [{"name", "label"}] for every provider with credentials configured."""
    return [{"name": p.name, "label": p.label} for p, _, _ in _configured(settings or get_settings())]


def state_cookie_name(provider: str) -> str:
    return f"{provider}_oauth_state"


def state_matches(expected: str | None, supplied: str | None) -> bool:
    """Constant-time comparison of the stored and returned state nonce [H2]."""
    if not expected or not supplied:
        return False
    return hmac.compare_digest(expected.encode(), supplied.encode())


# ---------------------------------------------------------------------------
# Authorization code flow
# ---------------------------------------------------------------------------


async def begin_authorization(client, redirect_uri: str) -> tuple[str, str]:
    """Return (authorization_url, state) for a redirect to the provider."""
    rv = await client.create_authorization_url(redirect_uri)
    return rv["url"], rv["state"]


async def exchange_code(client, redirect_uri: str, code: str) -> dict:
    """Exchange an authorization code for a token dict.

    Raises authlib OAuthError or httpx.HTTPError on provider failure.
    """
    return await client.fetch_access_token(redirect_uri=redirect_uri, code=code)


# ---------------------------------------------------------------------------
# Profile extraction -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


async def get_oauth_profile(client, provider: str, token: dict) -> ExternalProfile:
    """Normalize a provider's user profile into an ExternalProfile.

    Raises:
        ValueError: If the provider returns no stable subject id.
    """
    if provider == "github":
        return await _get_github_profile(client, token)
    elif provider in ("google", "oidc"):
        return await _get_oidc_profile(client, provider, token)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_profile(client, token: dict) -> ExternalProfile:
    """Build a profile from GitHub's REST API.

    GitHub does not include the email in the access token. Two API calls are
    required:
      1. GET /user -- numeric id (stable subject), login, name, avatar.
      2. GET /user/emails -- the primary verified address, if any [H1].
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()
    if profile.get("id") is None:
        raise ValueError("GitHub OAuth: profile has no id")

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    email: str | None = None
    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            email = entry["email"]
            break

    return ExternalProfile(
        subject=str(profile["id"]),
        username=profile.get("login"),
        email=email,
        email_verified=email is not None,
        name=profile.get("name"),
        avatar_url=profile.get("avatar_url"),
        raw=profile,
    )


async def _get_oidc_profile(client, provider: str, token: dict) -> ExternalProfile:
    """Build a profile from an OIDC provider's userinfo endpoint.

    [H1] The email claim is only kept when email_verified is True. Some
    providers omit email_verified entirely; that counts as unverified.
    """
    userinfo = token.get("userinfo") or await client.userinfo(token=token)
    subject = userinfo.get("sub")
    if not subject:
        raise ValueError(f"{provider} OAuth: missing sub claim in userinfo")

    verified = bool(userinfo.get("email_verified", False))
    email = userinfo.get("email") if verified else None
    username = userinfo.get("preferred_username")
    if not username and email:
        username = email.split("@", 1)[0]

    return ExternalProfile(
        subject=str(subject),
        username=username,
        email=email,
        email_verified=email is not None,
        name=userinfo.get("name"),
        avatar_url=userinfo.get("picture"),
        raw=dict(userinfo),
    )
