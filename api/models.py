"""
API request and response models for the Gatehouse REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Shape rules (username length and charset, password length) come from
accounts/flows.py so the API and the flows can never disagree.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from accounts.flows import PASSWORD_MAX, password_problem, username_problem

# ---------------------------------------------------------------------------
# Shared validators
# ---------------------------------------------------------------------------


def _check_username(value: str) -> str:
    problem = username_problem(value)
    if problem:
        raise ValueError(problem)
    return value


def _check_password(value: str) -> str:
    problem = password_problem(value)
    if problem:
        raise ValueError(problem)
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /register."""

    username: str
    email: EmailStr
    password: str = Field(max_length=PASSWORD_MAX)
    confirm_password: str = Field(max_length=PASSWORD_MAX)

    @field_validator("username")
    @classmethod
    def username_shape(cls, value: str) -> str:
        return _check_username(value.strip())

    @field_validator("password")
    @classmethod
    def password_shape(cls, value: str) -> str:
        return _check_password(value)

    @model_validator(mode="after")
    def passwords_match(self) -> "RegisterRequest":
        if self.password != self.confirm_password:
            raise ValueError("passwords must match")
        return self


class LoginRequest(BaseModel):
    """Request body for POST /login. identifier is a username or an email address.

    Only the length of password is checked: a shape error on login would tell
    an attacker something the generic credentials error does not.
    """

    identifier: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX)


class ProfileUpdate(BaseModel):
    """Request body for POST /me. Omitted fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: Optional[str] = None
    name: Optional[str] = Field(default=None, max_length=255)
    bio: Optional[str] = Field(default=None, max_length=2000)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("username")
    @classmethod
    def username_shape(cls, value: Optional[str]) -> Optional[str]:
        return _check_username(value) if value is not None else None


class ChangePasswordRequest(BaseModel):
    """Request body for POST /change-password. old_password may be omitted when none is set."""

    old_password: Optional[str] = Field(default=None, max_length=PASSWORD_MAX)
    new_password: str = Field(max_length=PASSWORD_MAX)
    confirm_password: str = Field(max_length=PASSWORD_MAX)

    @field_validator("new_password")
    @classmethod
    def password_shape(cls, value: str) -> str:
        return _check_password(value)

    @model_validator(mode="after")
    def passwords_match(self) -> "ChangePasswordRequest":
        if self.new_password != self.confirm_password:
            raise ValueError("passwords must match")
        return self


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    """Request body for POST /reset-password, built from the emailed link."""

    user_id: str = Field(min_length=1, max_length=64)
    token: str = Field(min_length=1, max_length=256)
    password: str = Field(max_length=PASSWORD_MAX)

    @field_validator("password")
    @classmethod
    def password_shape(cls, value: str) -> str:
        return _check_password(value)


class VerifyEmailRequest(BaseModel):
    """Request body for POST /verify-email, built from the emailed link."""

    email_id: str = Field(min_length=1, max_length=64)
    token: str = Field(min_length=1, max_length=256)


class AddEmailRequest(BaseModel):
    email: EmailStr


class EmailIdRequest(BaseModel):
    """Request body naming one of the caller's emails."""

    email_id: str = Field(min_length=1, max_length=64)


class DeleteAccountRequest(BaseModel):
    """Optional body for DELETE /me. Without a token the call requests deletion."""

    token: Optional[str] = Field(default=None, max_length=256)
    user_id: Optional[str] = Field(default=None, max_length=64)


class UnlinkRequest(BaseModel):
    authentication_id: str = Field(min_length=1, max_length=64)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. Never carries secrets."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    name: Optional[str] = None
    bio: str = ""
    avatar_url: Optional[str] = None
    role: str
    is_verified: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class MeResponse(BaseModel):
    """Response for GET /me and the sign-in endpoints. user is null when anonymous."""

    user: Optional[UserResponse] = None


class EmailResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    is_verified: bool
    is_primary: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class EmailListResponse(BaseModel):
    emails: list[EmailResponse]


class AuthenticationResponse(BaseModel):
    """A linked external identity. The stored provider details are not exposed."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    service: str
    identifier: str
    created_at: Optional[str] = None


class SettingsResponse(BaseModel):
    """Response for GET /settings."""

    emails: list[EmailResponse]
    authentications: list[AuthenticationResponse]
    has_password: bool


class MessageResponse(BaseModel):
    messages: list[str] = Field(default_factory=list)


class OAuthProviderInfo(BaseModel):
    """An enabled OAuth provider, returned by GET /auth/providers."""

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    field_errors maps request field names to messages; form_errors holds
    messages that belong to the request as a whole.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    field_errors: dict[str, list[str]] = Field(default_factory=dict)
    form_errors: list[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
