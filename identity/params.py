"""
identity/params.py -- Parameter-map parsing for AuthService operations.

Each operation accepts a flat, string-keyed mapping (typically decoded form or
JSON data from a request layer). The Pydantic v2 models below define which
keys are required for each operation and coerce lax input ("5" -> 5,
"true" -> True). Pydantic's own ValidationError never leaves this module: it
is converted into identity.errors.ValidationError listing the bad fields.

Email addresses are validated with email-validator (syntax only, no DNS).
Stored addresses use the normalized form it returns, lower-cased as a whole,
so the UNIQUE(email) constraint and lookups ignore case.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Annotated, Any, Optional, TypeVar

from email_validator import EmailNotValidError, validate_email
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from identity.errors import ValidationError

# bcrypt only reads the first 72 bytes and bcrypt>=4.1 rejects longer input.
MAX_PASSWORD_BYTES = 72


# ---------------------------------------------------------------------------
# Email helpers
# ---------------------------------------------------------------------------


def normalize_email(value: str | None) -> str | None:
    """Return the normalized address, or None if value is not a valid email."""
    if not value:
        return None
    try:
        return validate_email(value.strip(), check_deliverability=False).normalized.lower()
    except EmailNotValidError:
        return None


def valid_email(value: str | None) -> bool:
    return normalize_email(value) is not None


def _check_password_length(value: str | None) -> str | None:
    if value is not None and len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes")
    return value


Password = Annotated[str, Field(min_length=1), AfterValidator(_check_password_length)]


# ---------------------------------------------------------------------------
# Parameter models
# ---------------------------------------------------------------------------


class _Params(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class CredentialParams(_Params):
    """authenticate / login. email is not validated here: a malformed address
    must fail exactly like an unknown one."""

    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class RegistrationParams(_Params):
    email: str = Field(min_length=1)
    password: Password
    password_confirmation: str
    display_name: str = Field(min_length=1, max_length=255)
    email_confirmed: bool = False

    @field_validator("email")
    @classmethod
    def email_must_be_valid(cls, value: str) -> str:
        normalized = normalize_email(value)
        if normalized is None:
            raise ValueError("not a valid email address")
        return normalized

    @field_validator("display_name")
    @classmethod
    def display_name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("display name must not be blank")
        return value.strip()


class DeregistrationParams(_Params):
    actor_id: int = Field(gt=0)
    identity_id: int = Field(gt=0)


class ResetParams(_Params):
    identity_id: int = Field(gt=0)
    new_password: Password
    password_confirmation: str


class UpdateParams(_Params):
    """update_identity. Every field but identity_id is optional; a malformed
    email is accepted here and ignored by the service."""

    identity_id: int = Field(gt=0)
    email: Optional[str] = None
    display_name: Optional[str] = Field(default=None, max_length=255)
    email_confirmed: Optional[bool] = None
    current_password: Optional[str] = None
    new_password: Optional[Password] = None
    password_confirmation: Optional[str] = None

    @property
    def changes_password(self) -> bool:
        return bool(self.new_password or self.password_confirmation)


class IssueTokenParams(_Params):
    identity_id: int = Field(gt=0)
    purpose: str = Field(min_length=1, max_length=50)


class ConfirmEmailParams(_Params):
    identity_id: int = Field(gt=0)
    token: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

_P = TypeVar("_P", bound=BaseModel)


def parse_params(model: type[_P], params: Mapping[str, Any] | None) -> _P:
    """Validate a flat parameter map against model.

    Raises identity.errors.ValidationError naming every offending field.
    """
    try:
        return model.model_validate(dict(params or {}))
    except PydanticValidationError as exc:
        fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        raise ValidationError(
            f"Missing or invalid parameters: {', '.join(fields)}" if fields else None,
            fields=fields,
        ) from exc
