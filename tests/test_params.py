"""Unit tests for identity/params.py -- parameter-map parsing.

Covers:
- lax coercion of string input ("5" -> 5, "true" -> True)
- missing/invalid keys are reported by name in one ValidationError
- email normalization on registration (whole address lower-cased)
- passwords over bcrypt's 72-byte limit are rejected
- unknown keys are ignored
"""

import pytest

from identity.errors import ValidationError
from identity.params import (
    MAX_PASSWORD_BYTES,
    DeregistrationParams,
    RegistrationParams,
    UpdateParams,
    normalize_email,
    parse_params,
    valid_email,
)


def test_coerces_form_strings() -> None:
    p = parse_params(DeregistrationParams, {"actor_id": "5", "identity_id": "6", "csrf": "ignored"})
    assert (p.actor_id, p.identity_id) == (5, 6)


def test_reports_every_bad_field() -> None:
    with pytest.raises(ValidationError) as excinfo:
        parse_params(DeregistrationParams, {"actor_id": "0"})
    assert excinfo.value.fields == ["actor_id", "identity_id"]
    assert excinfo.value.kind == "validation"


def test_none_params() -> None:
    with pytest.raises(ValidationError):
        parse_params(DeregistrationParams, None)


def test_registration_normalizes_email_and_name() -> None:
    p = parse_params(
        RegistrationParams,
        {
            "email": " Ada@ACME.io ",
            "password": "pw",
            "password_confirmation": "pw",
            "display_name": "  Ada  ",
            "email_confirmed": "true",
        },
    )
    assert p.email == "ada@acme.io"
    assert p.display_name == "Ada"
    assert p.email_confirmed is True


def test_overlong_password_rejected() -> None:
    long_pw = "x" * (MAX_PASSWORD_BYTES + 1)
    with pytest.raises(ValidationError) as excinfo:
        parse_params(
            RegistrationParams,
            {"email": "a@acme.io", "password": long_pw, "password_confirmation": long_pw, "display_name": "A"},
        )
    assert excinfo.value.fields == ["password"]


def test_update_password_flag() -> None:
    assert not parse_params(UpdateParams, {"identity_id": 1, "display_name": "A"}).changes_password
    assert parse_params(UpdateParams, {"identity_id": 1, "password_confirmation": "x"}).changes_password


@pytest.mark.parametrize("value", [None, "", "plain", "a@", "@acme.io", "a b@acme.io"])
def test_invalid_emails(value) -> None:
    assert normalize_email(value) is None
    assert not valid_email(value)
