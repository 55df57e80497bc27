"""Integration tests for purpose-tagged tokens: issue_token() and confirm_email().

Covers:
- issue_token() returns a fresh CSPRNG token persisted for the identity
- issue_token() for an unknown identity is NotFound, bad params are Validation
- confirm_email() consumes a confirm_email token exactly once
- a failed identity update leaves the token usable for a retry
- a token of another purpose or another identity does not confirm
- confirmation after an email change (full flow through login)
"""

from unittest.mock import patch

from identity.errors import PersistenceError
from identity.events import EventKind

TEST_PASSWORD = "correct horse battery"


class TestIssueToken:
    def test_issue(self, service, make_identity, recorder) -> None:
        identity = make_identity(confirmed=False)
        recorder.clear()

        result = service.issue_token({"identity_id": identity.id, "purpose": "confirm_email"})

        assert result.ok
        token = result.data["token"]
        assert len(token) == 64
        assert result.data["purpose"] == "confirm_email"
        assert service.tokens.get(identity.id, token, "confirm_email") is not None
        assert recorder.events == []

    def test_tokens_differ(self, service, make_identity) -> None:
        identity = make_identity()
        params = {"identity_id": identity.id, "purpose": "reset_password"}
        assert service.issue_token(params).data["token"] != service.issue_token(params).data["token"]

    def test_unknown_identity(self, service) -> None:
        result = service.issue_token({"identity_id": 404, "purpose": "confirm_email"})
        assert result.error_kind == "not_found"

    def test_bad_params(self, service) -> None:
        result = service.issue_token({"identity_id": "abc", "purpose": ""})
        assert result.error_kind == "validation"
        assert "identity_id" in result.messages[0]
        assert "purpose" in result.messages[0]


class TestConfirmEmail:
    def test_confirm_once(self, service, make_identity, recorder) -> None:
        identity = make_identity(confirmed=False)
        token = service.issue_token({"identity_id": identity.id, "purpose": "confirm_email"}).data["token"]
        recorder.clear()

        result = service.confirm_email({"identity_id": identity.id, "token": token})

        assert result.ok
        assert service.identities.get_by_id(identity.id).email_confirmed is True
        assert service.tokens.get(identity.id, token) is None
        assert recorder.kinds() == [EventKind.UPDATED]

        again = service.confirm_email({"identity_id": identity.id, "token": token})
        assert again.error_kind == "authentication"

    def test_failed_update_keeps_token(self, service, make_identity, recorder) -> None:
        identity = make_identity(confirmed=False)
        token = service.issue_token({"identity_id": identity.id, "purpose": "confirm_email"}).data["token"]
        recorder.clear()

        with patch.object(service.identities, "update", side_effect=PersistenceError()):
            result = service.confirm_email({"identity_id": identity.id, "token": token})

        assert result.error_kind == "persistence"
        assert service.tokens.get(identity.id, token, "confirm_email") is not None
        assert service.identities.get_by_id(identity.id).email_confirmed is False
        assert recorder.events == []

        assert service.confirm_email({"identity_id": identity.id, "token": token}).ok
        assert service.identities.get_by_id(identity.id).email_confirmed is True
        assert service.tokens.get(identity.id, token) is None

    def test_token_consumed_concurrently(self, service, make_identity) -> None:
        identity = make_identity(confirmed=False)
        token = service.issue_token({"identity_id": identity.id, "purpose": "confirm_email"}).data["token"]

        with patch.object(service.tokens, "delete", return_value=False):
            result = service.confirm_email({"identity_id": identity.id, "token": token})

        assert result.error_kind == "authentication"

    def test_wrong_purpose(self, service, make_identity) -> None:
        identity = make_identity(confirmed=False)
        token = service.issue_token({"identity_id": identity.id, "purpose": "reset_password"}).data["token"]

        result = service.confirm_email({"identity_id": identity.id, "token": token})

        assert result.error_kind == "authentication"
        assert service.identities.get_by_id(identity.id).email_confirmed is False

    def test_other_identity_token(self, service, make_identity) -> None:
        ada = make_identity(confirmed=False)
        bob = make_identity(email="bob@acme.io", display_name="Bob", confirmed=False)
        token = service.issue_token({"identity_id": ada.id, "purpose": "confirm_email"}).data["token"]

        result = service.confirm_email({"identity_id": bob.id, "token": token})

        assert result.error_kind == "authentication"
        assert service.tokens.get(ada.id, token) is not None

    def test_confirmation_unlocks_login(self, service, make_identity) -> None:
        identity = make_identity(confirmed=False)
        credentials = {"email": identity.email, "password": TEST_PASSWORD}
        assert service.login(credentials).error_kind == "authentication"

        token = service.issue_token({"identity_id": identity.id, "purpose": "confirm_email"}).data["token"]
        assert service.confirm_email({"identity_id": identity.id, "token": token}).ok
        assert service.login(credentials).ok
