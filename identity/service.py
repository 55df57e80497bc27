"""
identity/service.py -- AuthService, the identity lifecycle orchestrator.

Every public operation follows the same shape:
  1. parse the flat parameter map (ValidationError on bad input),
  2. resolve entities through the store ports,
  3. apply policy (hashing, rehash, role checks),
  4. write through the same ports,
  5. publish exactly one lifecycle event as the LAST step,
  6. return an OperationResult.

Operations never raise IdentityError to the caller. _run() converts it into a
failed OperationResult carrying the error kind and suggested status.

Best-effort steps -- rehash of an outdated hash, the last_login stamp, the
compensating delete after a failed registration, and event delivery -- log
their failure and record a SoftFailure on the result instead of failing the
operation. Primary writes (identity/credential/session create or delete)
abort the operation.

Security notes:
  Uniform authentication failure: unknown email, missing credential, wrong
  password and unconfirmed email all raise the same AuthenticationError
  message. The real reason is logged only.

  Timing equalization: when no credential exists, a dummy bcrypt check still
  runs so response time does not reveal whether the email is registered.

  Session tokens come from the OS CSPRNG (identity.passwords.generate_token)
  and are never logged in full.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import replace
from typing import Any

from core.config import Settings, get_settings
from identity.context import RequestContext, resolve_hostname
from identity.errors import (
    AuthenticationError,
    AuthorizationError,
    DuplicateError,
    IdentityError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from identity.events import EventBus, EventKind
from identity.models import Credential, Identity, ProviderKind, Session, Token
from identity.params import (
    ConfirmEmailParams,
    CredentialParams,
    DeregistrationParams,
    IssueTokenParams,
    RegistrationParams,
    ResetParams,
    UpdateParams,
    normalize_email,
    parse_params,
)
from identity.passwords import PasswordPolicy, generate_token, token_prefix
from identity.results import OperationResult, SoftFailure
from identity.roles import GLOBAL_SCOPE, RoleAuthority
from identity.store import CredentialStore, IdentityStore, SessionStore, TokenStore, create_identity_engine

logger = logging.getLogger("gatehouse.identity")

Params = Mapping[str, Any]

CONFIRM_EMAIL_PURPOSE = "confirm_email"


class AuthService:
    """Orchestrates registration, authentication, sessions and identity mutation.

    Usage:
        service = build_auth_service()
        service.register({"email": ..., "password": ..., "password_confirmation": ..., "display_name": ...})
        ctx = RequestContext(remote_address="203.0.113.7")
        result = service.login({"email": ..., "password": ...}, ctx)
        service.logout(ctx)
    """

    def __init__(
        self,
        identities: IdentityStore,
        credentials: CredentialStore,
        sessions: SessionStore,
        tokens: TokenStore,
        roles: RoleAuthority,
        bus: EventBus,
        *,
        policy: PasswordPolicy | None = None,
        settings: Settings | None = None,
        hostname_resolver: Callable[[str], str] = resolve_hostname,
    ) -> None:
        self.settings = settings or get_settings()
        self.identities = identities
        self.credentials = credentials
        self.sessions = sessions
        self.tokens = tokens
        self.roles = roles
        self.bus = bus
        self.policy = policy or PasswordPolicy.from_settings(self.settings)
        self._resolve_hostname = hostname_resolver

    def close(self) -> None:
        # All stores built by build_auth_service() share one engine.
        self.identities.close()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def authenticate(self, params: Params) -> OperationResult:
        """Verify email + password. Payload: identity_id."""
        return self._run("authenticate", self._authenticate, params)

    def register(self, params: Params) -> OperationResult:
        """Create an identity and its basic credential. Payload: identity_id, identity."""
        return self._run("register", self._register, params)

    def deregister(self, params: Params) -> OperationResult:
        """Delete identity_id on behalf of actor_id, cascading to dependents."""
        return self._run("deregister", self._deregister, params)

    def login(
        self,
        params: Params,
        context: RequestContext | None = None,
        required_role: str | None = None,
    ) -> OperationResult:
        """authenticate() plus confirmation/role checks and a new Session.

        Without required_role the identity must hold at least one role.
        Payload: identity_id, token, identity, session. On success context
        (when given) is bound to the new session.
        """
        return self._run("login", self._login, params, context, required_role)

    def logout(self, context: RequestContext | None = None) -> OperationResult:
        """End the session named by context. Succeeds when there is none."""
        return self._run("logout", self._logout, context)

    def reset_credential(self, params: Params) -> OperationResult:
        """Set a new password without knowing the old one (admin / forgot-password flow)."""
        return self._run("reset_credential", self._reset_credential, params)

    def update_identity(self, params: Params, context: RequestContext | None = None) -> OperationResult:
        """Change email, display name and/or password of identity_id.

        context must name a live session. Acting on another identity requires
        the administrator role when role gating is on; an administrator acting
        for someone else skips the current-password check.
        """
        return self._run("update_identity", self._update_identity, params, context)

    def issue_token(self, params: Params) -> OperationResult:
        """Create a purpose-tagged token for identity_id. Payload: token, purpose."""
        return self._run("issue_token", self._issue_token, params)

    def confirm_email(self, params: Params) -> OperationResult:
        """Consume a confirm_email token and mark the address confirmed."""
        return self._run("confirm_email", self._confirm_email, params)

    # ------------------------------------------------------------------
    # Operation bodies
    # ------------------------------------------------------------------

    def _authenticate(self, soft: list[SoftFailure], params: Params) -> OperationResult:
        creds = parse_params(CredentialParams, params)
        identity = self._verify_credentials(soft, creds.email, creds.password)
        identity = self._stamp_last_login(soft, identity)
        logger.info("Identity #%d authenticated", identity.id)
        self._publish(soft, EventKind.AUTHENTICATED, identity.id)
        return OperationResult.success({"identity_id": identity.id})

    def _register(self, soft: list[SoftFailure], params: Params) -> OperationResult:
        reg = parse_params(RegistrationParams, params)
        if reg.password != reg.password_confirmation:
            raise ValidationError("Password and confirmation do not match.", fields=["password_confirmation"])

        # Hash first: nothing is written if hashing fails.
        secret_hash = self.policy.hash(reg.password)
        try:
            identity = self.identities.create(
                Identity(email=reg.email, display_name=reg.display_name, email_confirmed=reg.email_confirmed)
            )
        except DuplicateError as exc:
            raise DuplicateError("Failed to create account, please contact an administrator.") from exc

        try:
            self.credentials.create(
                Credential(identity_id=identity.id, provider=ProviderKind.BASIC, secret_hash=secret_hash)
            )
        except IdentityError:
            self._compensate_registration(soft, identity)
            raise

        logger.info("Registered identity #%d", identity.id)
        self._publish(soft, EventKind.REGISTERED, identity)
        return OperationResult.success({"identity_id": identity.id, "identity": identity}, "Account created.")

    def _deregister(self, soft: list[SoftFailure], params: Params) -> OperationResult:
        p = parse_params(DeregistrationParams, params)
        if p.actor_id == p.identity_id:
            raise ValidationError("You cannot delete your own account.", fields=["identity_id"])
        if self.settings.role_gated and not self.roles.has_role(p.actor_id, self.settings.admin_role, GLOBAL_SCOPE):
            raise AuthorizationError()

        target = self.identities.get_by_id(p.identity_id)
        if target is None:
            raise NotFoundError()
        snapshot = replace(target)

        if not self.identities.delete(target.id):
            raise NotFoundError()
        self.roles.remove_all_for(target.id)
        self.credentials.delete_all_for(target.id)
        self.sessions.delete_all_for(target.id)
        self.tokens.delete_all_for(target.id)

        logger.info("Identity #%d deregistered by #%d", target.id, p.actor_id)
        self._publish(soft, EventKind.DEREGISTERED, snapshot)
        return OperationResult.success({"identity": snapshot}, "Account deleted.")

    def _login(
        self,
        soft: list[SoftFailure],
        params: Params,
        context: RequestContext | None,
        required_role: str | None,
    ) -> OperationResult:
        creds = parse_params(CredentialParams, params)
        identity = self._verify_credentials(soft, creds.email, creds.password)

        if not identity.email_confirmed:
            logger.warning("Login refused for identity #%d: email not confirmed", identity.id)
            raise AuthenticationError()
        if required_role:
            allowed = self.roles.has_role(identity.id, required_role)
        else:
            allowed = self.roles.has_any_role(identity.id)
        if not allowed:
            logger.warning("Login refused for identity #%d: missing role %s", identity.id, required_role or "(any)")
            raise AuthorizationError()

        identity = self._stamp_last_login(soft, identity)
        context = context if context is not None else RequestContext()
        session = self.sessions.create(
            Session(
                identity_id=identity.id,
                token=generate_token(self.settings.session_token_bytes),
                remote_address=context.remote_address,
                remote_hostname=self._hostname_for(context),
            )
        )
        context.bind(identity.id, session.token)

        logger.info("Identity #%d logged in (session %s)", identity.id, token_prefix(session.token))
        self._publish(soft, EventKind.LOGGED_IN, identity, session)
        return OperationResult.success(
            {"identity_id": identity.id, "token": session.token, "identity": identity, "session": session}
        )

    def _logout(self, soft: list[SoftFailure], context: RequestContext | None) -> OperationResult:
        if context is None or not context.has_session:
            return OperationResult.success()

        identity_id, token = context.identity_id, context.session_token
        session = self.sessions.get_by_token(identity_id, token)
        if session is None:
            logger.info("Logout for identity #%d found no live session", identity_id)
            context.clear()
            return OperationResult.success()

        # The context keeps its token until the session is gone so a failed
        # delete can be retried.
        self.sessions.delete(session.id)
        context.clear()
        logger.info("Identity #%d logged out (session %s)", identity_id, token_prefix(token))
        self._publish(soft, EventKind.LOGGED_OUT, session)
        return OperationResult.success(message="Logged out.")

    def _reset_credential(self, soft: list[SoftFailure], params: Params) -> OperationResult:
        p = parse_params(ResetParams, params)
        if p.new_password != p.password_confirmation:
            raise ValidationError("Password and confirmation do not match.", fields=["password_confirmation"])

        identity = self.identities.get_by_id(p.identity_id)
        if identity is None:
            raise NotFoundError()
        self._write_secret(identity.id, self.policy.hash(p.new_password))

        logger.info("Credential reset for identity #%d", identity.id)
        self._publish(soft, EventKind.CREDENTIAL_RESET, identity)
        return OperationResult.success({"identity": identity}, "Password reset.")

    def _update_identity(
        self,
        soft: list[SoftFailure],
        params: Params,
        context: RequestContext | None,
    ) -> OperationResult:
        p = parse_params(UpdateParams, params)
        actor_id = self._resolve_actor(context)
        on_behalf = actor_id != p.identity_id
        actor_is_admin = on_behalf and self.roles.has_role(actor_id, self.settings.admin_role, GLOBAL_SCOPE)
        if on_behalf and self.settings.role_gated and not actor_is_admin:
            raise AuthorizationError()

        current = self.identities.get_by_id(p.identity_id)
        if current is None:
            raise NotFoundError()

        updated = replace(current)
        if p.display_name is not None and p.display_name.strip():
            updated.display_name = p.display_name.strip()
        new_email = normalize_email(p.email)
        if new_email is not None and new_email != current.email:
            updated.email = new_email
            updated.email_confirmed = False
        if p.email_confirmed is not None:
            updated.email_confirmed = p.email_confirmed

        # Check the whole password change before writing anything.
        new_hash = self._checked_password_change(p, current, skip_current=actor_is_admin) if p.changes_password else None

        if updated != current and not self.identities.update(updated):
            raise NotFoundError()
        if new_hash is not None:
            self._write_secret(current.id, new_hash)

        logger.info("Identity #%d updated by #%d", current.id, actor_id)
        self._publish(soft, EventKind.UPDATED, updated)
        return OperationResult.success({"identity": updated}, "Account updated.")

    def _issue_token(self, soft: list[SoftFailure], params: Params) -> OperationResult:
        p = parse_params(IssueTokenParams, params)
        if self.identities.get_by_id(p.identity_id) is None:
            raise NotFoundError()
        token = self.tokens.create(
            Token(identity_id=p.identity_id, token=generate_token(self.settings.session_token_bytes), purpose=p.purpose)
        )
        logger.info("Issued %s token %s for identity #%d", p.purpose, token_prefix(token.token), p.identity_id)
        return OperationResult.success({"token": token.token, "purpose": token.purpose})

    def _confirm_email(self, soft: list[SoftFailure], params: Params) -> OperationResult:
        p = parse_params(ConfirmEmailParams, params)
        token = self.tokens.get(p.identity_id, p.token, CONFIRM_EMAIL_PURPOSE)
        if token is None:
            raise AuthenticationError()

        identity = self.identities.get_by_id(p.identity_id)
        if identity is None:
            raise NotFoundError()
        updated = replace(identity, email_confirmed=True)
        if not self.identities.update(updated):
            raise NotFoundError()

        # Consumed last so a failed update leaves the link usable. A failed
        # delete means a concurrent request consumed it first.
        if not self.tokens.delete(token.id):
            raise AuthenticationError()

        logger.info("Email confirmed for identity #%d", updated.id)
        self._publish(soft, EventKind.UPDATED, updated)
        return OperationResult.success({"identity": updated}, "Email address confirmed.")

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _run(self, operation: str, func: Callable[..., OperationResult], *args: Any) -> OperationResult:
        soft: list[SoftFailure] = []
        try:
            result = func(soft, *args)
        except PersistenceError as exc:
            logger.error("%s failed: %s", operation, exc.message)
            result = OperationResult.failure(exc)
        except IdentityError as exc:
            logger.warning("%s rejected (%s): %s", operation, exc.kind, exc.message)
            result = OperationResult.failure(exc)
        result.soft_failures.extend(soft)
        return result

    def _publish(self, soft: list[SoftFailure], kind: EventKind, *payload: Any) -> None:
        try:
            self.bus.publish(kind, *payload)
        except Exception as exc:
            # Every store write of the operation is committed by now.
            logger.exception("Subscriber failed while handling %s", kind.value)
            soft.append(SoftFailure("publish", f"A {kind.value} subscriber failed: {exc}"))

    def _verify_credentials(self, soft: list[SoftFailure], email: str, password: str) -> Identity:
        normalized = normalize_email(email)
        identity = self.identities.get_by_email(normalized) if normalized else None
        credential = self.credentials.get(identity.id, ProviderKind.BASIC) if identity is not None else None

        if credential is None:
            self.policy.verify_dummy(password)
            logger.warning(
                "Failed login for '%s': %s", email, "no basic credential" if identity is not None else "unknown email"
            )
            raise AuthenticationError()
        if not self.policy.verify(password, credential.secret_hash):
            logger.warning("Failed login because of password mismatch: '%s'", email)
            raise AuthenticationError()

        if self.policy.needs_rehash(credential.secret_hash):
            self._rehash(soft, identity, password)
        return identity

    def _rehash(self, soft: list[SoftFailure], identity: Identity, password: str) -> None:
        try:
            self.credentials.update_secret(identity.id, ProviderKind.BASIC, self.policy.hash(password))
        except PersistenceError as exc:
            logger.warning("Failed to rehash credential for identity #%d: %s", identity.id, exc.message)
            soft.append(SoftFailure("rehash", "Stored credential could not be upgraded to the current policy."))
            return
        logger.info("Rehashed credential for identity #%d under the current policy", identity.id)

    def _stamp_last_login(self, soft: list[SoftFailure], identity: Identity) -> Identity:
        try:
            stamp = self.identities.touch_last_login(identity.id)
        except PersistenceError as exc:
            logger.warning("Failed to update last login time for identity #%d: %s", identity.id, exc.message)
            soft.append(SoftFailure("last_login", "Last login time could not be recorded."))
            return identity
        return replace(identity, last_login=stamp)

    def _compensate_registration(self, soft: list[SoftFailure], identity: Identity) -> None:
        try:
            self.identities.delete(identity.id)
        except PersistenceError as exc:
            logger.error("Compensating delete of identity #%d failed: %s", identity.id, exc.message)
            soft.append(SoftFailure("compensate", f"Identity #{identity.id} could not be rolled back."))
            return
        logger.warning("Rolled back identity #%d after credential creation failed", identity.id)

    def _checked_password_change(self, p: UpdateParams, identity: Identity, *, skip_current: bool) -> str:
        """Validate an embedded password change and return the new hash."""
        if not p.new_password or p.new_password != p.password_confirmation:
            raise ValidationError(
                "Failed user update, invalid password information supplied.",
                fields=["new_password", "password_confirmation"],
            )
        if not skip_current:
            credential = self.credentials.get(identity.id, ProviderKind.BASIC)
            if credential is None or not p.current_password:
                self.policy.verify_dummy(p.current_password or "")
                raise AuthenticationError()
            if not self.policy.verify(p.current_password, credential.secret_hash):
                logger.warning("Password change refused for identity #%d: current password mismatch", identity.id)
                raise AuthenticationError()
        return self.policy.hash(p.new_password)

    def _write_secret(self, identity_id: int, secret_hash: str) -> None:
        if self.credentials.get(identity_id, ProviderKind.BASIC) is None:
            self.credentials.create(
                Credential(identity_id=identity_id, provider=ProviderKind.BASIC, secret_hash=secret_hash)
            )
        elif not self.credentials.update_secret(identity_id, ProviderKind.BASIC, secret_hash):
            raise NotFoundError()

    def _resolve_actor(self, context: RequestContext | None) -> int:
        if context is None or not context.has_session:
            logger.warning("Request has no session context")
            raise AuthenticationError()
        if self.sessions.get_by_token(context.identity_id, context.session_token) is None:
            logger.warning("Session context for identity #%d names no live session", context.identity_id)
            raise AuthenticationError()
        return context.identity_id

    def _hostname_for(self, context: RequestContext) -> str:
        if context.remote_hostname:
            return context.remote_hostname
        if not self.settings.resolve_hostnames:
            return context.remote_address
        return self._resolve_hostname(context.remote_address)


def build_auth_service(
    settings: Settings | None = None,
    bus: EventBus | None = None,
    db_url: str | None = None,
) -> AuthService:
    """Wire every store onto one engine and return a ready AuthService.

    Subscribers should be registered on bus before the service handles its
    first operation.
    """
    settings = settings or get_settings()
    engine = create_identity_engine(db_url or settings.database_url or None)
    return AuthService(
        identities=IdentityStore(engine),
        credentials=CredentialStore(engine),
        sessions=SessionStore(engine),
        tokens=TokenStore(engine),
        roles=RoleAuthority(engine),
        bus=bus if bus is not None else EventBus(),
        settings=settings,
    )
