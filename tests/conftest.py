"""
tests/conftest.py -- Shared fixtures for Gatehouse tests.

This module provides:
  - settings: a Settings instance with a cheap bcrypt cost
  - engine: an isolated in-memory SQLite engine with the full schema
  - bus / recorder: an EventBus and a subscriber that records every event
  - service: an AuthService wired onto engine + bus
  - make_identity(): registers an account through the service, optionally
    confirmed and holding a role

Design: plain sqlite:///:memory: is enough here because every test drives the
service from a single thread, and SQLAlchemy keeps one connection per thread
for :memory: URLs. The concurrency test builds its own file-backed engine
under tmp_path instead.

bcrypt cost 4 is the lowest bcrypt accepts; anything higher makes the suite
crawl without testing anything extra.
"""

from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from sqlalchemy.engine import Engine

from core.config import Settings
from identity.context import RequestContext
from identity.events import EventBus, EventKind
from identity.models import Identity
from identity.passwords import PasswordPolicy
from identity.roles import RoleAuthority, RoleNames
from identity.service import AuthService
from identity.store import CredentialStore, IdentityStore, SessionStore, TokenStore, create_identity_engine

TEST_PASSWORD = "correct horse battery"


class EventRecorder:
    """Subscribes to every EventKind and keeps (kind, payload) tuples in order."""

    def __init__(self, bus: EventBus) -> None:
        self.events: list[tuple[EventKind, tuple]] = []
        for kind in EventKind:
            bus.subscribe(kind, self._handler_for(kind))

    def _handler_for(self, kind: EventKind):
        def handler(*payload):
            self.events.append((kind, payload))

        return handler

    def kinds(self) -> list[EventKind]:
        return [kind for kind, _ in self.events]

    def of(self, kind: EventKind) -> list[tuple]:
        return [payload for k, payload in self.events if k == kind]

    def clear(self) -> None:
        self.events.clear()


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(bcrypt_rounds=4, resolve_hostnames=True, database_url="")


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = create_identity_engine("sqlite:///:memory:")
    yield eng
    eng.dispose()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def service(engine: Engine, bus: EventBus, settings: Settings) -> AuthService:
    roles = RoleAuthority(engine)
    roles.seed_defaults()
    return AuthService(
        identities=IdentityStore(engine),
        credentials=CredentialStore(engine),
        sessions=SessionStore(engine),
        tokens=TokenStore(engine),
        roles=roles,
        bus=bus,
        policy=PasswordPolicy(rounds=settings.bcrypt_rounds),
        settings=settings,
        hostname_resolver=lambda address: f"host-{address}",
    )


@pytest.fixture
def make_identity(service: AuthService) -> Callable[..., Identity]:
    """Return a factory that registers an account and returns its Identity.

    confirmed defaults to True and role to Viewer so the account can log in
    straight away. Pass role=None for an account without any role.
    """

    def _make(
        email: str = "ada@acme.io",
        password: str = TEST_PASSWORD,
        display_name: str = "Ada Lovelace",
        confirmed: bool = True,
        role: str | None = RoleNames.VIEWER,
    ) -> Identity:
        result = service.register(
            {
                "email": email,
                "password": password,
                "password_confirmation": password,
                "display_name": display_name,
                "email_confirmed": confirmed,
            }
        )
        assert result.ok, result.messages
        identity = result.data["identity"]
        if role:
            service.roles.assign(identity.id, role)
        return identity

    return _make


@pytest.fixture
def logged_in(service: AuthService, make_identity) -> Callable[..., tuple[Identity, RequestContext]]:
    """Return a factory that registers, logs in, and returns (identity, bound context)."""

    def _login(email: str = "ada@acme.io", role: str | None = RoleNames.VIEWER, **kwargs) -> tuple[Identity, RequestContext]:
        identity = make_identity(email=email, role=role, **kwargs)
        ctx = RequestContext(remote_address="203.0.113.7")
        result = service.login({"email": email, "password": kwargs.get("password", TEST_PASSWORD)}, ctx)
        assert result.ok, result.messages
        return identity, ctx

    return _login
