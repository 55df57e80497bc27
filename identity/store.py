"""
identity/store.py -- SQLAlchemy Core persistence ports for identity entities.

Pattern: Repository + Data Mapper. One repository class per entity
(IdentityStore, CredentialStore, SessionStore, TokenStore); the _row_to_*
functions are the mappers. Service code never touches SQL directly.

All repositories share one Engine built by create_identity_engine(), so a
single database URL serves the whole engine:

    engine = create_identity_engine("sqlite:///:memory:")
    identities = IdentityStore(engine)
    credentials = CredentialStore(engine)

Uniqueness:
  Every uniqueness rule is a declared UNIQUE constraint (email, session token,
  credential per identity+provider, token per identity+purpose, role name,
  assignment per identity+role+scope). There are no SELECT COUNT(*) pre-checks:
  two concurrent writers cannot both pass a constraint the way they could both
  pass a read-then-write check. The losing INSERT raises IntegrityError, which
  store_errors() turns into DuplicateError.

Errors:
  IntegrityError  -> DuplicateError
  SQLAlchemyError -> PersistenceError
  Invalid entity state (missing id, blank token, bad email) -> ValidationError,
  raised before any SQL runs.

Security: all queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from identity.errors import DuplicateError, PersistenceError, ValidationError
from identity.models import Credential, Identity, ProviderKind, Session, Token
from identity.params import valid_email

logger = logging.getLogger("gatehouse.identity.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'gatehouse_identity.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

identity_table = Table(
    "identities",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("email_confirmed", Integer, nullable=False, server_default="0"),
    Column("display_name", String(255), nullable=False),
    Column("date_joined", String(32), nullable=False),
    Column("last_login", String(32)),
)

credential_table = Table(
    "credentials",
    metadata,
    Column("identity_id", Integer, nullable=False),
    Column("provider", Integer, nullable=False),
    Column("secret_hash", Text, nullable=False),
    UniqueConstraint("identity_id", "provider", name="uq_credential_identity_provider"),
)

session_table = Table(
    "sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identity_id", Integer, nullable=False, index=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("remote_address", String(45), nullable=False, server_default=""),
    Column("remote_hostname", String(255), nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
)

token_table = Table(
    "tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identity_id", Integer, nullable=False),
    Column("token", String(128), nullable=False),
    Column("purpose", String(50), nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("identity_id", "purpose", "token", name="uq_token_identity_purpose"),
)

role_table = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
)

assignment_table = Table(
    "role_assignments",
    metadata,
    Column("identity_id", Integer, nullable=False),
    Column("role_id", Integer, nullable=False),
    Column("scope", Integer, nullable=False, server_default="0"),
    UniqueConstraint("identity_id", "role_id", "scope", name="uq_assignment_identity_role_scope"),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_identity_engine(db_url: str | None = None) -> Engine:
    """Create the shared Engine and make sure every table exists."""
    db_url = db_url or _DEFAULT_DB_URL
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@contextmanager
def store_errors(action: str, duplicate_message: str | None = None) -> Iterator[None]:
    """Translate SQLAlchemy failures raised inside the block into engine errors."""
    try:
        yield
    except IntegrityError as exc:
        logger.warning("Uniqueness constraint rejected %s", action)
        raise DuplicateError(duplicate_message) from exc
    except SQLAlchemyError as exc:
        logger.error("Store failure during %s: %s", action, exc)
        raise PersistenceError() from exc


class _Repository:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Identities
# ---------------------------------------------------------------------------


class IdentityStore(_Repository):
    """Repository for Identity records, plus the directory queries
    (paging, counts, typeahead) the admin tooling uses."""

    def create(self, identity: Identity) -> Identity:
        """Insert a new identity and return it with id and date_joined set.

        Raises DuplicateError if the email is already registered.
        """
        if identity.id is not None:
            raise ValidationError("Cannot create an identity that already has an id.")
        _check_identity_fields(identity)
        joined = _now_iso()
        with store_errors("identity create", "An account with that email address already exists."):
            with self.engine.connect() as conn:
                result = conn.execute(
                    identity_table.insert().values(
                        email=identity.email,
                        email_confirmed=1 if identity.email_confirmed else 0,
                        display_name=identity.display_name,
                        date_joined=joined,
                        last_login=identity.last_login,
                    )
                )
                conn.commit()
        return replace(identity, id=result.inserted_primary_key[0], date_joined=joined)

    def get_by_id(self, identity_id: int) -> Identity | None:
        with store_errors("identity lookup"):
            with self.engine.connect() as conn:
                row = conn.execute(identity_table.select().where(identity_table.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_by_email(self, email: str) -> Identity | None:
        """Exact match on the stored (normalized) address. Returns None if not found."""
        with store_errors("identity lookup"):
            with self.engine.connect() as conn:
                row = conn.execute(identity_table.select().where(identity_table.c.email == email)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def update(self, identity: Identity) -> bool:
        """Persist the mutable fields of identity.

        date_joined is never written. Returns False if the id was not found.
        Raises DuplicateError if the new email belongs to another identity.
        """
        if identity.id is None or identity.id < 1:
            raise ValidationError("Cannot update an identity without an id.")
        _check_identity_fields(identity)
        with store_errors("identity update", "An account with that email address already exists."):
            with self.engine.connect() as conn:
                result = conn.execute(
                    identity_table.update()
                    .where(identity_table.c.id == identity.id)
                    .values(
                        email=identity.email,
                        email_confirmed=1 if identity.email_confirmed else 0,
                        display_name=identity.display_name,
                        last_login=identity.last_login,
                    )
                )
                conn.commit()
        return result.rowcount > 0

    def touch_last_login(self, identity_id: int) -> str:
        """Stamp the current UTC time as last_login and return the stamp."""
        stamp = _now_iso()
        with store_errors("last login update"):
            with self.engine.connect() as conn:
                conn.execute(identity_table.update().where(identity_table.c.id == identity_id).values(last_login=stamp))
                conn.commit()
        return stamp

    def delete(self, identity_id: int) -> bool:
        """Delete the identity row only. Dependent rows are the caller's job."""
        with store_errors("identity delete"):
            with self.engine.connect() as conn:
                result = conn.execute(identity_table.delete().where(identity_table.c.id == identity_id))
                conn.commit()
        return result.rowcount > 0

    def list_identities(self, limit: int | None = None, offset: int | None = None) -> list[Identity]:
        """Return identities ordered by id, optionally paged."""
        query = identity_table.select().order_by(identity_table.c.id)
        if limit is not None:
            query = query.limit(limit)
        if offset is not None:
            query = query.offset(offset)
        with store_errors("identity listing"):
            with self.engine.connect() as conn:
                rows = conn.execute(query).fetchall()
        return [_row_to_identity(r) for r in rows]

    def count(self) -> int:
        with store_errors("identity count"):
            with self.engine.connect() as conn:
                result = conn.execute(select(func.count()).select_from(identity_table)).scalar()
        return result or 0

    def get_display_name(self, identity_id: int) -> str | None:
        with store_errors("identity lookup"):
            with self.engine.connect() as conn:
                return conn.execute(
                    select(identity_table.c.display_name).where(identity_table.c.id == identity_id)
                ).scalar()

    def typeahead(self) -> list[str]:
        """Every identity as "Name (email)", ordered by name, for pickers."""
        with store_errors("identity typeahead"):
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(identity_table.c.display_name, identity_table.c.email).order_by(
                        identity_table.c.display_name
                    )
                ).fetchall()
        return [f"{r.display_name} ({r.email})" for r in rows]


def _check_identity_fields(identity: Identity) -> None:
    if not identity.display_name or not identity.display_name.strip() or not valid_email(identity.email):
        raise ValidationError("Identity requires a display name and a valid email address.")


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class CredentialStore(_Repository):
    """Repository for provider-scoped credentials. Hashing policy lives in
    identity.passwords; this class only stores what it is given."""

    def get(self, identity_id: int, provider: ProviderKind = ProviderKind.BASIC) -> Credential | None:
        with store_errors("credential lookup"):
            with self.engine.connect() as conn:
                row = conn.execute(
                    credential_table.select().where(
                        (credential_table.c.identity_id == identity_id)
                        & (credential_table.c.provider == int(provider))
                    )
                ).fetchone()
        return _row_to_credential(row) if row is not None else None

    def create(self, credential: Credential) -> Credential:
        """Insert a credential. Raises DuplicateError if one already exists
        for this identity and provider."""
        if credential.identity_id < 1 or not credential.secret_hash:
            raise ValidationError("Credential requires an identity and a secret.")
        with store_errors("credential create", "A credential already exists for that account."):
            with self.engine.connect() as conn:
                conn.execute(
                    credential_table.insert().values(
                        identity_id=credential.identity_id,
                        provider=int(credential.provider),
                        secret_hash=credential.secret_hash,
                    )
                )
                conn.commit()
        return credential

    def update_secret(self, identity_id: int, provider: ProviderKind, secret_hash: str) -> bool:
        """Replace the stored hash. Returns False if no such credential exists."""
        if not secret_hash:
            raise ValidationError("Credential requires a secret.")
        with store_errors("credential update"):
            with self.engine.connect() as conn:
                result = conn.execute(
                    credential_table.update()
                    .where(
                        (credential_table.c.identity_id == identity_id)
                        & (credential_table.c.provider == int(provider))
                    )
                    .values(secret_hash=secret_hash)
                )
                conn.commit()
        return result.rowcount > 0

    def list_for(self, identity_id: int) -> list[Credential]:
        with store_errors("credential listing"):
            with self.engine.connect() as conn:
                rows = conn.execute(
                    credential_table.select().where(credential_table.c.identity_id == identity_id)
                ).fetchall()
        return [_row_to_credential(r) for r in rows]

    def delete_all_for(self, identity_id: int) -> int:
        """Remove every credential of identity_id. Returns the number removed."""
        with store_errors("credential delete"):
            with self.engine.connect() as conn:
                result = conn.execute(credential_table.delete().where(credential_table.c.identity_id == identity_id))
                conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionStore(_Repository):
    """Repository for login sessions. Sessions are immutable: create, read
    and delete only."""

    def create(self, session: Session) -> Session:
        """Insert a session and return it with id and created_at set.

        A token collision raises DuplicateError; the existing row is never
        overwritten.
        """
        if session.id is not None or session.identity_id < 1 or not session.token:
            raise ValidationError("Session requires an identity and a token, and must be new.")
        created = _now_iso()
        with store_errors("session create", "Session token collision."):
            with self.engine.connect() as conn:
                result = conn.execute(
                    session_table.insert().values(
                        identity_id=session.identity_id,
                        token=session.token,
                        remote_address=session.remote_address,
                        remote_hostname=session.remote_hostname,
                        created_at=created,
                    )
                )
                conn.commit()
        return replace(session, id=result.inserted_primary_key[0], created_at=created)

    def get_by_id(self, session_id: int) -> Session | None:
        with store_errors("session lookup"):
            with self.engine.connect() as conn:
                row = conn.execute(session_table.select().where(session_table.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_by_token(self, identity_id: int, token: str) -> Session | None:
        """Find the session holding token for identity_id. Both must match."""
        if identity_id < 1 or not token:
            raise ValidationError("Session lookup requires an identity and a token.")
        with store_errors("session lookup"):
            with self.engine.connect() as conn:
                row = conn.execute(
                    session_table.select().where(
                        (session_table.c.token == token) & (session_table.c.identity_id == identity_id)
                    )
                ).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_for(self, identity_id: int) -> list[Session]:
        with store_errors("session listing"):
            with self.engine.connect() as conn:
                rows = conn.execute(
                    session_table.select()
                    .where(session_table.c.identity_id == identity_id)
                    .order_by(session_table.c.id)
                ).fetchall()
        return [_row_to_session(r) for r in rows]

    def delete(self, session_id: int) -> bool:
        with store_errors("session delete"):
            with self.engine.connect() as conn:
                result = conn.execute(session_table.delete().where(session_table.c.id == session_id))
                conn.commit()
        return result.rowcount > 0

    def delete_all_for(self, identity_id: int) -> int:
        """Revoke every session of identity_id. Returns the number removed."""
        with store_errors("session delete"):
            with self.engine.connect() as conn:
                result = conn.execute(session_table.delete().where(session_table.c.identity_id == identity_id))
                conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# General-purpose tokens
# ---------------------------------------------------------------------------


class TokenStore(_Repository):
    """Repository for purpose-tagged one-off tokens."""

    def create(self, token: Token) -> Token:
        if token.id is not None or token.identity_id < 1 or not token.token or not token.purpose:
            raise ValidationError("Token requires an identity, a value and a purpose, and must be new.")
        created = _now_iso()
        with store_errors("token create", "Token collision."):
            with self.engine.connect() as conn:
                result = conn.execute(
                    token_table.insert().values(
                        identity_id=token.identity_id,
                        token=token.token,
                        purpose=token.purpose,
                        created_at=created,
                    )
                )
                conn.commit()
        return replace(token, id=result.inserted_primary_key[0], created_at=created)

    def get(self, identity_id: int, token: str, purpose: str | None = None) -> Token | None:
        """Return the matching persisted Token, or None.

        purpose=None matches a token of any purpose.
        """
        if identity_id < 1 or not token:
            return None
        condition = (token_table.c.identity_id == identity_id) & (token_table.c.token == token)
        if purpose is not None:
            condition = condition & (token_table.c.purpose == purpose)
        with store_errors("token lookup"):
            with self.engine.connect() as conn:
                row = conn.execute(token_table.select().where(condition)).fetchone()
        return _row_to_token(row) if row is not None else None

    def delete(self, token_id: int) -> bool:
        with store_errors("token delete"):
            with self.engine.connect() as conn:
                result = conn.execute(token_table.delete().where(token_table.c.id == token_id))
                conn.commit()
        return result.rowcount > 0

    def delete_all_for(self, identity_id: int, purpose: str | None = None) -> int:
        """Invalidate tokens of identity_id, optionally only those of one purpose."""
        condition = token_table.c.identity_id == identity_id
        if purpose is not None:
            condition = condition & (token_table.c.purpose == purpose)
        with store_errors("token delete"):
            with self.engine.connect() as conn:
                result = conn.execute(token_table.delete().where(condition))
                conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        email=row.email,
        email_confirmed=bool(row.email_confirmed),
        display_name=row.display_name,
        date_joined=row.date_joined,
        last_login=row.last_login,
    )


def _row_to_credential(row) -> Credential:
    return Credential(
        identity_id=row.identity_id,
        provider=ProviderKind(row.provider),
        secret_hash=row.secret_hash,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        identity_id=row.identity_id,
        token=row.token,
        remote_address=row.remote_address,
        remote_hostname=row.remote_hostname,
        created_at=row.created_at,
    )


def _row_to_token(row) -> Token:
    return Token(
        id=row.id,
        identity_id=row.identity_id,
        token=row.token,
        purpose=row.purpose,
        created_at=row.created_at,
    )
