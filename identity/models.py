"""
identity/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic). Stores own persistence,
the service owns policy; these classes only own the shape.

id fields are None before the record is written to the database. Timestamps
are ISO 8601 UTC strings, set by the store on insert.

Layer rule: no imports from main.py.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class ProviderKind(IntEnum):
    """Authentication method a Credential belongs to.

    Closed set. Lookups that find nothing return None rather than a sentinel
    member, so there is no ERROR value here.
    """

    BASIC = 1


@dataclass
class Identity:
    """The durable user account record (root aggregate).

    email is unique across all identities (UNIQUE index). Changing email
    resets email_confirmed unless the caller re-supplies it.
    """

    email: str
    display_name: str
    email_confirmed: bool = False
    id: int | None = None
    date_joined: str | None = None  # set once by the store on insert
    last_login: str | None = None


@dataclass
class Credential:
    """A provider-scoped hashed secret bound to an Identity.

    At most one per (identity_id, provider). secret_hash is the bcrypt
    output; the raw secret is never stored or logged.
    """

    identity_id: int
    provider: ProviderKind
    secret_hash: str


@dataclass
class Session:
    """A live authenticated context created at login, destroyed at logout.

    Immutable once created -- the store exposes no update path. token is
    globally unique (UNIQUE index) and generated from a CSPRNG.
    """

    identity_id: int
    token: str
    remote_address: str = ""
    remote_hostname: str = ""
    id: int | None = None
    created_at: str | None = None


@dataclass
class Token:
    """A purpose-tagged one-off artifact (email confirmation, reset links).

    Unique per (identity_id, purpose, token). Deleted on consumption.
    """

    identity_id: int
    token: str
    purpose: str
    id: int | None = None
    created_at: str | None = None


@dataclass
class Role:
    """Named permission grouping. name is unique."""

    name: str
    id: int | None = None


@dataclass
class RoleAssignment:
    """Binds an Identity to a Role within a scope (0 = global).

    Existence of the assignment is the sole authority for permission checks;
    roles have no hierarchy.
    """

    identity_id: int
    role_id: int
    scope: int = 0
    role_name: str | None = None  # filled by joined queries, display only
