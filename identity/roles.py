"""
identity/roles.py -- Role persistence and membership queries (RoleAuthority).

Roles are flat: a RoleAssignment row is the sole authority for a permission
check, there is no inheritance between roles. Assignments carry a scope so a
deployment can grant a role within one organizational context; scope 0 is
global, and checks match the scope exactly (a scoped Administrator is not a
global Administrator).

Role names are unique by constraint. create_role() and rename_role() surface
a clash as DuplicateError; create_if_missing() treats it as "someone else
created it first" and returns the existing row.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.engine import Engine

from identity.errors import DuplicateError, NotFoundError, ValidationError
from identity.models import Role, RoleAssignment
from identity.store import assignment_table, role_table, store_errors

logger = logging.getLogger("gatehouse.identity.roles")

GLOBAL_SCOPE = 0


class RoleNames:
    """Well-known role names seeded by seed_defaults()."""

    ADMINISTRATOR = "Administrator"
    AUTHOR = "Author"
    REVIEWER = "Reviewer"
    VIEWER = "Viewer"
    EDITOR = "Editor"

    @classmethod
    def all(cls) -> list[str]:
        return [cls.ADMINISTRATOR, cls.AUTHOR, cls.REVIEWER, cls.VIEWER, cls.EDITOR]


class RoleAuthority:
    """Repository for Role / RoleAssignment and the membership checks built on them.

    Usage:
        roles = RoleAuthority(engine)
        roles.seed_defaults()
        roles.assign(identity_id, RoleNames.ADMINISTRATOR)
        roles.has_role(identity_id, RoleNames.ADMINISTRATOR)   # True
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, name: str) -> Role:
        name = _clean_name(name)
        with store_errors("role create", f"A role named '{name}' already exists."):
            with self.engine.connect() as conn:
                result = conn.execute(role_table.insert().values(name=name))
                conn.commit()
        return Role(id=result.inserted_primary_key[0], name=name)

    def get_by_id(self, role_id: int) -> Role | None:
        with store_errors("role lookup"):
            with self.engine.connect() as conn:
                row = conn.execute(role_table.select().where(role_table.c.id == role_id)).fetchone()
        return Role(id=row.id, name=row.name) if row is not None else None

    def get_by_name(self, name: str) -> Role | None:
        if not name:
            return None
        with store_errors("role lookup"):
            with self.engine.connect() as conn:
                row = conn.execute(role_table.select().where(role_table.c.name == name)).fetchone()
        return Role(id=row.id, name=row.name) if row is not None else None

    def list_roles(self) -> list[Role]:
        with store_errors("role listing"):
            with self.engine.connect() as conn:
                rows = conn.execute(role_table.select().order_by(role_table.c.name)).fetchall()
        return [Role(id=r.id, name=r.name) for r in rows]

    def create_if_missing(self, name: str) -> Role:
        """Return the role called name, creating it first if needed."""
        existing = self.get_by_name(name)
        if existing is not None:
            return existing
        try:
            return self.create_role(name)
        except DuplicateError:
            # Lost a race with a concurrent creator; their row is authoritative.
            role = self.get_by_name(name)
            if role is None:
                raise
            return role

    def rename_role(self, role_id: int, name: str) -> bool:
        name = _clean_name(name)
        with store_errors("role rename", f"A role named '{name}' already exists."):
            with self.engine.connect() as conn:
                result = conn.execute(role_table.update().where(role_table.c.id == role_id).values(name=name))
                conn.commit()
        return result.rowcount > 0

    def delete_role(self, role_id: int) -> bool:
        """Delete a role together with every assignment of it."""
        with store_errors("role delete"):
            with self.engine.connect() as conn:
                conn.execute(assignment_table.delete().where(assignment_table.c.role_id == role_id))
                result = conn.execute(role_table.delete().where(role_table.c.id == role_id))
                conn.commit()
        return result.rowcount > 0

    def seed_defaults(self, extra: list[str] | None = None) -> list[Role]:
        """Ensure every well-known role (plus extra names) exists."""
        names = RoleNames.all() + [n for n in (extra or []) if n not in RoleNames.all()]
        roles = [self.create_if_missing(n) for n in names]
        logger.info("Role table seeded (%d roles)", len(roles))
        return roles

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def assign(self, identity_id: int, role_name: str, scope: int = GLOBAL_SCOPE) -> RoleAssignment:
        """Grant role_name to identity_id. Raises NotFoundError for an unknown
        role and DuplicateError if the grant already exists."""
        if identity_id < 1:
            raise ValidationError("Role assignment requires an identity.")
        role = self.get_by_name(role_name)
        if role is None:
            raise NotFoundError(f"No role named '{role_name}'.")
        with store_errors("role assign", "That role is already assigned."):
            with self.engine.connect() as conn:
                conn.execute(assignment_table.insert().values(identity_id=identity_id, role_id=role.id, scope=scope))
                conn.commit()
        return RoleAssignment(identity_id=identity_id, role_id=role.id, scope=scope, role_name=role.name)

    def revoke(self, identity_id: int, role_name: str, scope: int = GLOBAL_SCOPE) -> bool:
        role = self.get_by_name(role_name)
        if role is None:
            return False
        with store_errors("role revoke"):
            with self.engine.connect() as conn:
                result = conn.execute(
                    assignment_table.delete().where(
                        (assignment_table.c.identity_id == identity_id)
                        & (assignment_table.c.role_id == role.id)
                        & (assignment_table.c.scope == scope)
                    )
                )
                conn.commit()
        return result.rowcount > 0

    def has_role(self, identity_id: int, role_name: str, scope: int = GLOBAL_SCOPE) -> bool:
        """True if identity_id holds role_name in exactly this scope."""
        query = (
            select(assignment_table.c.identity_id)
            .select_from(assignment_table.join(role_table, role_table.c.id == assignment_table.c.role_id))
            .where(
                (assignment_table.c.identity_id == identity_id)
                & (role_table.c.name == role_name)
                & (assignment_table.c.scope == scope)
            )
            .limit(1)
        )
        with store_errors("role check"):
            with self.engine.connect() as conn:
                return conn.execute(query).first() is not None

    def has_any_role(self, identity_id: int) -> bool:
        query = select(assignment_table.c.identity_id).where(assignment_table.c.identity_id == identity_id).limit(1)
        with store_errors("role check"):
            with self.engine.connect() as conn:
                return conn.execute(query).first() is not None

    def list_assignments(self, identity_id: int) -> list[RoleAssignment]:
        query = (
            select(assignment_table, role_table.c.name)
            .select_from(assignment_table.join(role_table, role_table.c.id == assignment_table.c.role_id))
            .where(assignment_table.c.identity_id == identity_id)
            .order_by(role_table.c.name, assignment_table.c.scope)
        )
        with store_errors("assignment listing"):
            with self.engine.connect() as conn:
                rows = conn.execute(query).fetchall()
        return [
            RoleAssignment(identity_id=r.identity_id, role_id=r.role_id, scope=r.scope, role_name=r.name) for r in rows
        ]

    def members_of(self, role_name: str, scope: int = GLOBAL_SCOPE) -> list[int]:
        """Identity ids holding role_name in scope, ascending."""
        query = (
            select(assignment_table.c.identity_id)
            .select_from(assignment_table.join(role_table, role_table.c.id == assignment_table.c.role_id))
            .where((role_table.c.name == role_name) & (assignment_table.c.scope == scope))
            .order_by(assignment_table.c.identity_id)
        )
        with store_errors("member listing"):
            with self.engine.connect() as conn:
                return [r.identity_id for r in conn.execute(query).fetchall()]

    def remove_all_for(self, identity_id: int) -> int:
        """Drop every assignment of identity_id, in every scope."""
        with store_errors("assignment delete"):
            with self.engine.connect() as conn:
                result = conn.execute(assignment_table.delete().where(assignment_table.c.identity_id == identity_id))
                conn.commit()
        return result.rowcount


def _clean_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Role name must not be empty.")
    return name
