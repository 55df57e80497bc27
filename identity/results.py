"""
identity/results.py -- Structured results returned by AuthService.

Every service operation returns an OperationResult: success flag, zero or more
human-readable messages, an optional payload, and on failure the error kind
and suggested status. Best-effort steps that failed without failing the
operation are listed in soft_failures so telemetry can see them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any

from identity.errors import IdentityError


@dataclass
class SoftFailure:
    """A best-effort step that failed and was logged but not propagated.

    step is one of "rehash", "last_login", "compensate", "publish".
    """

    step: str
    message: str


@dataclass
class OperationResult:
    ok: bool
    messages: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    status: HTTPStatus = HTTPStatus.OK
    error_kind: str | None = None
    soft_failures: list[SoftFailure] = field(default_factory=list)

    @classmethod
    def success(cls, data: dict[str, Any] | None = None, message: str | None = None) -> OperationResult:
        return cls(ok=True, data=data or {}, messages=[message] if message else [])

    @classmethod
    def failure(cls, error: IdentityError) -> OperationResult:
        return cls(
            ok=False,
            messages=[error.message],
            status=error.status,
            error_kind=error.kind,
        )

    @property
    def degraded(self) -> bool:
        """True when the operation succeeded but a best-effort step did not."""
        return self.ok and bool(self.soft_failures)
