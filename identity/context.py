"""
identity/context.py -- Per-request session context.

RequestContext is the explicit replacement for ambient session state: the
request layer builds one per request (from its cookie/session middleware and
the socket peer address) and passes it to the operations that need it.
login() fills identity_id/session_token on success; logout() clears them, so
the request layer can write the context back to its own session storage.
"""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass

logger = logging.getLogger("gatehouse.identity")


@dataclass
class RequestContext:
    identity_id: int | None = None
    session_token: str | None = None
    remote_address: str = ""
    remote_hostname: str = ""

    @property
    def has_session(self) -> bool:
        return bool(self.identity_id and self.identity_id > 0 and self.session_token)

    def bind(self, identity_id: int, session_token: str) -> None:
        self.identity_id = identity_id
        self.session_token = session_token

    def clear(self) -> None:
        self.identity_id = None
        self.session_token = None


def resolve_hostname(address: str) -> str:
    """Reverse-resolve address. Falls back to the address itself on any lookup failure."""
    if not address:
        return ""
    try:
        return socket.gethostbyaddr(address)[0]
    except (OSError, UnicodeError) as exc:
        logger.debug("Reverse lookup failed for %s: %s", address, exc)
        return address
