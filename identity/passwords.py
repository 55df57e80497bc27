"""
identity/passwords.py -- Credential hashing policy and token generation.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). The cost factor is
       the current hashing policy and comes from Settings.bcrypt_rounds.
       bcrypt.checkpw() compares in constant time.

  Rehash: a stored hash needs rehash when its embedded parameters (bcrypt
       variant and cost factor) differ from the current policy, or when it is
       not a bcrypt hash at all. Rehashing is the caller's best-effort step;
       this module only answers the question.

  Timing equalization: verify_dummy() runs a full bcrypt check against a
       throwaway hash so that "unknown email" costs the same as "wrong
       password" and response time does not reveal which accounts exist.

  Tokens: secrets.token_hex() from the OS CSPRNG. 32 bytes (the default)
       gives 256 bits of entropy -- collisions and guessing are infeasible,
       and the store still rejects a collision instead of overwriting.
"""

from __future__ import annotations

import secrets

import bcrypt

from core.config import Settings, get_settings

# Variant bcrypt.gensalt() emits by default. $2a$ and $2y$ hashes verify fine
# but are migrated on the next successful login.
_CURRENT_VARIANT = "2b"
_BCRYPT_VARIANTS = {"2a", "2b", "2y"}


class PasswordPolicy:
    """Hash, verify and rehash decisions for basic-provider credentials.

    Usage:
        policy = PasswordPolicy(rounds=12)
        hashed = policy.hash("s3cret")
        policy.verify("s3cret", hashed)      # True
        policy.needs_rehash(hashed)          # False
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        self._dummy_hash: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> PasswordPolicy:
        settings = settings or get_settings()
        return cls(rounds=settings.bcrypt_rounds)

    def hash(self, plain: str) -> str:
        """Return a bcrypt hash of plain under the current policy.

        Input longer than 72 bytes is rejected upstream by the parameter
        models; bcrypt>=4.1 raises ValueError for it.
        """
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True if plain matches hashed. Malformed hashes never match."""
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            return False

    def verify_dummy(self, plain: str) -> None:
        """Burn one bcrypt check for an identity that does not exist."""
        if self._dummy_hash is None:
            self._dummy_hash = self.hash("gatehouse_timing_dummy")
        self.verify(plain, self._dummy_hash)

    def needs_rehash(self, hashed: str) -> bool:
        """True if hashed was not produced under the current policy.

        bcrypt hashes look like $2b$12$<22-char salt><31-char digest>.
        """
        parts = hashed.split("$")
        if len(parts) != 4 or parts[0] != "" or parts[1] not in _BCRYPT_VARIANTS:
            return True
        if parts[1] != _CURRENT_VARIANT:
            return True
        try:
            cost = int(parts[2])
        except ValueError:
            return True
        return cost != self.rounds


def generate_token(nbytes: int = 32) -> str:
    """Return an opaque hex token with nbytes of CSPRNG entropy."""
    return secrets.token_hex(nbytes)


def token_prefix(token: str) -> str:
    """First 8 characters, for log lines. Never log the full token."""
    return f"{token[:8]}..."
