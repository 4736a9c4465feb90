"""Password hashing and verification with lazy migration of legacy rows.

Accounts created before password hashing was introduced still carry their
password in plaintext.  Such a row is accepted exactly once more: on the
first successful login the password is re-hashed with bcrypt and written back
through a compare-and-swap on the legacy value, so concurrent logins cannot
both "migrate" and a hashed row never reverts to plaintext.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass

import bcrypt

from identity_core.state.repository import AccountRepository
from identity_core.state.tables import AccountTable

logger = logging.getLogger(__name__)

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")
_BCRYPT_MAX_BYTES = 72


@dataclass(frozen=True)
class CredentialCheck:
    """Pure outcome of comparing a candidate against a stored value."""

    matched: bool
    legacy: bool


@dataclass(frozen=True)
class VerifyResult:
    """Outcome of :meth:`CredentialStore.verify`.

    ``migrated`` is ``True`` only for the call that actually replaced a
    legacy plaintext password with a hash.
    """

    matched: bool
    migrated: bool = False


def is_hashed(stored: str | None) -> bool:
    """Return ``True`` when *stored* looks like a bcrypt hash."""
    return bool(stored) and stored.startswith(_BCRYPT_PREFIXES)  # type: ignore[union-attr]


class CredentialStore:
    """bcrypt credential hashing bound to an :class:`AccountRepository`.

    Parameters
    ----------
    accounts:
        Repository used to persist migrated and changed password hashes.
    rounds:
        bcrypt cost factor.  Production settings enforce at least 10.
    """

    def __init__(self, accounts: AccountRepository, *, rounds: int = 10) -> None:
        self._accounts = accounts
        self._rounds = rounds
        self._dummy_hash: bytes | None = None

    # -- pure operations ---------------------------------------------------

    def hash_password(self, plaintext: str) -> str:
        """Hash *plaintext* with a fresh salt."""
        encoded = plaintext.encode("utf-8")
        if len(encoded) > _BCRYPT_MAX_BYTES:
            raise ValueError("Password exceeds the 72-byte bcrypt limit.")
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self._rounds)).decode("utf-8")

    @staticmethod
    def is_hashed(stored: str | None) -> bool:
        return is_hashed(stored)

    def check(self, stored: str | None, candidate: str) -> CredentialCheck:
        """Compare *candidate* against *stored* without touching storage.

        A malformed hash is a mismatch, never an exception.  Legacy plaintext
        is compared in constant time.
        """
        if not stored or not candidate:
            return CredentialCheck(matched=False, legacy=not is_hashed(stored))

        if is_hashed(stored):
            try:
                matched = bcrypt.checkpw(candidate.encode("utf-8"), stored.encode("utf-8"))
            except ValueError:
                logger.warning("Stored password hash is malformed; treating as mismatch")
                matched = False
            return CredentialCheck(matched=matched, legacy=False)

        matched = hmac.compare_digest(stored.encode("utf-8"), candidate.encode("utf-8"))
        return CredentialCheck(matched=matched, legacy=True)

    def burn_cycle(self) -> None:
        """Spend one bcrypt comparison so unknown-email logins are not faster."""
        if self._dummy_hash is None:
            self._dummy_hash = bcrypt.hashpw(b"dummy-password-for-timing", bcrypt.gensalt(rounds=self._rounds))
        bcrypt.checkpw(b"not-the-password", self._dummy_hash)

    # -- persisted operations ----------------------------------------------

    async def verify(self, account: AccountTable, candidate: str) -> VerifyResult:
        """Check *candidate* and migrate a legacy plaintext password on success."""
        stored = account.password_hash
        outcome = self.check(stored, candidate)
        if not outcome.matched:
            return VerifyResult(matched=False)
        if not outcome.legacy:
            return VerifyResult(matched=True)

        won = await self._accounts.compare_and_set(
            account.id,
            "password_hash",
            stored,
            password_hash=self.hash_password(candidate),
        )
        if won:
            logger.info("Migrated legacy plaintext password for account %s", account.id)
        else:
            logger.debug("Legacy password for account %s already migrated by a concurrent login", account.id)
        return VerifyResult(matched=True, migrated=won)

    async def set_password(self, account: AccountTable, plaintext: str) -> None:
        """Store a new bcrypt hash for *account* (versioned conditional write)."""
        await self._accounts.update_versioned(
            account.id,
            account.version,
            password_hash=self.hash_password(plaintext),
        )
