"""Error taxonomy for the identity and sensitive-data protection core.

Every error raised by this package derives from :class:`IdentityError` so the
HTTP layer can translate the whole family in one place.  The classes carry
only the information that is safe to show a caller; plaintext values are never
attached to an exception.
"""

from __future__ import annotations


class IdentityError(Exception):
    """Base class for all identity-core failures."""


class ConfigurationError(IdentityError):
    """The secret key (or another required setting) is missing or malformed.

    Fatal at startup: the process must refuse to encrypt or decrypt rather
    than silently store plaintext.
    """


class DuplicateIdentity(IdentityError):
    """A unique identity attribute (email, phone, tax ID) is already registered."""

    def __init__(self, field: str) -> None:
        super().__init__(f"An account with this {field.replace('_', ' ')} is already registered.")
        self.field = field


class InvalidCredentials(IdentityError):
    """Unknown email or wrong password.

    The two cases are deliberately indistinguishable to the caller.
    """

    def __init__(self) -> None:
        super().__init__("Invalid email or password.")


class DecryptionFailure(IdentityError):
    """A stored value has the encrypted shape but could not be decrypted."""

    def __init__(self, field: str | None = None) -> None:
        label = field or "value"
        super().__init__(f"Stored {label} could not be decrypted (corrupted data or wrong key).")
        self.field = field


class UnknownWebhookSubject(IdentityError):
    """A payment event references a customer that has no account."""

    def __init__(self, email: str) -> None:
        super().__init__("No account matches the payment event's customer email.")
        self.email = email


class StaleWriteConflict(IdentityError):
    """A conditional update lost a race against a concurrent writer.

    The caller should re-read the record and retry the whole operation.
    """

    def __init__(self, entity_id: str) -> None:
        super().__init__(f"Record {entity_id} was modified concurrently; retry the operation.")
        self.entity_id = entity_id
