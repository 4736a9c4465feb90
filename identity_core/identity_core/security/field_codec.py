"""Field-level encryption and blind-index hashing for sensitive columns.

Stored values come in two shapes:

* :class:`EncryptedPayload` -- ``hex(iv):hex(ciphertext)`` produced by
  AES-256-CBC with PKCS#7 padding and a fresh 16-byte IV per write.
* :class:`LegacyPlaintext` -- anything else.  Rows written before field
  encryption was introduced still hold plaintext; they are read back as-is
  and sealed opportunistically.

:func:`parse_stored` turns a raw column value into one of the two tagged
types so callers branch on a type rather than on string sniffing.

Blind indexes are unsalted SHA-256 hex digests of the normalised plaintext.
They are deterministic across processes, which is what makes equality search
on encrypted columns possible, and they must stay byte-for-byte compatible
with indexes already in the database.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from dataclasses import dataclass
from enum import Enum

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from identity_core.errors import ConfigurationError, DecryptionFailure

logger = logging.getLogger(__name__)

_IV_LENGTH = 16
_BLOCK_BITS = algorithms.AES.block_size
_KEY_HEX_LENGTH = 64
_SEPARATOR = ":"
_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


# ---------------------------------------------------------------------------
# Tagged stored representation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LegacyPlaintext:
    """A stored value that predates field encryption."""

    value: str


@dataclass(frozen=True)
class EncryptedPayload:
    """A stored ``IV:CIPHERTEXT`` value."""

    iv: bytes
    ciphertext: bytes

    def serialize(self) -> str:
        return f"{self.iv.hex()}{_SEPARATOR}{self.ciphertext.hex()}"


StoredValue = LegacyPlaintext | EncryptedPayload


def _is_hex(value: str) -> bool:
    return bool(_HEX_RE.match(value))


def parse_stored(raw: str) -> StoredValue:
    """Classify a raw column value as encrypted or legacy plaintext.

    The encrypted shape is strict: exactly one separator, a 32-character hex
    IV, and a non-empty hex ciphertext whose length is a whole number of AES
    blocks.  Everything else is legacy plaintext.
    """
    iv_hex, sep, ct_hex = raw.partition(_SEPARATOR)
    if not sep or _SEPARATOR in ct_hex:
        return LegacyPlaintext(raw)
    if len(iv_hex) != _IV_LENGTH * 2 or not _is_hex(iv_hex):
        return LegacyPlaintext(raw)
    if not ct_hex or not _is_hex(ct_hex) or len(ct_hex) % (_IV_LENGTH * 2) != 0:
        return LegacyPlaintext(raw)
    return EncryptedPayload(iv=bytes.fromhex(iv_hex), ciphertext=bytes.fromhex(ct_hex))


# ---------------------------------------------------------------------------
# Decrypt outcome
# ---------------------------------------------------------------------------


class DecryptStatus(str, Enum):
    LEGACY = "legacy"
    DECRYPTED = "decrypted"
    FAILED = "failed"


@dataclass(frozen=True)
class DecryptResult:
    """Outcome of a strict decryption attempt.

    ``value`` holds the plaintext for ``LEGACY`` and ``DECRYPTED`` and the
    original opaque string for ``FAILED``.
    """

    status: DecryptStatus
    value: str | None

    @property
    def ok(self) -> bool:
        return self.status is not DecryptStatus.FAILED

    def plaintext_or_raise(self, field: str | None = None) -> str | None:
        if self.status is DecryptStatus.FAILED:
            raise DecryptionFailure(field)
        return self.value


# ---------------------------------------------------------------------------
# Blind index
# ---------------------------------------------------------------------------


def normalize_for_index(plaintext: str, *, casefold: bool = False) -> str:
    """Normalise a plaintext before hashing: trim, and case-fold only on request."""
    normalized = str(plaintext).strip()
    if casefold:
        normalized = normalized.casefold()
    return normalized


def hash_field(plaintext: str | None, *, casefold: bool = False) -> str | None:
    """Return the SHA-256 blind index for *plaintext*, or ``None`` when empty."""
    if plaintext is None:
        return None
    normalized = normalize_for_index(plaintext, casefold=casefold)
    if not normalized:
        return None
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# FieldCodec
# ---------------------------------------------------------------------------


def _parse_key(key_hex: str | None) -> bytes:
    if not key_hex:
        raise ConfigurationError("Encryption key is not configured; set IDENTITY_ENCRYPTION_KEY (64 hex characters).")
    key_hex = key_hex.strip()
    if len(key_hex) != _KEY_HEX_LENGTH or not _is_hex(key_hex):
        raise ConfigurationError("Encryption key must be exactly 64 hex characters (32 bytes).")
    return bytes.fromhex(key_hex)


class FieldCodec:
    """AES-256-CBC field encryption with a single process-wide key.

    Parameters
    ----------
    key_hex:
        The 32-byte secret key as 64 hex characters.  A missing or malformed
        key raises :class:`ConfigurationError` immediately so that nothing is
        ever stored unencrypted.
    """

    def __init__(self, key_hex: str | None) -> None:
        self._key = _parse_key(key_hex)

    @classmethod
    def from_settings(cls, settings: object) -> FieldCodec:
        """Build a codec from a settings object exposing ``encryption_key``."""
        secret = getattr(settings, "encryption_key", None)
        key_hex = secret.get_secret_value() if secret is not None else None
        return cls(key_hex)

    def _cipher(self, iv: bytes) -> Cipher:
        return Cipher(algorithms.AES(self._key), modes.CBC(iv))

    # -- encryption --------------------------------------------------------

    def encrypt(self, plaintext: str | None) -> str | None:
        """Encrypt *plaintext* into ``hex(iv):hex(ciphertext)``.

        Empty or ``None`` input is returned unchanged.  Callers must pass
        plaintext; handing an already-encrypted value back in would
        double-encrypt it.
        """
        if plaintext is None or plaintext == "":
            return plaintext
        iv = os.urandom(_IV_LENGTH)
        padder = padding.PKCS7(_BLOCK_BITS).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = self._cipher(iv).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return EncryptedPayload(iv=iv, ciphertext=ciphertext).serialize()

    # -- decryption --------------------------------------------------------

    def decrypt_detailed(self, stored: str | None) -> DecryptResult:
        """Decrypt *stored*, reporting whether it was legacy, decrypted, or failed."""
        if stored is None or stored == "":
            return DecryptResult(DecryptStatus.LEGACY, stored)

        parsed = parse_stored(stored)
        if isinstance(parsed, LegacyPlaintext):
            return DecryptResult(DecryptStatus.LEGACY, parsed.value)

        try:
            decryptor = self._cipher(parsed.iv).decryptor()
            padded = decryptor.update(parsed.ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
            raw = unpadder.update(padded) + unpadder.finalize()
            return DecryptResult(DecryptStatus.DECRYPTED, raw.decode("utf-8"))
        except ValueError:
            # Bad padding and invalid UTF-8 (UnicodeDecodeError) both land
            # here: wrong key or corrupted ciphertext.
            logger.warning("Field decryption failed: data corrupted or encryption key changed")
            return DecryptResult(DecryptStatus.FAILED, stored)

    def decrypt(self, stored: str | None) -> str | None:
        """Convenience wrapper: plaintext, legacy value, or the original string on failure."""
        return self.decrypt_detailed(stored).value

    def is_encrypted(self, stored: str | None) -> bool:
        """Return ``True`` when *stored* has the ``IV:CIPHERTEXT`` shape."""
        return bool(stored) and isinstance(parse_stored(stored), EncryptedPayload)  # type: ignore[arg-type]

    # -- blind index -------------------------------------------------------

    @staticmethod
    def hash_field(plaintext: str | None, *, casefold: bool = False) -> str | None:
        """Deterministic blind index; see :func:`hash_field`."""
        return hash_field(plaintext, casefold=casefold)


def generate_key_hex() -> str:
    """Return a fresh random 32-byte key as 64 hex characters (for operators)."""
    return os.urandom(32).hex()
