"""Field encryption, blind indexes and password credentials."""

from identity_core.security.credentials import CredentialStore, VerifyResult
from identity_core.security.field_codec import FieldCodec, hash_field, parse_stored

__all__ = [
    "CredentialStore",
    "FieldCodec",
    "VerifyResult",
    "hash_field",
    "parse_stored",
]
