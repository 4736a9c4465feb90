"""Transparent encryption wrapper around entity persistence.

A :class:`SensitiveFieldRepository` is bound to one table and a tuple of
:class:`SensitiveField` specs.  Every designated column is written as
``hex(iv):hex(ciphertext)`` together with its blind index in the same
statement, read back decrypted for display with the blind index stripped, and
searched only through the blind index.

Example::

    repo = SensitiveFieldRepository.for_table(session, codec, "customers")
    customer = await repo.create(store_id="s1", name="Ana", phone="11 99999-0000")
    match = await repo.find_by_field("phone", "11 99999-0000", store_id="s1")
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import inspect as sa_inspect
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from identity_core.config import DecryptFailurePolicy
from identity_core.errors import DecryptionFailure, DuplicateIdentity, StaleWriteConflict
from identity_core.security.field_codec import (
    DecryptResult,
    DecryptStatus,
    FieldCodec,
    LegacyPlaintext,
    parse_stored,
)
from identity_core.state.repository import conditional_update
from identity_core.state.tables import AccountTable, CustomerTable, SupplierTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SensitiveField:
    """One encrypted column and the blind-index column that shadows it."""

    name: str
    hash_column: str
    casefold: bool = False
    unique: bool = False


ACCOUNT_FIELDS: tuple[SensitiveField, ...] = (
    SensitiveField("phone", "phone_hash", unique=True),
    SensitiveField("tax_id", "tax_id_hash", unique=True),
)
CUSTOMER_FIELDS: tuple[SensitiveField, ...] = (SensitiveField("phone", "phone_hash"),)
SUPPLIER_FIELDS: tuple[SensitiveField, ...] = (SensitiveField("phone", "phone_hash"),)

# Entities carrying encrypted columns, keyed by table name.
SENSITIVE_ENTITIES: dict[str, tuple[Any, tuple[SensitiveField, ...]]] = {
    "accounts": (AccountTable, ACCOUNT_FIELDS),
    "customers": (CustomerTable, CUSTOMER_FIELDS),
    "suppliers": (SupplierTable, SUPPLIER_FIELDS),
}

# Columns never shown to callers, whatever the entity.
DEFAULT_DISPLAY_EXCLUDE = frozenset({"version", "password_hash"})


def _blank(value: str | None) -> bool:
    return value is None or str(value).strip() == ""


class SensitiveFieldRepository:
    """Encrypt-on-write / decrypt-on-read access to one table.

    Parameters
    ----------
    session:
        Active async session; the caller owns the transaction.
    codec:
        The process-wide :class:`FieldCodec`.
    table:
        ORM class of the entity (must have ``id`` and ``version`` columns).
    fields:
        The designated sensitive columns of that entity.
    policy:
        What :meth:`read_for_display` does when a value fails to decrypt.
    """

    def __init__(
        self,
        session: AsyncSession,
        codec: FieldCodec,
        table: Any,
        fields: Iterable[SensitiveField],
        *,
        policy: DecryptFailurePolicy = DecryptFailurePolicy.DEGRADE,
    ) -> None:
        self._session = session
        self._codec = codec
        self._table = table
        self._fields = {spec.name: spec for spec in fields}
        self._policy = policy

    @classmethod
    def for_table(
        cls,
        session: AsyncSession,
        codec: FieldCodec,
        table_name: str,
        *,
        policy: DecryptFailurePolicy = DecryptFailurePolicy.DEGRADE,
    ) -> SensitiveFieldRepository:
        """Build a repository for one of :data:`SENSITIVE_ENTITIES`."""
        table, fields = SENSITIVE_ENTITIES[table_name]
        return cls(session, codec, table, fields, policy=policy)

    @property
    def fields(self) -> tuple[SensitiveField, ...]:
        return tuple(self._fields.values())

    def _spec(self, field: str) -> SensitiveField:
        try:
            return self._fields[field]
        except KeyError:
            raise ValueError(f"{field!r} is not a sensitive field of {self._table.__tablename__}") from None

    def _index(self, spec: SensitiveField, plaintext: str | None) -> str | None:
        if _blank(plaintext):
            return None
        return self._codec.hash_field(plaintext, casefold=spec.casefold)

    # -- writes ------------------------------------------------------------

    def seal(self, values: dict[str, Any]) -> dict[str, Any]:
        """Return *values* with every designated field encrypted and indexed.

        Values must be plaintext.  Blank values are stored as ``NULL`` in both
        columns.
        """
        sealed = dict(values)
        for spec in self._fields.values():
            if spec.name not in values:
                continue
            plaintext = values[spec.name]
            if _blank(plaintext):
                sealed[spec.name] = None
                sealed[spec.hash_column] = None
            else:
                sealed[spec.name] = self._codec.encrypt(plaintext)
                sealed[spec.hash_column] = self._index(spec, plaintext)
        return sealed

    async def create(self, **values: Any) -> Any:
        """Insert a new entity with its sensitive fields sealed."""
        row = self._table(**self.seal(values))
        if not row.id:
            row.id = uuid.uuid4().hex
        self._session.add(row)
        await self._flush_or_duplicate()
        return row

    async def write(self, entity: Any, field: str, plaintext: str | None) -> bool:
        """Write one sensitive field; returns ``False`` when nothing changed."""
        changed = await self.write_many(entity, {field: plaintext})
        return bool(changed)

    async def write_many(self, entity: Any, changes: dict[str, Any]) -> list[str]:
        """Apply sensitive and plain column changes in one versioned update.

        Sensitive fields whose new plaintext equals the currently stored
        decrypted value are skipped, so unchanged values are never
        re-encrypted.  A legacy plaintext value is sealed even when it is
        unchanged.  Plain columns are written as given.  Returns the names of
        the columns actually changed.

        Raises :class:`StaleWriteConflict` if *entity* was modified since it
        was read.
        """
        values: dict[str, Any] = {}
        changed: list[str] = []
        for name, new_value in changes.items():
            spec = self._fields.get(name)
            if spec is None:
                if getattr(entity, name) != new_value:
                    values[name] = new_value
                    changed.append(name)
                continue

            stored = getattr(entity, name)
            if _blank(stored) and _blank(new_value):
                continue
            current = self._codec.decrypt_detailed(stored)
            # Legacy plaintext equal to the new value is still sealed.
            if current.status is DecryptStatus.DECRYPTED and current.value == new_value:
                continue
            if _blank(new_value):
                values[name] = None
                values[spec.hash_column] = None
            else:
                values[name] = self._codec.encrypt(new_value)
                values[spec.hash_column] = self._index(spec, new_value)
            changed.append(name)

        if not values:
            return []

        try:
            won = await conditional_update(
                self._session,
                self._table,
                entity.id,
                [self._table.version == entity.version],
                values,
            )
        except IntegrityError as exc:
            await self._session.rollback()
            raise DuplicateIdentity(self._duplicate_field(exc, changed)) from exc
        if not won:
            raise StaleWriteConflict(entity.id)
        await self._session.refresh(entity)
        return changed

    def legacy_changes(self, entity: Any) -> tuple[list[str], dict[str, Any]]:
        """Return the fields :meth:`seal_legacy` would seal and the columns it would write.

        Legacy plaintext is encrypted and indexed.  A value that is already
        encrypted and decrypts cleanly only gets its missing blind index.
        """
        values: dict[str, Any] = {}
        sealed: list[str] = []
        for spec in self._fields.values():
            raw = getattr(entity, spec.name)
            if _blank(raw):
                continue
            parsed = parse_stored(raw)
            if isinstance(parsed, LegacyPlaintext):
                values[spec.name] = self._codec.encrypt(parsed.value)
                values[spec.hash_column] = self._index(spec, parsed.value)
                sealed.append(spec.name)
            elif getattr(entity, spec.hash_column) is None:
                result = self._codec.decrypt_detailed(raw)
                if result.ok:
                    values[spec.hash_column] = self._index(spec, result.value)
                    sealed.append(spec.name)
        return sealed, values

    async def index_collision(self, entity: Any, values: dict[str, Any]) -> str | None:
        """Name the first unique field whose new blind index another row already holds."""
        for spec in self._fields.values():
            digest = values.get(spec.hash_column)
            if not spec.unique or digest is None:
                continue
            holder = await self._find_by_digest(spec, digest)
            if holder is not None and holder.id != entity.id:
                return spec.name
        return None

    async def seal_legacy(self, entity: Any) -> list[str]:
        """Encrypt designated fields still stored as legacy plaintext.

        Also back-fills a missing blind index for values that are already
        encrypted and decrypt cleanly.  Returns the sealed field names.

        Raises :class:`DuplicateIdentity`, before writing anything, when a
        unique field's value is already indexed on another row.
        """
        sealed, values = self.legacy_changes(entity)
        if not values:
            return []
        collision = await self.index_collision(entity, values)
        if collision is not None:
            raise DuplicateIdentity(collision)

        won = await conditional_update(
            self._session,
            self._table,
            entity.id,
            [self._table.version == entity.version],
            values,
        )
        if not won:
            raise StaleWriteConflict(entity.id)
        await self._session.refresh(entity)
        logger.info("Sealed %d legacy field(s) on %s %s", len(sealed), self._table.__tablename__, entity.id)
        return sealed

    # -- reads -------------------------------------------------------------

    def reveal(self, entity: Any, field: str) -> DecryptResult:
        """Strict access to one field's plaintext."""
        self._spec(field)
        return self._codec.decrypt_detailed(getattr(entity, field))

    def classify(self, entity: Any) -> dict[str, DecryptStatus | None]:
        """Report how each designated field is stored (``None`` when empty)."""
        report: dict[str, DecryptStatus | None] = {}
        for spec in self._fields.values():
            raw = getattr(entity, spec.name)
            report[spec.name] = None if _blank(raw) else self._codec.decrypt_detailed(raw).status
        return report

    def read_for_display(self, entity: Any, *, exclude: Iterable[str] = DEFAULT_DISPLAY_EXCLUDE) -> dict[str, Any]:
        """Return a plain dict view with sensitive fields decrypted.

        Blind-index columns and the *exclude* columns are stripped.  A value
        that fails to decrypt is shown as ``None`` (and logged) under the
        ``degrade`` policy, or raises :class:`DecryptionFailure` under
        ``raise``.
        """
        hidden = set(exclude) | {spec.hash_column for spec in self._fields.values()}
        view: dict[str, Any] = {}
        for column in sa_inspect(self._table).columns:
            key = column.key
            if key in hidden:
                continue
            value = getattr(entity, key)
            spec = self._fields.get(key)
            if spec is not None:
                result = self._codec.decrypt_detailed(value)
                if result.status is DecryptStatus.FAILED:
                    logger.warning(
                        "Undecryptable %s on %s %s",
                        key,
                        self._table.__tablename__,
                        entity.id,
                    )
                    if self._policy is DecryptFailurePolicy.RAISE:
                        raise DecryptionFailure(key)
                    value = None
                else:
                    value = result.value
            view[key] = value
        return view

    async def get_by_id(self, entity_id: str) -> Any | None:
        stmt = select(self._table).where(self._table.id == entity_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self, **scope: Any) -> list[Any]:
        stmt = select(self._table).order_by(self._table.id).execution_options(populate_existing=True)
        for column, value in scope.items():
            stmt = stmt.where(getattr(self._table, column) == value)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_by_field(self, field: str, plaintext: str, **scope: Any) -> Any | None:
        """Equality lookup through the blind index; never decrypts stored rows.

        *scope* narrows the search to other plain columns (e.g. ``store_id``).
        """
        spec = self._spec(field)
        digest = self._index(spec, plaintext)
        if digest is None:
            return None
        return await self._find_by_digest(spec, digest, **scope)

    async def _find_by_digest(self, spec: SensitiveField, digest: str, **scope: Any) -> Any | None:
        stmt = (
            select(self._table)
            .where(getattr(self._table, spec.hash_column) == digest)
            .execution_options(populate_existing=True)
        )
        for column, value in scope.items():
            stmt = stmt.where(getattr(self._table, column) == value)
        result = await self._session.execute(stmt.limit(1))
        return result.scalars().first()

    async def ensure_unique(
        self,
        field: str,
        plaintext: str | None,
        *,
        exclude_id: str | None = None,
        **scope: Any,
    ) -> None:
        """Raise :class:`DuplicateIdentity` if another entity holds *plaintext*."""
        if _blank(plaintext):
            return
        existing = await self.find_by_field(field, plaintext, **scope)  # type: ignore[arg-type]
        if existing is not None and existing.id != exclude_id:
            raise DuplicateIdentity(field)

    # -- internals ---------------------------------------------------------

    async def _flush_or_duplicate(self) -> None:
        try:
            await self._session.flush()
        except IntegrityError as exc:
            await self._session.rollback()
            raise DuplicateIdentity(self._duplicate_field(exc, list(self._fields))) from exc

    def _duplicate_field(self, exc: IntegrityError, candidates: list[str]) -> str:
        message = str(exc.orig).lower()
        for name in candidates:
            spec = self._fields.get(name)
            column = spec.hash_column if spec is not None else name
            if column in message:
                return name
        return candidates[0] if candidates else "identity"
