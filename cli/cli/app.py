"""Identity CLI application -- Typer-based operator interface.

Provides maintenance commands for the identity core: key generation, trial
window repair, and the encrypted-field audit and sealing passes.  Human-
readable output goes to *stderr* via Rich; machine-readable output (the key,
``--json`` reports) goes to *stdout* so that pipelines can compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import TYPE_CHECKING, Any

import typer
from rich.console import Console

from cli.display import (
    EntityAudit,
    display_field_audit,
    display_seal_collisions,
    display_seal_summary,
    empty_counts,
)

if TYPE_CHECKING:
    from identity_core.config import Settings

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="identity",
    help="Identity core maintenance: encryption keys, trial windows and sensitive-field audits.",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Database URL (defaults to IDENTITY_DATABASE_URL).",
        envvar="IDENTITY_DATABASE_URL",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_settings() -> Settings:
    """Load identity settings, letting ``--database-url`` win over the environment."""
    from identity_core.config import load_settings

    overrides: dict[str, Any] = {}
    if _database_url:
        overrides["database_url"] = _database_url
    return load_settings(**overrides)


def _build_codec(settings: Settings) -> Any:
    from identity_core.errors import ConfigurationError
    from identity_core.security.field_codec import FieldCodec

    try:
        return FieldCodec.from_settings(settings)
    except ConfigurationError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2) from exc


def _resolve_entities(entity: str | None) -> list[str]:
    from identity_core.state.sensitive_fields import SENSITIVE_ENTITIES

    if entity is None:
        return list(SENSITIVE_ENTITIES)
    if entity not in SENSITIVE_ENTITIES:
        available = ", ".join(SENSITIVE_ENTITIES)
        console.print(f"[red]Unknown entity '{entity}'. Available: {available}[/red]")
        raise typer.Exit(code=2)
    return [entity]


def _emit_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")


# ---------------------------------------------------------------------------
# generate-key
# ---------------------------------------------------------------------------


@app.command("generate-key")
def generate_key() -> None:
    """Print a fresh 256-bit field-encryption key as 64 hex characters.

    Store it as ``IDENTITY_ENCRYPTION_KEY``.  Rotating the key on a populated
    database makes every encrypted value undecryptable.
    """
    from identity_core.security.field_codec import generate_key_hex

    sys.stdout.write(generate_key_hex() + "\n")
    console.print("[dim]Set this value as IDENTITY_ENCRYPTION_KEY.[/dim]")


# ---------------------------------------------------------------------------
# repair-trials
# ---------------------------------------------------------------------------


async def _repair_trials(settings: Settings) -> int:
    from identity_core.state.database import get_engine, get_session
    from identity_core.state.repository import AccountRepository, InvoiceRepository
    from identity_core.subscription.lifecycle import SubscriptionLifecycle

    engine = get_engine(settings.database_url)
    try:
        async with get_session(engine) as session:
            lifecycle = SubscriptionLifecycle(AccountRepository(session), InvoiceRepository(session), settings)
            return await lifecycle.repair_trial_windows()
    finally:
        await engine.dispose()


@app.command("repair-trials")
def repair_trials() -> None:
    """Reset every TRIAL account's window to ``member_since + trial window``."""
    settings = _load_settings()
    repaired = asyncio.run(_repair_trials(settings))

    if _json_output:
        _emit_json({"repaired": repaired})
    else:
        console.print(f"Repaired [bold]{repaired}[/bold] trial window(s) ({settings.trial_window_days} day window).")


# ---------------------------------------------------------------------------
# audit-fields
# ---------------------------------------------------------------------------


async def _audit(settings: Settings, entities: list[str]) -> tuple[dict[str, EntityAudit], dict[str, int]]:
    from identity_core.security.field_codec import DecryptStatus
    from identity_core.state.database import get_engine, get_session
    from identity_core.state.sensitive_fields import SensitiveFieldRepository

    codec = _build_codec(settings)
    status_key = {
        DecryptStatus.DECRYPTED: "encrypted",
        DecryptStatus.LEGACY: "legacy",
        DecryptStatus.FAILED: "failed",
    }

    audit: dict[str, EntityAudit] = {}
    rows: dict[str, int] = {}
    engine = get_engine(settings.database_url)
    try:
        async with get_session(engine) as session:
            for name in entities:
                repo = SensitiveFieldRepository.for_table(session, codec, name)
                counts = {spec.name: empty_counts() for spec in repo.fields}
                scanned = await repo.list_all()
                for row in scanned:
                    for field, status in repo.classify(row).items():
                        counts[field]["empty" if status is None else status_key[status]] += 1
                audit[name] = counts
                rows[name] = len(scanned)
    finally:
        await engine.dispose()
    return audit, rows


@app.command("audit-fields")
def audit_fields(
    entity: str | None = typer.Option(
        None,
        "--entity",
        "-e",
        help="Only audit this table (accounts, customers, suppliers).",
    ),
) -> None:
    """Count encrypted, legacy and undecryptable values per sensitive field.

    Exits with code 1 when any value has the encrypted shape but cannot be
    decrypted (corrupted data or a wrong key).
    """
    settings = _load_settings()
    audit, rows = asyncio.run(_audit(settings, _resolve_entities(entity)))
    failed = sum(counts["failed"] for fields in audit.values() for counts in fields.values())

    if _json_output:
        _emit_json({"entities": audit, "rows": rows, "undecryptable": failed})
    else:
        display_field_audit(console, audit, rows)
        if failed:
            console.print(f"[bold red]{failed} value(s) could not be decrypted.[/bold red]")
        else:
            console.print("[green]All encrypted values decrypt cleanly.[/green]")

    if failed:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# seal-legacy
# ---------------------------------------------------------------------------


def _indexed(repo: Any, values: dict[str, Any]) -> list[Any]:
    return [spec for spec in repo.fields if values.get(spec.hash_column) is not None]


async def _planned_collision(
    repo: Any, row: Any, values: dict[str, Any], planned: set[tuple[str, str]]
) -> str | None:
    """Collision check for a dry run, where earlier rows were never written."""
    field = await repo.index_collision(row, values)
    if field is not None:
        return field
    for spec in _indexed(repo, values):
        if spec.unique and (spec.hash_column, values[spec.hash_column]) in planned:
            return spec.name
    return None


async def _seal(
    settings: Settings, entities: list[str], *, dry_run: bool
) -> tuple[dict[str, dict[str, int]], list[dict[str, str]]]:
    from identity_core.errors import DuplicateIdentity
    from identity_core.state.database import get_engine, get_session
    from identity_core.state.sensitive_fields import SensitiveFieldRepository

    codec = _build_codec(settings)
    summary: dict[str, dict[str, int]] = {}
    collisions: list[dict[str, str]] = []
    engine = get_engine(settings.database_url)
    try:
        async with get_session(engine) as session:
            for name in entities:
                repo = SensitiveFieldRepository.for_table(session, codec, name)
                counts = {spec.name: 0 for spec in repo.fields}
                # Blind indexes a dry run would have written so far.
                planned: set[tuple[str, str]] = set()
                for row in await repo.list_all():
                    if dry_run:
                        sealed, values = repo.legacy_changes(row)
                        field = await _planned_collision(repo, row, values, planned)
                        if field is not None:
                            collisions.append({"entity": name, "id": row.id, "field": field})
                            continue
                        planned.update((spec.hash_column, values[spec.hash_column]) for spec in _indexed(repo, values))
                    else:
                        try:
                            sealed = await repo.seal_legacy(row)
                        except DuplicateIdentity as exc:
                            collisions.append({"entity": name, "id": row.id, "field": exc.field})
                            continue
                    for field in sealed:
                        counts[field] += 1
                summary[name] = counts
            if dry_run:
                await session.rollback()
    finally:
        await engine.dispose()
    return summary, collisions


@app.command("seal-legacy")
def seal_legacy(
    entity: str | None = typer.Option(
        None,
        "--entity",
        "-e",
        help="Only seal this table (accounts, customers, suppliers).",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report what would be sealed without writing."),
) -> None:
    """Encrypt sensitive fields still stored as legacy plaintext, in place.

    Also back-fills missing blind indexes for values that are already
    encrypted.  A row whose phone or tax ID is already indexed on another
    account is left untouched and reported; the command then exits with
    code 1.
    """
    settings = _load_settings()
    summary, collisions = asyncio.run(_seal(settings, _resolve_entities(entity), dry_run=dry_run))

    if _json_output:
        _emit_json({"dry_run": dry_run, "sealed": summary, "collisions": collisions})
    else:
        display_seal_summary(console, summary, dry_run=dry_run)
        if collisions:
            display_seal_collisions(console, collisions)

    if collisions:
        raise typer.Exit(code=1)
