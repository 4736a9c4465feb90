"""Rich output formatting for the identity CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from rich.console import Console
from rich.table import Table

# Audit counters per designated field: {"encrypted", "legacy", "failed", "empty"}.
FieldCounts = dict[str, int]
EntityAudit = dict[str, FieldCounts]


def empty_counts() -> FieldCounts:
    return {"encrypted": 0, "legacy": 0, "failed": 0, "empty": 0}


def display_field_audit(console: Console, audit: dict[str, EntityAudit], rows: dict[str, int]) -> None:
    """Render one table per entity with storage-state counts per field.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    audit:
        ``{table_name: {field: counts}}`` as built by ``audit-fields``.
    rows:
        Number of rows scanned per table.
    """
    for entity, fields in audit.items():
        table = Table(title=f"{entity} ({rows.get(entity, 0)} rows)")
        table.add_column("Field", style="bold")
        table.add_column("Encrypted", justify="right")
        table.add_column("Legacy", justify="right")
        table.add_column("Undecryptable", justify="right")
        table.add_column("Empty", justify="right", style="dim")

        for field, counts in fields.items():
            legacy = counts["legacy"]
            failed = counts["failed"]
            table.add_row(
                field,
                f"[green]{counts['encrypted']}[/green]",
                f"[yellow]{legacy}[/yellow]" if legacy else "0",
                f"[bold red]{failed}[/bold red]" if failed else "0",
                str(counts["empty"]),
            )
        console.print(table)


def display_seal_summary(console: Console, sealed: dict[str, dict[str, int]], *, dry_run: bool) -> None:
    """Render the number of fields sealed (or that would be sealed) per entity."""
    title = "Legacy values to seal (dry run)" if dry_run else "Legacy values sealed"
    table = Table(title=title)
    table.add_column("Entity", style="bold")
    table.add_column("Field")
    table.add_column("Count", justify="right")

    total = 0
    for entity, fields in sealed.items():
        for field, count in fields.items():
            total += count
            table.add_row(entity, field, str(count))

    if total == 0:
        console.print("[green]No legacy plaintext values found.[/green]")
        return
    console.print(table)


def display_seal_collisions(console: Console, collisions: list[dict[str, str]]) -> None:
    """Render the rows left unsealed because their value is indexed on another row."""
    table = Table(title="Rows skipped: value already registered on another row")
    table.add_column("Entity", style="bold")
    table.add_column("Row ID")
    table.add_column("Field", style="red")
    for collision in collisions:
        table.add_row(collision["entity"], collision["id"], collision["field"])
    console.print(table)
    console.print(f"[bold red]{len(collisions)} row(s) need manual de-duplication before sealing.[/bold red]")
