"""Operator commands for the ListingMatch CLI.

Each command builds a Runtime for the duration of one call, runs a single
service operation on a fresh event loop and prints the outcome with rich.
Domain errors (denied, not found, conflict, invalid) are printed in red and
exit with status 1.

The acting identity comes from ``--actor`` or LISTINGMATCH_ACTOR_ID.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from listingmatch.bootstrap import Runtime, open_runtime
from listingmatch.dedup.records import GroupStatus
from listingmatch.errors import DetectionError
from listingmatch.security.rbac import ACTION_RESOLVE, ACTION_SCAN, ACTION_STATS, CasbinAuthorizer

# Module-level console used by every command
console = Console()

_ACTOR_OPTION = typer.Option(
    ...,
    "--actor",
    envvar="LISTINGMATCH_ACTOR_ID",
    help="Identity the action is performed as.",
)


def _run(operation: Callable[[Runtime], Awaitable[Any]]) -> Any:
    """Run *operation* against a fresh runtime; map domain errors to exit code 1."""

    async def _main() -> Any:
        async with open_runtime() as runtime:
            return await operation(runtime)

    try:
        return asyncio.run(_main())
    except DetectionError as exc:
        console.print(f"[red]{exc.kind}: {exc.message}[/red]")
        raise typer.Exit(code=1) from exc


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def scan(actor: str = _ACTOR_OPTION) -> None:
    """Scan every listing pair and propose duplicate groups."""
    summary = _run(lambda rt: rt.service.trigger_full_scan(actor))
    console.print(Panel(
        f"Records scanned:  {summary.records_scanned}\n"
        f"Comparisons made: {summary.comparisons_made}\n"
        f"Matches found:    {summary.duplicates_found}\n"
        f"Groups created:   [bold green]{summary.groups_created}[/bold green]\n"
        f"Groups skipped:   {summary.groups_skipped}\n"
        f"Signal failures:  {summary.embedding_failures} embedding, {summary.image_failures} image",
        title="Full scan complete",
        border_style="green",
    ))


def evaluate(
    record_id: str = typer.Argument(..., help="Stored listing id to evaluate."),
) -> None:
    """Score a stored listing against its candidate pool."""
    results = _run(lambda rt: rt.service.evaluate_record_by_id(record_id))
    if not results:
        console.print(f"[green]No likely duplicates for {record_id}.[/green]")
        return

    table = Table(title=f"Matches for {record_id}")
    table.add_column("Matched record")
    table.add_column("Confidence", justify="right")
    table.add_column("Classification")
    table.add_column("Reasons")
    for result in results:
        color = "red" if result.classification.value == "duplicate" else "yellow"
        table.add_row(
            result.matched_record_id,
            f"{result.confidence:.0%}",
            f"[{color}]{result.classification.value}[/{color}]",
            ", ".join(result.explanation) or "-",
        )
    console.print(table)


def backfill_embeddings(
    limit: int = typer.Option(100, "--limit", help="Maximum listings to embed in this run."),
) -> None:
    """Compute embeddings for listings that have none."""
    outcome = _run(lambda rt: rt.service.backfill_embeddings(limit))
    console.print(
        f"Processed {outcome['processed']} listing(s): "
        f"[green]{outcome['embedded']} embedded[/green], "
        f"[yellow]{outcome['failed']} failed[/yellow]"
    )


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------


def groups(
    status: GroupStatus = typer.Option(GroupStatus.PENDING, "--status", help="Group status to list."),
    limit: int = typer.Option(20, "--limit", help="Maximum groups to show."),
) -> None:
    """List duplicate groups, highest confidence first."""
    found = _run(lambda rt: rt.service.list_groups(status, limit))
    if not found:
        console.print(Panel(
            f"[green]No {status.value} duplicate groups.[/green]",
            title="ListingMatch",
            border_style="green",
        ))
        return

    table = Table(title=f"{status.value.capitalize()} duplicate groups")
    table.add_column("Group")
    table.add_column("Confidence", justify="right")
    table.add_column("Records")
    table.add_column("Reasons")
    for group in found:
        members = group["members"]
        table.add_row(
            group["id"],
            f"{group['confidence_score']:.0%}",
            "\n".join(m["record_id"] for m in members),
            ", ".join(members[0]["similarity_reasons"]) if members else "-",
        )
    console.print(table)


def dismiss(
    group_id: str = typer.Argument(..., help="Duplicate group id."),
    actor: str = _ACTOR_OPTION,
    notes: str = typer.Option(None, "--notes", help="Reviewer notes."),
) -> None:
    """Dismiss a group; its listing pairs are never proposed again."""
    _run(lambda rt: rt.service.dismiss_group(actor, group_id, notes))
    console.print(f"[yellow]Dismissed group {group_id}.[/yellow]")


def confirm(
    group_id: str = typer.Argument(..., help="Duplicate group id."),
    actor: str = _ACTOR_OPTION,
    notes: str = typer.Option(None, "--notes", help="Reviewer notes."),
) -> None:
    """Confirm a group as a true duplicate."""
    _run(lambda rt: rt.service.confirm_group(actor, group_id, notes))
    console.print(f"[green]Confirmed group {group_id}.[/green]")


def false_positive(
    record_id_a: str = typer.Argument(..., help="First listing id."),
    record_id_b: str = typer.Argument(..., help="Second listing id."),
    actor: str = _ACTOR_OPTION,
    reason: str = typer.Option(None, "--reason", help="Why the pair is not a duplicate."),
) -> None:
    """Record a listing pair as not duplicate."""
    outcome = _run(lambda rt: rt.service.mark_false_positive(actor, record_id_a, record_id_b, reason))
    state = "recorded" if outcome["created"] else "already recorded"
    console.print(
        f"Pair {record_id_a}/{record_id_b} {state}; "
        f"dismissed {len(outcome['dismissed_group_ids'])} pending group(s)."
    )


def stats(actor: str = _ACTOR_OPTION) -> None:
    """Show duplicate review counters."""
    data = _run(lambda rt: rt.service.get_stats(actor))
    console.print(Panel(
        f"Pending groups:    [bold]{data['pending_groups']}[/bold]\n"
        f"Confirmed groups:  {data['confirmed_groups']}\n"
        f"Dismissed groups:  {data['dismissed_groups']}\n"
        f"High confidence:   {data['high_confidence_groups']}\n"
        f"False positives:   {data['false_positives']}\n"
        f"Active listings:   {data['active_records']}\n"
        f"Scans (last 24h):  {data['recent_scans']}\n"
        f"Last scan:         {data['last_scan_at'] or 'never'}",
        title="Duplicate detection",
        border_style="blue",
    ))


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


def grant_scan(
    actor_id: str = typer.Argument(..., help="Identity to grant permissions to."),
    resolve: bool = typer.Option(False, "--resolve", help="Also grant group resolution."),
    with_stats: bool = typer.Option(False, "--stats", help="Also grant stats access."),
) -> None:
    """Allow an identity to run full scans (and optionally review actions)."""
    actions = [ACTION_SCAN]
    if resolve:
        actions.append(ACTION_RESOLVE)
    if with_stats:
        actions.append(ACTION_STATS)

    async def _grant(runtime: Runtime) -> list[str]:
        authorizer = runtime.authorizer
        if not isinstance(authorizer, CasbinAuthorizer):
            raise typer.BadParameter("the configured authorizer does not support grants")
        return [action for action in actions if await authorizer.grant(actor_id, action)]

    added = _run(_grant)
    for action in actions:
        marker = "[green]granted[/green]" if action in added else "[dim]already granted[/dim]"
        console.print(f"{action}: {marker}")
