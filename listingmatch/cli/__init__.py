"""ListingMatch CLI: operate duplicate detection for property listings.

Entry point registered in pyproject.toml:
    listingmatch = "listingmatch.cli:app"

Commands:
    listingmatch scan                   : full-corpus scan, proposes duplicate groups
    listingmatch evaluate <id>          : score one stored listing against its pool
    listingmatch backfill-embeddings    : embed listings that have no vector yet
    listingmatch groups                 : list duplicate groups by status
    listingmatch dismiss <group>        : reject a proposed group
    listingmatch confirm <group>        : accept a proposed group
    listingmatch false-positive <a> <b> : record a non-duplicate pair
    listingmatch stats                  : review counters
    listingmatch grant-scan <actor>     : grant scan (and review) permissions

Usage:
    LISTINGMATCH_ACTOR_ID=moderator-1 listingmatch scan
"""

import typer

from listingmatch.bootstrap import configure_logging
from listingmatch.cli.commands import (
    backfill_embeddings,
    confirm,
    dismiss,
    evaluate,
    false_positive,
    grant_scan,
    groups,
    scan,
    stats,
)
from listingmatch.config import settings

app = typer.Typer(
    name="listingmatch",
    help="ListingMatch CLI: duplicate detection for property listings",
    no_args_is_help=True,
)


@app.callback()
def main(
    log_level: str = typer.Option(settings.log_level, "--log-level", help="Root log level."),
) -> None:
    configure_logging(log_level)


app.command()(scan)
app.command()(evaluate)
app.command("backfill-embeddings")(backfill_embeddings)
app.command()(groups)
app.command()(dismiss)
app.command()(confirm)
app.command("false-positive")(false_positive)
app.command()(stats)
app.command("grant-scan")(grant_scan)
