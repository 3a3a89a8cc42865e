"""Maintenance commands for the events table."""

import asyncio
import logging

import click

from app.config import get_settings
from app.database import build_engine, build_session_factory, init_db
from app.schemas.event import RepairReport
from app.services import event_store

logger = logging.getLogger(__name__)


async def _run_repair(database_url: str) -> RepairReport:
    engine = build_engine(database_url)
    try:
        async with build_session_factory(engine)() as session:
            report = await event_store.repair(session)
    finally:
        await engine.dispose()
    return report


async def _run_init_db(database_url: str) -> None:
    engine = build_engine(database_url)
    try:
        await init_db(engine)
    finally:
        await engine.dispose()


@click.group()
@click.option(
    "--database-url",
    default=None,
    help="Database to operate on (defaults to DATABASE_URL).",
)
@click.pass_context
def cli(ctx: click.Context, database_url: str | None):
    """Referral tracker maintenance."""
    settings = get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL.upper())
    ctx.obj = database_url or settings.DATABASE_URL


@cli.command("init-db")
@click.pass_obj
def init_db_command(database_url: str):
    """Create the events table if it does not exist."""
    asyncio.run(_run_init_db(database_url))
    click.echo("Database initialized.")


@cli.command("repair")
@click.pass_obj
def repair_command(database_url: str):
    """Delete unscoped events and backfill missing locations."""
    report = asyncio.run(_run_repair(database_url))
    click.echo(
        f"Deleted {report.deleted_unscoped} unscoped events, "
        f"backfilled {report.backfilled}, left {report.unresolved} unresolved."
    )


if __name__ == "__main__":
    cli()
