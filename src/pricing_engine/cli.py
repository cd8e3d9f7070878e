#!/usr/bin/env python
"""
CLI management commands for the pricing engine.
"""

import asyncio
import json

import click
from sqlalchemy import text

from pricing_engine.db import create_all_tables_async, get_async_db, get_session_factory
from pricing_engine.tasks import run_reconciliation, run_renewal_sweep


def _collaborators(factory: str | None):
    from pricing_engine.billing.dependencies import load_collaborators
    from pricing_engine.settings import settings

    path = factory or settings.billing.collaborators_factory
    if not path:
        raise click.UsageError(
            "No collaborators factory; pass --factory or set BILLING__COLLABORATORS_FACTORY"
        )
    return load_collaborators(path)


@click.group()
def cli() -> None:
    """Pricing engine CLI."""
    pass


@cli.command()
def init_database() -> None:
    """Create the billing tables."""
    click.echo("Initializing database...")
    asyncio.run(create_all_tables_async())
    click.echo("Database initialized successfully!")


@cli.command()
def check_database() -> None:
    """Check database connectivity."""

    async def _check() -> bool:
        try:
            async with get_async_db() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            click.echo(f"Database error: {e}", err=True)
            return False

    ok = asyncio.run(_check())
    click.echo(f"{'database':15} {'✓ Connected' if ok else '✗ Unavailable'}")
    if not ok:
        raise SystemExit(1)


@cli.command()
@click.option("--factory", default=None, help="module:callable returning BillingCollaborators")
def run_sweep(factory: str | None) -> None:
    """Run one renewal sweep now."""
    collaborators = _collaborators(factory)
    result = asyncio.run(run_renewal_sweep(collaborators, get_session_factory()))
    click.echo(json.dumps(result, indent=2))


@cli.command()
@click.option("--factory", default=None, help="module:callable returning BillingCollaborators")
def reconcile(factory: str | None) -> None:
    """Reconcile stuck charge reservations now."""
    collaborators = _collaborators(factory)
    result = asyncio.run(run_reconciliation(collaborators, get_session_factory()))
    click.echo(json.dumps(result, indent=2))


if __name__ == "__main__":
    cli()
