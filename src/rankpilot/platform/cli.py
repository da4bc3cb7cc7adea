#!/usr/bin/env python
"""
CLI management commands for RankPilot Platform Services.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import click
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rankpilot.platform.billing.dunning.service import DunningService
from rankpilot.platform.billing.subscriptions.service import SubscriptionService
from rankpilot.platform.billing.webhooks.models import ProcessedWebhookEvent, WebhookOutcome
from rankpilot.platform.db import create_all_tables_async, get_async_db
from rankpilot.platform.logging import setup_logging


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    session_factory: Callable[[], AbstractAsyncContextManager[AsyncSession]]
    create_tables: Callable[[], Awaitable[None]]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(session_factory=get_async_db, create_tables=create_all_tables_async)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
def cli() -> None:
    """RankPilot Platform Services CLI."""
    setup_logging()


@cli.command()
def init_database() -> None:
    """Create the billing tables."""
    deps = _get_cli_dependencies()
    click.echo("Initializing database...")
    asyncio.run(deps.create_tables())
    click.echo("Database initialized successfully!")


@cli.command()
def process_grace_periods() -> None:
    """Expire grace periods that ended without payment."""
    deps = _get_cli_dependencies()

    async def _run() -> dict[str, Any]:
        async with deps.session_factory() as session:
            summary = await DunningService(session).process_expired_grace_periods()
        return summary.model_dump(mode="json")

    result = asyncio.run(_run())
    _echo_json(result)
    if result["errors"]:
        raise SystemExit(1)


@cli.command()
def subscription_summary() -> None:
    """Print subscription counts by status and tier."""
    deps = _get_cli_dependencies()

    async def _run() -> dict[str, Any]:
        async with deps.session_factory() as session:
            summary = await SubscriptionService(session).summary()
        return summary.model_dump(mode="json")

    _echo_json(asyncio.run(_run()))


@cli.command()
@click.option("--limit", default=50, show_default=True, help="Maximum events to list")
def unresolved_events(limit: int) -> None:
    """List webhook events whose account could not be resolved."""
    deps = _get_cli_dependencies()

    async def _run() -> list[dict[str, Any]]:
        async with deps.session_factory() as session:
            result = await session.execute(
                select(ProcessedWebhookEvent)
                .where(ProcessedWebhookEvent.outcome == WebhookOutcome.UNRESOLVED)
                .order_by(ProcessedWebhookEvent.received_at.desc())
                .limit(limit)
            )
            return [
                {
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "detail": event.detail,
                    "received_at": event.received_at.isoformat(),
                }
                for event in result.scalars().all()
            ]

    events = asyncio.run(_run())
    if not events:
        click.echo("No unresolved events.")
        return
    _echo_json(events)
    click.echo(f"{len(events)} unresolved event(s) as of {datetime.now(UTC).isoformat()}")


if __name__ == "__main__":
    cli()
