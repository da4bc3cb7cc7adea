"""
Celery tasks for dunning.

Periodic sweep expiring grace periods that ended without a successful payment.
"""

import asyncio
from typing import Any

import structlog

from rankpilot.platform.billing.dunning.service import DunningService
from rankpilot.platform.celery_app import celery_app
from rankpilot.platform.db import get_async_db

logger = structlog.get_logger(__name__)


async def _process_expired_grace_periods() -> dict[str, Any]:
    async with get_async_db() as session:
        summary = await DunningService(session).process_expired_grace_periods()
    return summary.model_dump(mode="json")


@celery_app.task(name="billing.dunning.process_expired_grace_periods")
def process_expired_grace_periods_task() -> dict[str, Any]:
    """Expire every grace period whose end has passed."""
    result = asyncio.run(_process_expired_grace_periods())
    logger.info(
        "billing.dunning.sweep_task_completed",
        checked=result["checked"],
        expired=result["expired"],
        errors=result["errors"],
    )
    return result
