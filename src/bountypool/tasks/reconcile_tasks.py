"""Reconciliation task definitions for Procrastinate."""

import logging

from ..wiring import build_services
from .worker import app

logger = logging.getLogger(__name__)


@app.periodic(cron="* * * * *")
@app.task(name="reconcile_pending_operations", queueing_lock="reconcile_pending_operations")
async def reconcile_pending_operations(timestamp: int) -> None:
    """Settle allocations and deposits left open by timeouts or slow blocks."""
    services = build_services()
    try:
        report = await services.reward_service.reconcile_pending()
    finally:
        await services.close()

    if report.inconsistent:
        logger.error(
            f"{report.inconsistent} operations disagree with the chain and need an operator"
        )
