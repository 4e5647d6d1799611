"""
Monthly Credits Cron Job

Tops free-plan balances back up to the free allotment. Paid plans are
renewed by Polar's order.paid webhook.

Schedule: 1st of every month at 00:00 UTC
"""

import logging
from inngest import TriggerCron

from app.inngest.client import inngest_client
from app.services.monthly_refresher import refresh_monthly_credits

logger = logging.getLogger(__name__)


@inngest_client.create_function(
    fn_id="monthly-credit-refresh",
    trigger=TriggerCron(cron="0 0 1 * *"),  # Monthly, 1st at 00:00 UTC
    retries=2,
)
async def monthly_credit_refresh_fn(ctx, step):
    """Run the free-plan refresh as a single durable step."""
    logger.info("[REFRESH] Monthly credit refresh triggered by cron")

    async def run_refresh() -> dict:
        result = await refresh_monthly_credits()
        return result.model_dump(mode="json")

    result = await step.run("refresh-free-credits", run_refresh)

    free = result["results"]["free"]
    logger.info(
        f"[REFRESH] Cron run finished: updated={free['updated']} "
        f"skipped={free['skipped']} errors={free['errors']}"
    )
    return {
        "status": "ok",
        "updated": free["updated"],
        "skipped": free["skipped"],
        "errors": free["errors"],
        "checked_at": result["timestamp"],
    }
