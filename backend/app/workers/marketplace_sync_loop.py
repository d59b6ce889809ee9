"""
Marketplace Sync Loop
Runs every MARKETPLACE_SYNC_LOOP_INTERVAL_SECONDS (5 minutes by default):
pulls BrickLink notifications and BrickOwl orders for syncing tenants,
pushes queued inventory changes to the stores, and keeps webhook
registrations fresh.
"""
import asyncio
from datetime import datetime, timezone

from app.config import settings
from app.services.brickowl_order_polling import poll_brickowl_orders
from app.services.inventory_sync import drain_outbox
from app.services.webhook_notifications import poll_notifications
from app.services.webhook_registration import ensure_webhooks
from app.utils.logger import logger


async def run_marketplace_sync_once():
    """One sweep. Each step is isolated so one failure does not skip the rest."""
    result = {"started_at": datetime.now(timezone.utc).isoformat()}

    try:
        result["notifications"] = await poll_notifications()
    except Exception as e:
        logger.error(f"Notification polling failed: {str(e)}", exc_info=True)
        result["notifications"] = {"status": "error", "error": str(e)}

    try:
        result["brickowl_orders"] = await poll_brickowl_orders()
    except Exception as e:
        logger.error(f"BrickOwl order polling failed: {str(e)}", exc_info=True)
        result["brickowl_orders"] = {"status": "error", "error": str(e)}

    # Runs after both pollers so this sweep's reservations go out right away.
    try:
        result["inventory_outbox"] = await drain_outbox()
    except Exception as e:
        logger.error(f"Inventory outbox drain failed: {str(e)}", exc_info=True)
        result["inventory_outbox"] = {"status": "error", "error": str(e)}

    try:
        webhooks = await ensure_webhooks()
        result["webhooks"] = {
            "checked": len(webhooks),
            "refreshed": sum(1 for w in webhooks if w.refreshed),
            "errors": [w.model_dump() for w in webhooks if w.error],
        }
    except Exception as e:
        logger.error(f"Webhook sweep failed: {str(e)}", exc_info=True)
        result["webhooks"] = {"status": "error", "error": str(e)}

    return result


async def run_marketplace_sync_loop(interval_seconds: int | None = None):
    """
    Run the marketplace sync sweep forever.
    This is the entry point started from the application startup hook.
    """
    interval = interval_seconds or settings.MARKETPLACE_SYNC_LOOP_INTERVAL_SECONDS
    logger.info(f"Marketplace sync loop started (interval={interval}s)")

    while True:
        try:
            result = await run_marketplace_sync_once()
            logger.info(f"Marketplace sync cycle completed: {result}")
        except Exception as e:
            logger.error(f"Marketplace sync loop error: {str(e)}")

        await asyncio.sleep(interval)


if __name__ == "__main__":
    asyncio.run(run_marketplace_sync_loop())
