"""
Periodic promotion sweeps.

Both sweeps are functions of ``now`` over the promotion store. They only
flip flags through compare-and-set updates, so running one twice, or
alongside a checkout, is harmless. A missed interval is picked up by the
next run.
"""
import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from notifications import FLASH_SALE_ENDED, FLASH_SALE_STARTED, NotificationSink
from stores import PromotionStore

logger = structlog.get_logger(__name__)


def sweep_flash_sales(promotions: PromotionStore, sink: NotificationSink,
                      now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    started = promotions.claim_started_flash_sales(now)
    for sale in started:
        sink.emit(FLASH_SALE_STARTED, {
            "id": sale.id,
            "name": sale.name,
            "description": sale.description,
            "end_time": sale.end_time.isoformat(),
            "entries": [
                {"product_id": e.product_id, "size": e.size, "color": e.color,
                 "original_price": e.original_price, "sale_price": e.sale_price}
                for e in sale.entries
            ],
        })
    ended = promotions.deactivate_ended_flash_sales(now)
    for sale in ended:
        sink.emit(FLASH_SALE_ENDED, {"id": sale.id, "name": sale.name})

    result = {"started": [s.id for s in started], "ended": [s.id for s in ended]}
    if started or ended:
        logger.info("flash_sales_swept", **result)
    return result


def sweep_expired_coupons(promotions: PromotionStore, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    count = promotions.deactivate_expired_coupons(now)
    if count:
        logger.info("expired_coupons_deactivated", count=count)
    return count


async def run_sweeps(promotions: PromotionStore, sink: NotificationSink, interval: float) -> None:
    """Run both sweeps every ``interval`` seconds until cancelled."""
    logger.info("sweeps_started", interval=interval)
    while True:
        try:
            await asyncio.to_thread(sweep_flash_sales, promotions, sink)
            await asyncio.to_thread(sweep_expired_coupons, promotions)
        except Exception:
            # next tick retries; the sweeps are idempotent
            logger.exception("sweep_failed")
        await asyncio.sleep(interval)
