"""
Background sweeps for the time-based side of the escrow lifecycle.

Three jobs run on one interval:
- release funds for shipped orders whose dispute window has passed
- cancel and refund paid orders the designer never shipped
- cancel orders that were never paid

EscrowService owns the sweeps and their transitions; this module only puts
them on an APScheduler clock and counts what they moved.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from escrow_service import EscrowService
from models import Order

logger = logging.getLogger(__name__)

# A sweep may run late by this much before APScheduler skips it
MISFIRE_GRACE_SECONDS = 300


class Sweep(NamedTuple):
    job_id: str
    label: str
    service_method: str
    counter: str


SWEEPS = (
    Sweep('auto_release_payments', 'auto_release', 'release_overdue_deliveries', 'auto_releases'),
    Sweep('auto_refund_unshipped', 'auto_refund', 'cancel_unshipped_orders', 'auto_refunds'),
    Sweep('cancel_unpaid_orders', 'unpaid_cancel', 'cancel_unpaid_orders', 'unpaid_cancellations'),
)


class EscrowAutomation:
    """
    Schedules the EscrowService sweeps and keeps run statistics.

    A failing sweep is logged and counted; it never stops the scheduler.
    """

    def __init__(self, service: EscrowService, config: Optional[Config] = None):
        self.service = service
        self.config = config or service.config
        self.scheduler = AsyncIOScheduler()
        self.is_running = False
        self.started_at: Optional[datetime] = None

        self.stats: Dict[str, Any] = {sweep.counter: 0 for sweep in SWEEPS}
        self.stats['failed_runs'] = 0
        self.stats['last_run'] = {}

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Escrow automation is already running")
            return

        minutes = self.config.automation_interval_minutes
        for sweep in SWEEPS:
            self.scheduler.add_job(
                self._run,
                trigger=IntervalTrigger(minutes=minutes),
                args=[sweep],
                id=sweep.job_id,
                name=sweep.label.replace('_', ' ').title(),
                max_instances=1,
                coalesce=True,
                misfire_grace_time=MISFIRE_GRACE_SECONDS,
                replace_existing=True
            )

        self.scheduler.start()
        self.is_running = True
        self.started_at = datetime.now()
        logger.info(f"⏱️ Escrow automation running {len(SWEEPS)} sweeps every {minutes} minutes")

    async def stop(self) -> None:
        if not self.is_running:
            return

        self.scheduler.shutdown(wait=False)
        self.is_running = False
        logger.info("Escrow automation stopped")

    async def auto_release_payments(self) -> List[Order]:
        """Release escrow for orders shipped more than AUTO_RELEASE_DAYS ago."""
        return await self._run(SWEEPS[0])

    async def auto_refund_unshipped(self) -> List[Order]:
        """Refund paid orders still unshipped after SHIP_DEADLINE_DAYS."""
        return await self._run(SWEEPS[1])

    async def cancel_unpaid_orders(self) -> List[Order]:
        """Cancel orders left unpaid beyond PAYMENT_TIMEOUT_HOURS."""
        return await self._run(SWEEPS[2])

    async def run_all(self) -> Dict[str, List[Order]]:
        """Run each sweep once, in lifecycle order."""
        return {
            'released': await self.auto_release_payments(),
            'refunded': await self.auto_refund_unshipped(),
            'cancelled': await self.cancel_unpaid_orders(),
        }

    async def _run(self, sweep: Sweep) -> List[Order]:
        began = datetime.now()

        try:
            moved = await getattr(self.service, sweep.service_method)()
        except Exception as e:
            self.stats['failed_runs'] += 1
            logger.error(f"Sweep {sweep.label} failed: {e}", exc_info=True)
            return []

        self.stats[sweep.counter] += len(moved)
        self.stats['last_run'][sweep.label] = datetime.now()

        elapsed = (datetime.now() - began).total_seconds()
        if moved:
            logger.info(f"Sweep {sweep.label} moved {len(moved)} orders in {elapsed:.2f}s")
        else:
            logger.debug(f"Sweep {sweep.label} found nothing due ({elapsed:.2f}s)")
        return moved

    def get_stats(self) -> Dict[str, Any]:
        return {
            'is_running': self.is_running,
            'scheduled_jobs': len(self.scheduler.get_jobs()) if self.is_running else 0,
            'uptime': (datetime.now() - self.started_at).total_seconds() if self.started_at else 0,
            'stats': self.stats,
        }
