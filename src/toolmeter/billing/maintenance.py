"""
Background maintenance.

Runs as an ``asyncio`` task and, every ``interval_seconds``, releases
reservations that outlived their TTL, processes webhook events due for a
retry and expires credits past their expiry date. Each step goes through
the same storage units of work as live calls, so a pass never blocks the
billing gate for longer than a single reservation would.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from toolmeter.billing.ledger import CreditLedger
from toolmeter.core.errors import ReservationError, StorageError
from toolmeter.core.models import utcnow
from toolmeter.storage.base import StorageAdapter
from toolmeter.utils.logging import RequestLogger

if TYPE_CHECKING:
    from toolmeter.billing.webhooks import WebhookProcessor

logger = structlog.get_logger()


@dataclass
class MaintenanceReport:
    """What one maintenance pass did."""

    reservations_released: int = 0
    webhooks_processed: int = 0
    expiry_transactions: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class MaintenanceWorker:
    """Periodic sweep over expired reservations, due webhooks and expiring credits."""

    def __init__(
        self,
        storage: StorageAdapter,
        ledger: CreditLedger,
        webhooks: "WebhookProcessor | None" = None,
        interval_seconds: float = 60.0,
        batch_size: int = 100,
    ) -> None:
        self.storage = storage
        self.ledger = ledger
        self.webhooks = webhooks
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the maintenance loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the maintenance background task."""
        if self._running:
            logger.warning("Maintenance worker already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Maintenance worker started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the loop, waiting for the current pass to be cancelled."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Maintenance worker stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except StorageError as e:
                logger.error("Maintenance pass failed", operation=e.operation, error=e.message)
            except Exception as e:
                logger.critical("Maintenance worker crashed", error=str(e), error_type=type(e).__name__)
                raise
            await asyncio.sleep(self.interval_seconds)

    async def run_once(self, now: datetime | None = None) -> MaintenanceReport:
        """Run a single maintenance pass."""
        now = now or utcnow()
        report = MaintenanceReport()
        with RequestLogger(logger, "maintenance_pass", started_at=now.isoformat()) as request_log:
            report.reservations_released = await self.release_expired_reservations(now)
            if self.webhooks is not None:
                report.webhooks_processed = await self.webhooks.process_due(now, self.batch_size)
            report.expiry_transactions = len(await self.ledger.expire_credits(now=now))
            request_log.log("Maintenance pass summary", **report.to_dict())
        return report

    async def release_expired_reservations(self, now: datetime | None = None) -> int:
        """Release held reservations past their TTL. Returns how many were released."""
        now = now or utcnow()
        released = 0
        for reservation in await self.storage.list_expired_reservations(now, self.batch_size):
            try:
                await self.ledger.release(reservation.id, now, reason="reservation expired")
            except ReservationError:
                # Committed by its call between the listing and the release
                continue
            released += 1
            logger.info(
                "Released stale reservation",
                reservation_id=reservation.id,
                account_id=reservation.account_id,
                tool_name=reservation.tool_name,
                debit=reservation.debit,
            )
        return released
