"""Tests for the maintenance worker."""

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from toolmeter.billing.maintenance import MaintenanceWorker
from toolmeter.billing.webhooks import WebhookProcessor
from toolmeter.core.config import StripeSettings
from toolmeter.core.errors import StorageError
from toolmeter.core.models import ReservationStatus
from toolmeter.core.plans import PerCallConfig
from toolmeter.utils.retry import RetryConfig


@pytest.fixture
def stack(make_stack):
    return make_stack(PerCallConfig(default_price=10))


@pytest.fixture
def worker(stack):
    return MaintenanceWorker(stack.storage, stack.ledger, interval_seconds=0.01)


class TestRunOnce:
    """Tests for a single maintenance pass."""

    @pytest.mark.asyncio
    async def test_releases_expired_reservations(self, stack, worker, storage, now):
        await stack.account(balance=50)
        decision = await stack.gate.authorize("acct_1", "search", now=now)
        assert await stack.ledger.get_balance("acct_1") == 40

        report = await worker.run_once(now + timedelta(seconds=60))
        assert report.reservations_released == 0

        report = await worker.run_once(now + timedelta(seconds=901))
        assert report.reservations_released == 1
        assert await stack.ledger.get_balance("acct_1") == 50
        reservation = await storage.get_reservation(decision.reservation_id)
        assert reservation.status == ReservationStatus.RELEASED

    @pytest.mark.asyncio
    async def test_committed_reservations_untouched(self, stack, worker, now):
        await stack.account(balance=50)
        await stack.call("acct_1", "search", now=now)

        report = await worker.run_once(now + timedelta(days=1))
        assert report.reservations_released == 0
        assert await stack.ledger.get_balance("acct_1") == 40

    @pytest.mark.asyncio
    async def test_expires_credits(self, stack, worker, now):
        await stack.account()
        await stack.ledger.purchase("acct_1", 30, expires_at=now + timedelta(days=1))

        report = await worker.run_once(now + timedelta(days=2))
        assert report.expiry_transactions == 1
        assert await stack.ledger.get_balance("acct_1") == 0

    @pytest.mark.asyncio
    async def test_processes_due_webhooks(self, stack, metering_settings, now):
        processor = WebhookProcessor(
            stack.storage,
            stack.ledger,
            stack.tracker,
            StripeSettings(_env_file=None, verify_signatures=False),
            metering_settings,
            retry=RetryConfig(max_retries=3, base_delay=5, jitter=False),
        )
        worker = MaintenanceWorker(stack.storage, stack.ledger, processor)
        payload = json.dumps(
            {
                "id": "evt_1",
                "type": "payment_intent.succeeded",
                "data": {
                    "object": {
                        "id": "pi_1",
                        "amount": 500,
                        "status": "succeeded",
                        "metadata": {"account_id": "acct_1", "credits": "500"},
                    }
                },
            }
        )
        await processor.ingest(payload, now=now)
        await stack.account()

        report = await worker.run_once(now + timedelta(seconds=5))
        assert report.webhooks_processed == 1
        assert await stack.ledger.get_balance("acct_1") == 500

    @pytest.mark.asyncio
    async def test_report_to_dict(self, worker, now):
        report = await worker.run_once(now)
        assert report.to_dict() == {
            "reservations_released": 0,
            "webhooks_processed": 0,
            "expiry_transactions": 0,
        }


class TestLifecycle:
    """Tests for the background loop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, worker):
        await worker.start()
        assert worker.running
        await worker.stop()
        assert not worker.running

    @pytest.mark.asyncio
    async def test_survives_storage_errors(self, worker):
        worker.run_once = AsyncMock(side_effect=StorageError("connection reset", "list_expired_reservations"))
        await worker.start()
        await asyncio.sleep(0.05)
        assert worker.running
        assert worker.run_once.await_count >= 2
        await worker.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, worker):
        await worker.stop()
        assert not worker.running
