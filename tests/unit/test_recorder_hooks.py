"""Tests for the usage recorder and invocation hooks."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from toolmeter.billing.hooks import augment_result
from toolmeter.core.config import MeteringSettings
from toolmeter.core.errors import ReservationError, StorageError
from toolmeter.core.plans import CreditSystemConfig, PerCallConfig


class TestUsageRecorder:
    """Tests for commit/release and usage records."""

    @pytest.mark.asyncio
    async def test_success_commits(self, make_stack, storage, now):
        stack = make_stack(PerCallConfig(default_price=10))
        await stack.account(balance=100)
        decision = await stack.gate.authorize("acct_1", "search", now=now)

        summary = await stack.recorder.record(decision.reservation_id, True, "search", now=now)
        assert summary.charged
        assert summary.amount == 10
        records = await storage.query_usage_records("acct_1")
        assert len(records) == 1
        assert records[0].cost == 10
        assert records[0].success
        assert records[0].reservation_id == decision.reservation_id
        assert await stack.ledger.get_balance("acct_1") == 90

    @pytest.mark.asyncio
    async def test_failure_releases(self, make_stack, storage, now):
        stack = make_stack(PerCallConfig(default_price=10))
        await stack.account(balance=100)
        decision = await stack.gate.authorize("acct_1", "search", now=now)

        summary = await stack.recorder.record(decision.reservation_id, False, "search", error_code="timeout", now=now)
        assert not summary.charged
        assert await stack.ledger.get_balance("acct_1") == 100
        records = await storage.query_usage_records("acct_1")
        assert records[0].cost == 0
        assert records[0].error_code == "timeout"

    @pytest.mark.asyncio
    async def test_charge_failed_calls(self, make_stack, now):
        settings = MeteringSettings(_env_file=None, charge_failed_calls=True)
        stack = make_stack(PerCallConfig(default_price=10), settings=settings)
        await stack.account(balance=100)
        decision = await stack.gate.authorize("acct_1", "search", now=now)

        summary = await stack.recorder.record(decision.reservation_id, False, "search", now=now)
        assert summary.charged
        assert await stack.ledger.get_balance("acct_1") == 90

    @pytest.mark.asyncio
    async def test_recording_twice_is_idempotent(self, make_stack, storage, now):
        stack = make_stack(PerCallConfig(default_price=10))
        await stack.account(balance=100)
        decision = await stack.gate.authorize("acct_1", "search", now=now)

        first = await stack.recorder.record(decision.reservation_id, True, "search", now=now)
        second = await stack.recorder.record(decision.reservation_id, True, "search", now=now)
        assert first.usage_record_id == second.usage_record_id
        assert second.amount == 10
        assert await storage.count_usage_records("acct_1") == 1
        assert await stack.ledger.get_balance("acct_1") == 90

    @pytest.mark.asyncio
    async def test_expired_reservation_is_not_charged(self, make_stack, storage, now):
        stack = make_stack(PerCallConfig(default_price=10))
        await stack.account(balance=100)
        decision = await stack.gate.authorize("acct_1", "search", now=now)
        # The maintenance sweep got there first
        await stack.ledger.release(decision.reservation_id, now, reason="Reservation expired")

        summary = await stack.recorder.record(decision.reservation_id, True, "search", now=now)
        assert not summary.charged
        records = await storage.query_usage_records("acct_1")
        assert records[0].error_code == "reservation_expired"
        assert await stack.ledger.get_balance("acct_1") == 100

    @pytest.mark.asyncio
    async def test_unknown_reservation(self, make_stack):
        stack = make_stack(PerCallConfig(default_price=10))
        with pytest.raises(ReservationError):
            await stack.recorder.record("rsv_missing", True, "search")

    @pytest.mark.asyncio
    async def test_fail_open_call_records_zero_cost(self, make_stack, storage, now):
        stack = make_stack(PerCallConfig(default_price=10))
        await stack.account()
        summary = await stack.recorder.record(None, True, "search", account_id="acct_1", now=now)
        assert summary.amount == 0
        records = await storage.query_usage_records("acct_1")
        assert records[0].metadata["fail_open"] is True

    @pytest.mark.asyncio
    async def test_storage_error_propagates(self, make_stack, now):
        stack = make_stack(PerCallConfig(default_price=10))
        await stack.account(balance=100)
        decision = await stack.gate.authorize("acct_1", "search", now=now)

        error = StorageError("disk full", "insert_usage_record", "usage_record")
        with patch.object(stack.storage, "insert_usage_record", AsyncMock(side_effect=error)):
            with pytest.raises(StorageError):
                await stack.recorder.record(decision.reservation_id, True, "search", now=now)

        # Retrying with the same token completes the record without a second charge
        summary = await stack.recorder.record(decision.reservation_id, True, "search", now=now)
        assert summary.amount == 10
        assert await stack.ledger.get_balance("acct_1") == 90


class TestInvocationHooks:
    """Tests for the before/after contract."""

    @pytest.mark.asyncio
    async def test_before_refusal_payload(self, make_stack):
        stack = make_stack(PerCallConfig(default_price=10))
        await stack.account(balance=3)
        pre = await stack.hooks.before("acct_1", "search")
        assert not pre.proceed
        assert pre.to_dict() == {
            "blocked": True,
            "reason": "insufficient_balance",
            "required": 10,
            "available": 3,
            "unit": "usd",
        }

    @pytest.mark.asyncio
    async def test_before_returns_token(self, make_stack):
        stack = make_stack(PerCallConfig(default_price=10))
        await stack.account(balance=30)
        pre = await stack.hooks.before("acct_1", "search", {"q": "x"})
        assert pre.proceed
        assert pre.context.reservation_token is not None
        assert pre.context.args == {"q": "x"}

    @pytest.mark.asyncio
    async def test_invoke_attaches_billing(self, make_stack):
        stack = make_stack(PerCallConfig(default_price=10))
        await stack.account(balance=30)
        tool = AsyncMock(return_value={"items": [1, 2]})

        result = await stack.hooks.invoke("acct_1", "search", tool, {"q": "x"})
        tool.assert_awaited_once_with(q="x")
        assert result["items"] == [1, 2]
        billing = result["_meta"]["billing"]
        assert billing["charged"] is True
        assert billing["amount"] == 10
        assert billing["currency"] == "usd"
        assert billing["tool_name"] == "search"

    @pytest.mark.asyncio
    async def test_invoke_never_runs_blocked_tool(self, make_stack):
        stack = make_stack(PerCallConfig(default_price=10))
        await stack.account(balance=0)
        tool = AsyncMock(return_value="unreachable")

        result = await stack.hooks.invoke("acct_1", "search", tool)
        tool.assert_not_awaited()
        assert result["blocked"] is True

    @pytest.mark.asyncio
    async def test_invoke_releases_when_tool_raises(self, make_stack, storage):
        stack = make_stack(PerCallConfig(default_price=10))
        await stack.account(balance=30)
        tool = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            await stack.hooks.invoke("acct_1", "search", tool)
        assert await stack.ledger.get_balance("acct_1") == 30
        records = await storage.query_usage_records("acct_1")
        assert records[0].error_code == "RuntimeError"
        assert not records[0].success

    @pytest.mark.asyncio
    async def test_cancelled_tool_restores_balance(self, make_stack, storage):
        stack = make_stack(PerCallConfig(default_price=10))
        await stack.account(balance=30)
        started = asyncio.Event()

        async def slow_tool():
            started.set()
            await asyncio.sleep(10)

        task = asyncio.create_task(stack.hooks.invoke("acct_1", "search", slow_tool))
        await asyncio.wait_for(started.wait(), timeout=1)
        assert await stack.ledger.get_balance("acct_1") == 20

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert await stack.ledger.get_balance("acct_1") == 30
        records = await storage.query_usage_records("acct_1")
        assert records[0].error_code == "cancelled"
        assert records[0].cost == 0

    @pytest.mark.asyncio
    async def test_credit_summary(self, make_stack):
        stack = make_stack(CreditSystemConfig(tool_credits={"render": 4}))
        await stack.account(balance=10)
        result = await stack.hooks.invoke("acct_1", "render", AsyncMock(return_value="png"))
        assert result["result"] == "png"
        assert result["_meta"]["billing"]["credits"] == 4

    @pytest.mark.asyncio
    async def test_after_reports_storage_failure(self, make_stack):
        stack = make_stack(PerCallConfig(default_price=10))
        await stack.account(balance=30)
        pre = await stack.hooks.before("acct_1", "search")

        error = StorageError("timeout", "insert_usage_record", "usage_record")
        with patch.object(stack.storage, "insert_usage_record", AsyncMock(side_effect=error)):
            result = await stack.hooks.after(pre.context.reservation_token, True, "search", {"ok": True})
        billing = result["_meta"]["billing"]
        assert billing["charged"] is False
        assert billing["retryable"] is True
        assert billing["error"]["error"] == "STORAGE_ERROR"
        assert result["ok"] is True


class TestAugmentResult:
    """Tests for result augmentation."""

    def test_keeps_existing_meta(self):
        result = augment_result({"_meta": {"trace": "t1"}, "v": 1}, {"charged": False})
        assert result["_meta"] == {"trace": "t1", "billing": {"charged": False}}
        assert result["v"] == 1

    def test_wraps_non_dict(self):
        assert augment_result([1], {"charged": True}) == {"result": [1], "_meta": {"billing": {"charged": True}}}
