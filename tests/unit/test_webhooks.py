"""Tests for Stripe webhook processing."""

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from toolmeter.billing.webhooks import WebhookProcessor
from toolmeter.core.config import StripeSettings
from toolmeter.core.errors import ConfigurationError
from toolmeter.core.models import AccountStatus, SubscriptionStatus, TransactionType, WebhookStatus
from toolmeter.core.plans import CreditPackage, CreditSystemConfig, SubscriptionConfig, SubscriptionPlan
from toolmeter.utils.retry import RetryConfig

SECRET = "whsec_test_secret"

PACKAGES = [
    CreditPackage(id="starter", name="Starter", credits=100, price=1000, bonus_credits=10, expiration_days=30),
]
PLANS = [
    SubscriptionPlan(id="basic", name="Basic", price=900, included_calls=100, overage_price=5),
    SubscriptionPlan(id="pro", name="Pro", price=2900, included_calls=1000, overage_price=2),
]


def make_event(event_id, event_type, obj, previous_attributes=None):
    data = {"object": obj}
    if previous_attributes is not None:
        data["previous_attributes"] = previous_attributes
    return json.dumps({"id": event_id, "object": "event", "type": event_type, "data": data})


def sign(payload, secret=SECRET, timestamp=None):
    timestamp = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def ts(dt):
    return int(dt.timestamp())


@pytest.fixture
def unverified():
    return StripeSettings(_env_file=None, verify_signatures=False)


@pytest.fixture
def make_processor(make_stack, metering_settings, unverified):
    def factory(config=None, stripe_settings=None, retry=None):
        config = config or CreditSystemConfig(packages=PACKAGES)
        stack = make_stack(config)
        processor = WebhookProcessor(
            stack.storage,
            stack.ledger,
            stack.tracker,
            stripe_settings or unverified,
            metering_settings,
            credit_config=config if isinstance(config, CreditSystemConfig) else None,
            retry=retry or RetryConfig(max_retries=3, base_delay=10, max_delay=60, jitter=False),
        )
        return stack, processor

    return factory


def intent_succeeded(event_id="evt_1", intent_id="pi_1", amount=1000, **metadata):
    metadata.setdefault("account_id", "acct_1")
    return make_event(
        event_id,
        "payment_intent.succeeded",
        {
            "id": intent_id,
            "object": "payment_intent",
            "amount": amount,
            "currency": "usd",
            "status": "succeeded",
            "metadata": metadata,
        },
    )


class TestVerification:
    """Tests for signature verification."""

    @pytest.mark.asyncio
    async def test_valid_signature(self, make_processor):
        settings = StripeSettings(_env_file=None, webhook_secret=SECRET)
        _, processor = make_processor(stripe_settings=settings)
        payload = make_event("evt_ping", "ping.test", {"id": "x"})

        response = await processor.ingest(payload, sign(payload))
        assert response == {"received": True, "event_type": "ping.test", "processed": True}

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, make_processor, storage):
        settings = StripeSettings(_env_file=None, webhook_secret=SECRET)
        _, processor = make_processor(stripe_settings=settings)
        payload = make_event("evt_ping", "ping.test", {"id": "x"})

        response = await processor.ingest(payload, sign(payload, secret="whsec_other"))
        assert response["received"] is False
        assert await storage.get_webhook_event("evt_ping") is None

    @pytest.mark.asyncio
    async def test_stale_signature_rejected(self, make_processor):
        settings = StripeSettings(_env_file=None, webhook_secret=SECRET, webhook_tolerance=300)
        _, processor = make_processor(stripe_settings=settings)
        payload = make_event("evt_ping", "ping.test", {"id": "x"})

        response = await processor.ingest(payload, sign(payload, timestamp=int(time.time()) - 3600))
        assert response["received"] is False

    @pytest.mark.asyncio
    async def test_missing_secret(self, make_processor):
        _, processor = make_processor(stripe_settings=StripeSettings(_env_file=None))
        with pytest.raises(ConfigurationError):
            await processor.ingest(make_event("evt_1", "ping.test", {}), "t=1,v1=abc")

    @pytest.mark.asyncio
    async def test_malformed_payload(self, make_processor):
        _, processor = make_processor()
        response = await processor.ingest("{not json")
        assert response["received"] is False
        response = await processor.ingest(json.dumps({"type": "ping.test"}))
        assert response["received"] is False


class TestPaymentEvents:
    """Tests for credit purchases and refunds."""

    @pytest.mark.asyncio
    async def test_intent_succeeded_credits_account(self, make_processor, storage, now):
        stack, processor = make_processor()
        await stack.account()

        response = await processor.ingest(intent_succeeded(credits="500"), now=now)
        assert response["processed"] is True
        assert await stack.ledger.get_balance("acct_1") == 500
        intent = await storage.get_payment_intent("pi_1")
        assert intent.status.value == "succeeded"

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_noop(self, make_processor, now):
        stack, processor = make_processor()
        await stack.account()
        payload = intent_succeeded(credits="500")

        await processor.ingest(payload, now=now)
        response = await processor.ingest(payload, now=now)
        assert response == {"received": True, "event_type": "payment_intent.succeeded", "processed": True}
        assert await stack.ledger.get_balance("acct_1") == 500

    @pytest.mark.asyncio
    async def test_same_intent_in_two_events_credits_once(self, make_processor, now):
        stack, processor = make_processor()
        await stack.account()

        await processor.ingest(intent_succeeded("evt_1", credits="500"), now=now)
        await processor.ingest(intent_succeeded("evt_2", credits="500"), now=now)
        assert await stack.ledger.get_balance("acct_1") == 500

    @pytest.mark.asyncio
    async def test_package_purchase_expires(self, make_processor, storage, now):
        stack, processor = make_processor()
        await stack.account()

        await processor.ingest(intent_succeeded(package_id="starter"), now=now)
        purchases = await storage.list_credit_transactions("acct_1", type=TransactionType.PURCHASE)
        assert purchases[0].amount == 110
        assert purchases[0].expires_at == now + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_refund_claws_back_proportionally(self, make_processor, now):
        stack, processor = make_processor()
        await stack.account()
        await processor.ingest(intent_succeeded(credits="500", amount=1000), now=now)

        partial = make_event(
            "evt_r1", "charge.refunded", {"id": "ch_1", "payment_intent": "pi_1", "amount_refunded": 500}
        )
        await processor.ingest(partial, now=now)
        assert await stack.ledger.get_balance("acct_1") == 250

        # Redelivery changes nothing
        await processor.ingest(partial, now=now)
        assert await stack.ledger.get_balance("acct_1") == 250

        full = make_event(
            "evt_r2", "charge.refunded", {"id": "ch_1", "payment_intent": "pi_1", "amount_refunded": 1000}
        )
        await processor.ingest(full, now=now)
        assert await stack.ledger.get_balance("acct_1") == 0
        assert await stack.ledger.verify("acct_1")

    @pytest.mark.asyncio
    async def test_refund_of_untracked_charge(self, make_processor, now):
        _, processor = make_processor()
        payload = make_event("evt_r", "charge.refunded", {"id": "ch_x", "payment_intent": "pi_x", "amount_refunded": 5})
        response = await processor.ingest(payload, now=now)
        assert response["processed"] is True

    @pytest.mark.asyncio
    async def test_checkout_completed(self, make_processor, storage, now):
        stack, processor = make_processor()
        await stack.account()
        payload = make_event(
            "evt_c",
            "checkout.session.completed",
            {
                "id": "cs_1",
                "customer": "cus_1",
                "payment_intent": "pi_c",
                "mode": "payment",
                "payment_status": "paid",
                "amount_total": 1000,
                "currency": "usd",
                "metadata": {"account_id": "acct_1", "package_id": "starter"},
            },
        )
        await processor.ingest(payload, now=now)
        account = await storage.get_account("acct_1")
        assert account.external_customer_id == "cus_1"
        assert account.credit_balance == 110

        # The matching payment_intent.succeeded does not credit again
        await processor.ingest(intent_succeeded("evt_pi", "pi_c", package_id="starter"), now=now)
        assert await stack.ledger.get_balance("acct_1") == 110

    @pytest.mark.asyncio
    async def test_payment_failed(self, make_processor, storage, now):
        stack, processor = make_processor()
        await stack.account()
        payload = make_event(
            "evt_f",
            "payment_intent.payment_failed",
            {
                "id": "pi_f",
                "amount": 1000,
                "status": "requires_payment_method",
                "metadata": {"account_id": "acct_1", "credits": "100"},
                "last_payment_error": {"code": "card_declined"},
            },
        )
        await processor.ingest(payload, now=now)
        intent = await storage.get_payment_intent("pi_f")
        assert intent.status.value == "requires_payment_method"
        assert await stack.ledger.get_balance("acct_1") == 0


class TestRetries:
    """Tests for failed-event scheduling."""

    @pytest.mark.asyncio
    async def test_missing_account_is_retried(self, make_processor, storage, now):
        stack, processor = make_processor()
        response = await processor.ingest(intent_succeeded(credits="500"), now=now)
        assert response["processed"] is False

        event = await storage.get_webhook_event("evt_1")
        assert event.status == WebhookStatus.FAILED
        assert event.retry_count == 1
        assert event.next_retry_at == now + timedelta(seconds=10)

        await stack.account()
        assert await processor.process_due(now + timedelta(seconds=5)) == 0
        assert await processor.process_due(now + timedelta(seconds=10)) == 1
        assert await stack.ledger.get_balance("acct_1") == 500

    @pytest.mark.asyncio
    async def test_due_retry_moves_back_to_pending(self, make_processor, storage, now):
        stack, processor = make_processor()
        await processor.ingest(intent_succeeded(credits="500"), now=now)
        due = now + timedelta(seconds=10)

        seen = []
        process = processor.process

        async def tracking_process(event, at=None):
            stored = await storage.get_webhook_event(event.id)
            seen.append((event.status, stored.status, stored.next_retry_at))
            return await process(event, at)

        processor.process = tracking_process
        assert await processor.process_due(due) == 0
        assert seen == [(WebhookStatus.PENDING, WebhookStatus.PENDING, due + timedelta(seconds=10))]

        event = await storage.get_webhook_event("evt_1")
        assert event.status == WebhookStatus.FAILED
        assert event.retry_count == 2
        assert event.next_retry_at > due

        await stack.account()
        assert await processor.process_due(event.next_retry_at) == 1
        assert seen[-1][1] == WebhookStatus.PENDING
        assert (await storage.get_webhook_event("evt_1")).status == WebhookStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_exhausted_retries_left_for_reconciliation(self, make_processor, now):
        stack, processor = make_processor(retry=RetryConfig(max_retries=0, jitter=False))
        await processor.ingest(intent_succeeded(credits="500"), now=now)

        unresolved = await processor.list_unresolved()
        assert [e.id for e in unresolved] == ["evt_1"]

        await stack.account()
        assert await processor.retry_event("evt_1", now) is True
        assert await stack.ledger.get_balance("acct_1") == 500
        assert await processor.list_unresolved() == []

    @pytest.mark.asyncio
    async def test_malformed_event_is_not_retried(self, make_processor, storage, now):
        _, processor = make_processor()
        payload = json.dumps({"id": "evt_bad", "type": "payment_intent.succeeded", "data": {}})
        await processor.ingest(payload, now=now)
        event = await storage.get_webhook_event("evt_bad")
        assert event.status == WebhookStatus.FAILED
        assert event.next_retry_at is None

    @pytest.mark.asyncio
    async def test_redelivery_of_failed_event_reprocesses(self, make_processor, now):
        stack, processor = make_processor()
        payload = intent_succeeded(credits="500")
        await processor.ingest(payload, now=now)
        await stack.account()

        response = await processor.ingest(payload, now=now)
        assert response["processed"] is True
        assert await stack.ledger.get_balance("acct_1") == 500

    @pytest.mark.asyncio
    async def test_unknown_event_type_is_processed(self, make_processor, storage, now):
        _, processor = make_processor()
        await processor.ingest(make_event("evt_u", "ping.test", {}), now=now)
        event = await storage.get_webhook_event("evt_u")
        assert event.status == WebhookStatus.PROCESSED
        assert event.processed_at == now


class TestSubscriptionEvents:
    """Tests for provider-driven subscription state."""

    PERIOD_START = datetime(2026, 3, 1, tzinfo=timezone.utc)
    PERIOD_END = datetime(2026, 4, 1, tzinfo=timezone.utc)

    def subscription_event(self, event_id, event_type, status="active", start=None, end=None, plan_id="basic"):
        return make_event(
            event_id,
            event_type,
            {
                "id": "sub_ext",
                "customer": "cus_1",
                "status": status,
                "current_period_start": ts(start or self.PERIOD_START),
                "current_period_end": ts(end or self.PERIOD_END),
                "cancel_at_period_end": False,
                "metadata": {"plan_id": plan_id},
            },
        )

    @pytest_asyncio.fixture
    async def subscribed(self, make_processor, now):
        stack, processor = make_processor(config=SubscriptionConfig(plans=PLANS))
        await stack.account(external_customer_id="cus_1")
        await processor.ingest(self.subscription_event("evt_s1", "customer.subscription.created"), now=now)
        return stack, processor

    @pytest.mark.asyncio
    async def test_created(self, subscribed, storage):
        subscription = await storage.get_subscription_by_external_id("sub_ext")
        assert subscription.account_id == "acct_1"
        assert subscription.plan_id == "basic"
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.current_period_end == self.PERIOD_END

    @pytest.mark.asyncio
    async def test_plan_change(self, subscribed, storage, now):
        _, processor = subscribed
        await processor.ingest(
            self.subscription_event("evt_s2", "customer.subscription.updated", plan_id="pro"), now=now
        )
        subscription = await storage.get_subscription_by_external_id("sub_ext")
        assert subscription.plan_id == "pro"
        assert subscription.calls_included == 1000

    @pytest.mark.asyncio
    async def test_invoice_paid_rolls_period(self, subscribed, storage, now):
        stack, processor = subscribed
        await stack.tracker.record_covered_call("acct_1", now=now)
        next_end = datetime(2026, 5, 1, tzinfo=timezone.utc)
        payload = make_event(
            "evt_i1",
            "invoice.paid",
            {
                "id": "in_1",
                "subscription": "sub_ext",
                "amount_paid": 900,
                "lines": {"data": [{"period": {"start": ts(self.PERIOD_END), "end": ts(next_end)}}]},
            },
        )
        await processor.ingest(payload, now=now)
        await processor.ingest(payload, now=now)

        subscription = await storage.get_subscription_by_external_id("sub_ext")
        assert subscription.current_period_start == self.PERIOD_END
        assert subscription.current_period_end == next_end
        assert subscription.calls_used == 0

    @pytest.mark.asyncio
    async def test_invoice_failed_then_deleted(self, subscribed, storage, now):
        _, processor = subscribed
        await processor.ingest(
            make_event("evt_i2", "invoice.payment_failed", {"id": "in_2", "subscription": "sub_ext"}), now=now
        )
        subscription = await storage.get_subscription_by_external_id("sub_ext")
        assert subscription.status == SubscriptionStatus.PAST_DUE

        await processor.ingest(
            make_event("evt_d", "customer.subscription.deleted", {"id": "sub_ext", "canceled_at": ts(now)}), now=now
        )
        subscription = await storage.get_subscription_by_external_id("sub_ext")
        assert subscription.status == SubscriptionStatus.CANCELED
        assert subscription.canceled_at == now

    @pytest.mark.asyncio
    async def test_unknown_plan_not_retried(self, make_processor, storage, now):
        stack, processor = make_processor(config=SubscriptionConfig(plans=PLANS))
        await stack.account(external_customer_id="cus_1")
        await processor.ingest(
            self.subscription_event("evt_s1", "customer.subscription.created", plan_id="gold"), now=now
        )
        event = await storage.get_webhook_event("evt_s1")
        assert event.status == WebhookStatus.FAILED
        assert event.next_retry_at is None


class TestCustomerEvents:
    """Tests for customer and payment method events."""

    @pytest.mark.asyncio
    async def test_payment_method_attach_and_detach(self, make_processor, storage, now):
        stack, processor = make_processor()
        await stack.account(external_customer_id="cus_1")

        await processor.ingest(
            make_event("evt_a", "payment_method.attached", {"id": "pm_1", "customer": "cus_1"}), now=now
        )
        assert (await storage.get_account("acct_1")).default_payment_method_id == "pm_1"

        await processor.ingest(
            make_event(
                "evt_b",
                "payment_method.detached",
                {"id": "pm_1", "customer": None},
                previous_attributes={"customer": "cus_1"},
            ),
            now=now,
        )
        assert (await storage.get_account("acct_1")).default_payment_method_id is None

    @pytest.mark.asyncio
    async def test_customer_deleted(self, make_processor, storage, now):
        stack, processor = make_processor()
        await stack.account(external_customer_id="cus_1", default_payment_method_id="pm_1")
        await processor.ingest(make_event("evt_x", "customer.deleted", {"id": "cus_1"}), now=now)

        account = await storage.get_account("acct_1")
        assert account.status == AccountStatus.DELETED
        assert account.default_payment_method_id is None
