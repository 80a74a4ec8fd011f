"""
Stripe webhook processing.

Events are stored by their Stripe id before anything else happens, so a
redelivery of an already processed event is acknowledged without touching
the ledger. A failed event with a retry scheduled stays `failed` until its
retry time, then moves back to `pending` under a fresh lease while it is
reprocessed. Processing is split in two: handlers read state and translate
the event into a list of mutations without writing anything, then
``_apply`` performs them. Every mutation is itself keyed or conditional,
so an event that crashes halfway is safe to process again from pending.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import structlog

from toolmeter.billing.ledger import CreditLedger
from toolmeter.billing.payments import purchase_key
from toolmeter.billing.subscriptions import SubscriptionTracker
from toolmeter.core.config import MeteringSettings, StripeSettings
from toolmeter.core.errors import (
    ConfigurationError,
    MeteringError,
    NotFoundError,
    ValidationError,
    WebhookProcessingError,
)
from toolmeter.core.models import (
    Account,
    AccountStatus,
    PaymentIntentInfo,
    PaymentStatus,
    SubscriptionState,
    SubscriptionStatus,
    TransactionType,
    WebhookEvent,
    WebhookStatus,
    utcnow,
)
from toolmeter.core.plans import CreditSystemConfig
from toolmeter.storage.base import StorageAdapter
from toolmeter.utils.retry import RetryConfig, next_attempt_at

logger = structlog.get_logger()

# Lazy import stripe
stripe = None


def _get_stripe():
    """Lazy load stripe module."""
    global stripe
    if stripe is None:
        import stripe as stripe_module
        stripe = stripe_module
    return stripe


STRIPE_SUBSCRIPTION_STATUS = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def _from_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


# ==================== MUTATIONS ====================


@dataclass(frozen=True)
class LedgerEntry:
    """Keyed credit change."""

    account_id: str
    amount: int
    type: TransactionType
    idempotency_key: str
    reference_id: str | None = None
    description: str | None = None
    expires_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IntentStatusChange:
    intent: PaymentIntentInfo
    status: PaymentStatus
    completed_at: datetime | None = None


@dataclass(frozen=True)
class AccountChange:
    account_id: str
    fields: dict[str, Any]


@dataclass(frozen=True)
class SubscriptionChange:
    subscription_id: str
    fields: dict[str, Any]


@dataclass(frozen=True)
class SubscriptionCreation:
    subscription: SubscriptionState


@dataclass(frozen=True)
class SubscriptionRollover:
    """Advance to the paid period unless another writer already did."""

    subscription_id: str
    expected_period_end: datetime
    new_start: datetime
    new_end: datetime


Mutation = LedgerEntry | IntentStatusChange | AccountChange | SubscriptionChange | SubscriptionCreation | SubscriptionRollover


class WebhookProcessor:
    """Verifies, stores, translates and applies Stripe events."""

    def __init__(
        self,
        storage: StorageAdapter,
        ledger: CreditLedger,
        tracker: SubscriptionTracker,
        stripe_settings: StripeSettings,
        settings: MeteringSettings,
        credit_config: CreditSystemConfig | None = None,
        retry: RetryConfig | None = None,
    ):
        self.storage = storage
        self.ledger = ledger
        self.tracker = tracker
        self.stripe_settings = stripe_settings
        self.settings = settings
        self.credit_config = credit_config
        self.retry = retry or RetryConfig(
            max_retries=settings.webhook_max_retries,
            base_delay=settings.webhook_retry_base_delay,
            max_delay=settings.webhook_retry_max_delay,
        )
        self._handlers: dict[str, Callable[[dict[str, Any], WebhookEvent, datetime], Awaitable[list[Mutation]]]] = {
            # Payment events
            "payment_intent.succeeded": self._on_intent_succeeded,
            "payment_intent.payment_failed": self._on_intent_failed,
            "payment_intent.canceled": self._on_intent_canceled,
            "checkout.session.completed": self._on_checkout_completed,
            "charge.refunded": self._on_charge_refunded,
            # Subscription events
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.paid": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_failed,
            # Customer events
            "customer.deleted": self._on_customer_deleted,
            "payment_method.attached": self._on_payment_method_attached,
            "payment_method.detached": self._on_payment_method_detached,
        }

    # ==================== INGRESS ====================

    def verify(self, payload: bytes | str, signature: str | None) -> dict[str, Any]:
        """
        Check the Stripe-Signature header and decode the event.

        Raises:
            ValidationError: bad signature or malformed payload
            ConfigurationError: verification enabled without a webhook secret
        """
        if self.stripe_settings.verify_signatures:
            if self.stripe_settings.webhook_secret is None:
                raise ConfigurationError("Stripe webhook secret not configured")
            if not signature:
                raise ValidationError("Missing Stripe-Signature header")
            stripe_mod = _get_stripe()
            try:
                stripe_mod.Webhook.construct_event(
                    payload,
                    signature,
                    self.stripe_settings.webhook_secret.get_secret_value(),
                    tolerance=self.stripe_settings.webhook_tolerance,
                )
            except stripe_mod.SignatureVerificationError as e:
                raise ValidationError("Invalid Stripe webhook signature", {"error": str(e)}) from e
            except ValueError as e:
                raise ValidationError("Malformed webhook payload", {"error": str(e)}) from e

        try:
            data = json.loads(payload)
        except ValueError as e:
            raise ValidationError("Malformed webhook payload", {"error": str(e)}) from e
        if not isinstance(data, dict) or not data.get("id") or not data.get("type"):
            raise ValidationError("Webhook payload must carry an id and a type")
        return data

    async def ingest(
        self,
        payload: bytes | str,
        signature: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Receive one delivery.

        Returns ``{received, event_type, processed}``. Safe to call any
        number of times with the same payload.
        """
        now = now or utcnow()
        try:
            data = self.verify(payload, signature)
        except ValidationError as e:
            logger.warning("Webhook rejected", error=e.message)
            return {"received": False, "event_type": None, "processed": False, "error": e.message}

        event, created = await self.storage.record_webhook_event(
            WebhookEvent(
                id=data["id"],
                type=data["type"],
                payload=data,
                received_at=now,
                next_retry_at=self._lease(now),
            )
        )
        if event.status == WebhookStatus.PROCESSED:
            logger.info("Duplicate webhook acknowledged", event_id=event.id, event_type=event.type)
            return {"received": True, "event_type": event.type, "processed": True}
        if event.status == WebhookStatus.FAILED:
            event = await self._claim(event, now)

        logger.info("Webhook received", event_id=event.id, event_type=event.type, redelivery=not created)
        processed = await self.process(event, now)
        return {"received": True, "event_type": event.type, "processed": processed}

    # ==================== PROCESSING ====================

    async def process(self, event: WebhookEvent, now: datetime | None = None) -> bool:
        """
        Translate and apply one stored event, scheduling a retry on failure.

        Returns True when the event ended up processed.
        """
        now = now or utcnow()
        try:
            mutations = await self.translate(event, now)
            await self._apply(event, mutations)
        except MeteringError as e:
            await self._schedule_retry(event, e, now)
            return False

        await self.storage.update_webhook_event(event.id, WebhookStatus.PROCESSED, processed_at=now)
        logger.info("Webhook processed", event_id=event.id, event_type=event.type, mutations=len(mutations))
        return True

    async def process_due(self, now: datetime | None = None, limit: int = 100) -> int:
        """Process pending and failed events whose retry time has come."""
        now = now or utcnow()
        processed = 0
        for event in await self.storage.list_webhook_events_due(now, limit):
            event = await self._claim(event, now)
            if await self.process(event, now):
                processed += 1
        return processed

    async def retry_event(self, event_id: str, now: datetime | None = None) -> bool:
        """Manually reprocess an event, typically one whose retries ran out."""
        now = now or utcnow()
        event = await self.storage.get_webhook_event(event_id)
        if event is None:
            raise NotFoundError("webhook_event", event_id)
        if event.status == WebhookStatus.PROCESSED:
            return True
        event = await self._claim(event, now, retry_count=0)
        return await self.process(event, now)

    def _lease(self, now: datetime) -> datetime:
        # Lets the sweeper pick the event up again if this process dies mid-way
        return now + timedelta(seconds=self.retry.base_delay)

    async def _claim(self, event: WebhookEvent, now: datetime, **fields: Any) -> WebhookEvent:
        """Move an event back to pending for another attempt."""
        return await self.storage.update_webhook_event(
            event.id,
            WebhookStatus.PENDING,
            next_retry_at=self._lease(now),
            **fields,
        )

    async def list_unresolved(self, limit: int = 100) -> list[WebhookEvent]:
        """Failed events with no retry left, awaiting manual reconciliation."""
        failed = await self.storage.list_webhook_events(WebhookStatus.FAILED, limit)
        return [e for e in failed if e.next_retry_at is None]

    async def translate(self, event: WebhookEvent, now: datetime) -> list[Mutation]:
        """
        Map an event onto mutations. Reads only.

        Unknown event types translate to no mutations.
        """
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.debug("Unhandled webhook event type", event_type=event.type)
            return []
        try:
            obj = event.payload["data"]["object"]
            return await handler(obj, event, now)
        except (KeyError, TypeError, ValueError) as e:
            raise WebhookProcessingError(event.id, f"Malformed {event.type} payload: {e}", retryable=False) from e

    async def _apply(self, event: WebhookEvent, mutations: list[Mutation]) -> None:
        for mutation in mutations:
            if isinstance(mutation, LedgerEntry):
                await self.storage.apply_credit_change(
                    mutation.account_id,
                    mutation.amount,
                    mutation.type,
                    description=mutation.description,
                    reference_id=mutation.reference_id,
                    idempotency_key=mutation.idempotency_key,
                    expires_at=mutation.expires_at,
                    metadata=mutation.metadata,
                )
            elif isinstance(mutation, IntentStatusChange):
                await self.storage.create_payment_intent(mutation.intent)
                await self.storage.update_payment_intent(mutation.intent.id, mutation.status, mutation.completed_at)
            elif isinstance(mutation, AccountChange):
                await self.storage.update_account(mutation.account_id, **mutation.fields)
            elif isinstance(mutation, SubscriptionChange):
                await self.storage.update_subscription(mutation.subscription_id, **mutation.fields)
            elif isinstance(mutation, SubscriptionCreation):
                await self.storage.create_subscription(mutation.subscription)
            elif isinstance(mutation, SubscriptionRollover):
                await self.storage.rollover_subscription(
                    mutation.subscription_id,
                    mutation.expected_period_end,
                    mutation.new_start,
                    mutation.new_end,
                )
            else:
                raise WebhookProcessingError(event.id, f"Unknown mutation {type(mutation).__name__}", retryable=False)

    async def _schedule_retry(self, event: WebhookEvent, error: MeteringError, now: datetime) -> None:
        retryable = not isinstance(error, ValidationError) and getattr(error, "retryable", True)
        retry_count = event.retry_count + 1
        next_at = next_attempt_at(retry_count, self.retry, now) if retryable else None
        await self.storage.update_webhook_event(
            event.id,
            WebhookStatus.FAILED,
            retry_count=retry_count,
            next_retry_at=next_at,
            last_error=error.message,
        )
        if next_at is None:
            logger.error(
                "Webhook failed, left for manual reconciliation",
                event_id=event.id,
                event_type=event.type,
                retry_count=retry_count,
                error=error.message,
            )
        else:
            logger.warning(
                "Webhook failed, retry scheduled",
                event_id=event.id,
                event_type=event.type,
                retry_count=retry_count,
                next_retry_at=next_at.isoformat(),
                error=error.message,
            )

    # ==================== PAYMENT HANDLERS ====================

    async def _on_intent_succeeded(self, obj: dict[str, Any], event: WebhookEvent, now: datetime) -> list[Mutation]:
        intent = await self._intent_from(obj, event)
        if intent is None:
            return []
        mutations: list[Mutation] = [IntentStatusChange(intent, PaymentStatus.SUCCEEDED, completed_at=now)]
        if intent.purpose in ("credit_purchase", "auto_recharge") and intent.credits:
            mutations.append(
                LedgerEntry(
                    account_id=intent.account_id,
                    amount=intent.credits,
                    type=TransactionType.PURCHASE,
                    idempotency_key=purchase_key(intent.id),
                    reference_id=intent.id,
                    description="Credit purchase",
                    expires_at=self._package_expiry(intent.package_id, now),
                    metadata={"package_id": intent.package_id} if intent.package_id else {},
                )
            )
        return mutations

    async def _on_intent_failed(self, obj: dict[str, Any], event: WebhookEvent, now: datetime) -> list[Mutation]:
        intent = await self._intent_from(obj, event)
        if intent is None:
            return []
        error = obj.get("last_payment_error") or {}
        logger.warning(
            "Payment failed",
            account_id=intent.account_id,
            intent_id=intent.id,
            code=error.get("code"),
        )
        return [IntentStatusChange(intent, self._status_of(obj, PaymentStatus.REQUIRES_PAYMENT_METHOD))]

    async def _on_intent_canceled(self, obj: dict[str, Any], event: WebhookEvent, now: datetime) -> list[Mutation]:
        intent = await self._intent_from(obj, event)
        if intent is None:
            return []
        return [IntentStatusChange(intent, PaymentStatus.CANCELED)]

    async def _on_checkout_completed(self, obj: dict[str, Any], event: WebhookEvent, now: datetime) -> list[Mutation]:
        metadata = obj.get("metadata") or {}
        account = await self._resolve_account(event, obj.get("customer"), metadata.get("account_id"))
        if account is None:
            return []

        mutations: list[Mutation] = []
        customer_id = obj.get("customer")
        if customer_id and account.external_customer_id != customer_id:
            mutations.append(AccountChange(account.id, {"external_customer_id": customer_id}))

        if obj.get("mode", "payment") != "payment" or obj.get("payment_status") != "paid":
            return mutations

        package_id = metadata.get("package_id")
        credits = int(metadata["credits"]) if metadata.get("credits") else None
        if credits is None and package_id:
            package = self.credit_config.get_package(package_id) if self.credit_config else None
            if package is None:
                raise WebhookProcessingError(event.id, f"Unknown credit package {package_id}", retryable=False)
            credits = package.total_credits
        if credits is None:
            # Prepaid funds in minor units
            credits = int(obj.get("amount_total") or 0)
        if credits <= 0:
            return mutations

        intent_id = obj.get("payment_intent") or obj["id"]
        mutations.append(
            IntentStatusChange(
                PaymentIntentInfo(
                    id=intent_id,
                    account_id=account.id,
                    amount=int(obj.get("amount_total") or 0),
                    currency=obj.get("currency") or self.settings.currency,
                    status=PaymentStatus.SUCCEEDED,
                    purpose="credit_purchase",
                    package_id=package_id,
                    credits=credits,
                    metadata={"checkout_session": obj["id"]},
                    created_at=now,
                    updated_at=now,
                ),
                PaymentStatus.SUCCEEDED,
                completed_at=now,
            )
        )
        mutations.append(
            LedgerEntry(
                account_id=account.id,
                amount=credits,
                type=TransactionType.PURCHASE,
                idempotency_key=purchase_key(intent_id),
                reference_id=intent_id,
                description="Checkout purchase",
                expires_at=self._package_expiry(package_id, now),
                metadata={"package_id": package_id} if package_id else {},
            )
        )
        return mutations

    async def _on_charge_refunded(self, obj: dict[str, Any], event: WebhookEvent, now: datetime) -> list[Mutation]:
        intent_id = obj.get("payment_intent")
        intent = await self.storage.get_payment_intent(intent_id) if intent_id else None
        if intent is None or not intent.credits or intent.amount <= 0:
            logger.info("Refund for untracked charge ignored", charge_id=obj.get("id"), intent_id=intent_id)
            return []

        refunded = min(int(obj.get("amount_refunded") or 0), intent.amount)
        clawback_total = intent.credits * refunded // intent.amount
        history = await self.storage.list_credit_transactions(intent.account_id, type=TransactionType.REFUND)
        already = -sum(t.amount for t in history if t.reference_id == intent.id and t.amount < 0)
        delta = clawback_total - already
        if delta <= 0:
            return []
        return [
            LedgerEntry(
                account_id=intent.account_id,
                amount=-delta,
                type=TransactionType.REFUND,
                idempotency_key=f"refund:{obj['id']}:{refunded}",
                reference_id=intent.id,
                description="Payment refunded",
                metadata={"charge_id": obj["id"], "amount_refunded": refunded},
            )
        ]

    # ==================== SUBSCRIPTION HANDLERS ====================

    async def _on_subscription_changed(self, obj: dict[str, Any], event: WebhookEvent, now: datetime) -> list[Mutation]:
        external_id = obj["id"]
        status = STRIPE_SUBSCRIPTION_STATUS.get(obj.get("status", "active"), SubscriptionStatus.PAST_DUE)
        period_start, period_end = self._subscription_period(obj)
        metadata = obj.get("metadata") or {}

        existing = await self.storage.get_subscription_by_external_id(external_id)
        account = None
        if existing is None:
            account = await self._resolve_account(event, obj.get("customer"), metadata.get("account_id"))
            if account is None:
                return []
            existing = await self.storage.get_subscription_for_account(account.id)

        plan_id = metadata.get("plan_id") or self._price_id(obj)
        plan = self.tracker.config.get_plan(plan_id) if (plan_id and self.tracker.config) else None

        if existing is None:
            if plan is None:
                raise WebhookProcessingError(event.id, f"Unknown plan {plan_id!r} for {external_id}", retryable=False)
            if period_start is None or period_end is None:
                raise WebhookProcessingError(event.id, f"Subscription {external_id} has no period", retryable=False)
            return [
                SubscriptionCreation(
                    SubscriptionState(
                        account_id=account.id,
                        plan_id=plan.id,
                        interval=plan.interval,
                        current_period_start=period_start,
                        current_period_end=period_end,
                        calls_included=plan.included_calls,
                        overage_rate=plan.overage_price,
                        max_calls=plan.max_calls,
                        external_id=external_id,
                        status=status,
                        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
                        trial_end=_from_timestamp(obj.get("trial_end")),
                        created_at=now,
                        updated_at=now,
                    )
                )
            ]

        fields: dict[str, Any] = {
            "status": status,
            "external_id": external_id,
            "cancel_at_period_end": bool(obj.get("cancel_at_period_end")),
            "trial_end": _from_timestamp(obj.get("trial_end")),
        }
        if status == SubscriptionStatus.CANCELED:
            fields["canceled_at"] = _from_timestamp(obj.get("canceled_at")) or now
        if plan is not None and plan.id != existing.plan_id:
            fields.update(
                plan_id=plan.id,
                interval=plan.interval,
                calls_included=plan.included_calls,
                overage_rate=plan.overage_price,
                max_calls=plan.max_calls,
            )
        mutations: list[Mutation] = [SubscriptionChange(existing.id, fields)]
        if period_start is not None and period_end is not None and period_start >= existing.current_period_end:
            mutations.append(SubscriptionRollover(existing.id, existing.current_period_end, period_start, period_end))
        return mutations

    async def _on_subscription_deleted(self, obj: dict[str, Any], event: WebhookEvent, now: datetime) -> list[Mutation]:
        existing = await self.storage.get_subscription_by_external_id(obj["id"])
        if existing is None:
            return []
        canceled_at = _from_timestamp(obj.get("canceled_at")) or now
        return [SubscriptionChange(existing.id, {"status": SubscriptionStatus.CANCELED, "canceled_at": canceled_at})]

    async def _on_invoice_paid(self, obj: dict[str, Any], event: WebhookEvent, now: datetime) -> list[Mutation]:
        existing = await self._invoice_subscription(obj)
        if existing is None:
            return []
        mutations: list[Mutation] = [SubscriptionChange(existing.id, {"status": SubscriptionStatus.ACTIVE})]
        period_start, period_end = self._invoice_period(obj)
        if period_start is not None and period_end is not None and period_start >= existing.current_period_end:
            mutations.append(SubscriptionRollover(existing.id, existing.current_period_end, period_start, period_end))
        logger.info(
            "Invoice paid",
            account_id=existing.account_id,
            subscription_id=existing.id,
            amount=obj.get("amount_paid", 0),
        )
        return mutations

    async def _on_invoice_failed(self, obj: dict[str, Any], event: WebhookEvent, now: datetime) -> list[Mutation]:
        existing = await self._invoice_subscription(obj)
        if existing is None:
            return []
        logger.warning(
            "Invoice payment failed",
            account_id=existing.account_id,
            subscription_id=existing.id,
            attempt_count=obj.get("attempt_count", 1),
        )
        return [SubscriptionChange(existing.id, {"status": SubscriptionStatus.PAST_DUE})]

    # ==================== CUSTOMER HANDLERS ====================

    async def _on_customer_deleted(self, obj: dict[str, Any], event: WebhookEvent, now: datetime) -> list[Mutation]:
        account = await self.storage.get_account_by_external_id(obj["id"])
        if account is None or account.status == AccountStatus.DELETED:
            return []
        return [AccountChange(account.id, {"status": AccountStatus.DELETED, "default_payment_method_id": None})]

    async def _on_payment_method_attached(self, obj: dict[str, Any], event: WebhookEvent, now: datetime) -> list[Mutation]:
        customer_id = obj.get("customer")
        account = await self.storage.get_account_by_external_id(customer_id) if customer_id else None
        if account is None or account.default_payment_method_id is not None:
            return []
        return [AccountChange(account.id, {"default_payment_method_id": obj["id"]})]

    async def _on_payment_method_detached(self, obj: dict[str, Any], event: WebhookEvent, now: datetime) -> list[Mutation]:
        previous = (event.payload.get("data") or {}).get("previous_attributes") or {}
        customer_id = obj.get("customer") or previous.get("customer")
        account = await self.storage.get_account_by_external_id(customer_id) if customer_id else None
        if account is None or account.default_payment_method_id != obj["id"]:
            return []
        return [AccountChange(account.id, {"default_payment_method_id": None})]

    # ==================== HELPERS ====================

    async def _resolve_account(
        self,
        event: WebhookEvent,
        customer_id: str | None,
        account_id: str | None,
    ) -> Account | None:
        """
        Find the account an event refers to.

        Returns None when the event names no account at all. An account that
        is named but missing raises a retryable error, since the creating
        event may not have been applied yet.
        """
        if account_id:
            account = await self.storage.get_account(account_id)
            if account is None:
                raise WebhookProcessingError(event.id, f"Account {account_id} not found")
            return account
        if customer_id:
            account = await self.storage.get_account_by_external_id(customer_id)
            if account is None:
                raise WebhookProcessingError(event.id, f"No account for customer {customer_id}")
            return account
        logger.info("Webhook names no account", event_id=event.id, event_type=event.type)
        return None

    async def _intent_from(self, obj: dict[str, Any], event: WebhookEvent) -> PaymentIntentInfo | None:
        stored = await self.storage.get_payment_intent(obj["id"])
        if stored is not None:
            return stored
        metadata = obj.get("metadata") or {}
        account = await self._resolve_account(event, obj.get("customer"), metadata.get("account_id"))
        if account is None:
            return None
        package_id = metadata.get("package_id")
        credits = int(metadata["credits"]) if metadata.get("credits") else None
        if credits is None and package_id and self.credit_config is not None:
            package = self.credit_config.get_package(package_id)
            credits = package.total_credits if package else None
        return PaymentIntentInfo(
            id=obj["id"],
            account_id=account.id,
            amount=int(obj.get("amount") or 0),
            currency=obj.get("currency") or self.settings.currency,
            status=self._status_of(obj, PaymentStatus.PROCESSING),
            purpose=metadata.get("purpose", "credit_purchase"),
            package_id=package_id,
            credits=credits,
            metadata=dict(metadata),
            created_at=_from_timestamp(obj.get("created")) or utcnow(),
        )

    async def _invoice_subscription(self, obj: dict[str, Any]) -> SubscriptionState | None:
        external_id = obj.get("subscription")
        if external_id is None:
            details = ((obj.get("parent") or {}).get("subscription_details")) or {}
            external_id = details.get("subscription")
        if not external_id:
            return None
        return await self.storage.get_subscription_by_external_id(external_id)

    def _package_expiry(self, package_id: str | None, now: datetime) -> datetime | None:
        if not package_id or self.credit_config is None:
            return None
        package = self.credit_config.get_package(package_id)
        if package is None or not package.expiration_days:
            return None
        return now + timedelta(days=package.expiration_days)

    @staticmethod
    def _status_of(obj: dict[str, Any], default: PaymentStatus) -> PaymentStatus:
        try:
            return PaymentStatus(obj.get("status"))
        except ValueError:
            return default

    @staticmethod
    def _price_id(obj: dict[str, Any]) -> str | None:
        items = (obj.get("items") or {}).get("data") or []
        if not items:
            return None
        return (items[0].get("price") or {}).get("id")

    @staticmethod
    def _subscription_period(obj: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
        # Newer API versions carry the period on the subscription items
        start, end = obj.get("current_period_start"), obj.get("current_period_end")
        if start is None:
            items = (obj.get("items") or {}).get("data") or []
            if items:
                start, end = items[0].get("current_period_start"), items[0].get("current_period_end")
        return _from_timestamp(start), _from_timestamp(end)

    @staticmethod
    def _invoice_period(obj: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
        lines = (obj.get("lines") or {}).get("data") or []
        period = (lines[0].get("period") if lines else None) or {}
        return _from_timestamp(period.get("start")), _from_timestamp(period.get("end"))
