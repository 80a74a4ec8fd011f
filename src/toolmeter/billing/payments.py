"""
Payment provider gateway and auto-recharge.

Only the charge initiation lives here; confirmation of a charge always
arrives through the webhook processor, which is the sole writer of payment
intent status after creation.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import structlog

from toolmeter.billing.ledger import CreditLedger
from toolmeter.core.config import StripeSettings
from toolmeter.core.errors import ConfigurationError
from toolmeter.core.models import Account, PaymentIntentInfo, PaymentStatus, utcnow
from toolmeter.core.plans import CreditSystemConfig
from toolmeter.storage.base import StorageAdapter
from toolmeter.utils.retry import RetryConfig, retry_async

logger = structlog.get_logger()

# Lazy import stripe to avoid import errors when not configured
stripe = None


def _get_stripe():
    """Lazy load stripe module."""
    global stripe
    if stripe is None:
        import stripe as stripe_module
        stripe = stripe_module
    return stripe


@dataclass
class ChargeResult:
    """Provider response to a charge request."""

    intent_id: str
    status: PaymentStatus


class PaymentGateway(ABC):
    """Initiates charges with the external payment provider."""

    @abstractmethod
    async def create_payment_intent(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ChargeResult:
        """Create and confirm an off-session charge."""


class StripePaymentGateway(PaymentGateway):
    """Stripe implementation of the payment gateway."""

    def __init__(self, settings: StripeSettings, retry: RetryConfig | None = None):
        if not settings.is_configured:
            raise ConfigurationError("Stripe is not configured. Set TOOLMETER_STRIPE_SECRET_KEY.")
        stripe_mod = _get_stripe()
        stripe_mod.api_key = settings.secret_key.get_secret_value()
        if settings.api_version:
            stripe_mod.api_version = settings.api_version
        self.retry = retry or RetryConfig(
            max_retries=2,
            retryable_exceptions=(
                stripe_mod.APIConnectionError,
                stripe_mod.RateLimitError,
            ),
        )

    async def create_payment_intent(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ChargeResult:
        stripe_mod = _get_stripe()

        async def _create() -> Any:
            # Same idempotency key on every attempt so retries never double-charge
            return await asyncio.to_thread(
                stripe_mod.PaymentIntent.create,
                amount=amount,
                currency=currency,
                customer=customer_id,
                payment_method=payment_method_id,
                off_session=True,
                confirm=True,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )

        try:
            intent = await retry_async(_create, config=self.retry)
        except stripe_mod.CardError as e:
            # Declined off-session charges still produce an intent
            error_intent = getattr(e.error, "payment_intent", None)
            if error_intent is None:
                raise
            logger.warning("Charge declined", customer_id=customer_id, code=e.code)
            return ChargeResult(intent_id=error_intent["id"], status=PaymentStatus(error_intent["status"]))

        return ChargeResult(intent_id=intent.id, status=PaymentStatus(intent.status))


class AutoRecharger:
    """
    Synchronous top-up when a credit balance drops below the configured
    threshold.

    At most one recharge per account is in flight: a second trigger while a
    recharge intent is still unconfirmed is ignored. Credits are granted by
    the same keyed purchase the webhook would apply, so a charge that
    succeeds immediately and its later ``payment_intent.succeeded`` event
    credit the account once.
    """

    PENDING_STATUSES = frozenset(
        {
            PaymentStatus.PROCESSING,
            PaymentStatus.REQUIRES_CONFIRMATION,
            PaymentStatus.REQUIRES_ACTION,
            PaymentStatus.REQUIRES_CAPTURE,
        }
    )

    def __init__(
        self,
        storage: StorageAdapter,
        ledger: CreditLedger,
        gateway: PaymentGateway,
        config: CreditSystemConfig,
        currency: str,
    ):
        self.storage = storage
        self.ledger = ledger
        self.gateway = gateway
        self.config = config
        self.currency = currency
        self._in_flight: set[str] = set()
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.config.auto_recharge is not None

    def should_recharge(self, balance: int) -> bool:
        return self.enabled and balance < self.config.auto_recharge.threshold

    async def maybe_recharge(self, account: Account, balance: int) -> bool:
        """
        Attempt a top-up if ``balance`` is below the threshold.

        Returns True when credits were granted synchronously. Failures are
        logged and never propagate to the caller.
        """
        if not self.should_recharge(balance):
            return False
        if not account.has_payment_method or not account.external_customer_id:
            logger.info("Auto-recharge skipped, no payment method", account_id=account.id)
            return False

        async with self._lock:
            if account.id in self._in_flight:
                return False
            self._in_flight.add(account.id)
        try:
            return await self._recharge(account)
        except Exception as e:
            logger.error("Auto-recharge failed", account_id=account.id, error=str(e), error_type=type(e).__name__)
            return False
        finally:
            self._in_flight.discard(account.id)

    async def _recharge(self, account: Account) -> bool:
        for intent in await self.storage.list_payment_intents(account.id):
            if intent.purpose == "auto_recharge" and intent.status in self.PENDING_STATUSES:
                logger.info("Auto-recharge already pending", account_id=account.id, intent_id=intent.id)
                return False

        package = self.config.get_package(self.config.auto_recharge.package_id)
        now = utcnow()
        result = await self.gateway.create_payment_intent(
            customer_id=account.external_customer_id,
            payment_method_id=account.default_payment_method_id,
            amount=package.price,
            currency=self.currency,
            metadata={
                "account_id": account.id,
                "purpose": "auto_recharge",
                "package_id": package.id,
                "credits": str(package.total_credits),
            },
            idempotency_key=f"auto_recharge:{account.id}:{now.strftime('%Y%m%d%H%M%S')}",
        )
        await self.storage.create_payment_intent(
            PaymentIntentInfo(
                id=result.intent_id,
                account_id=account.id,
                amount=package.price,
                currency=self.currency,
                status=result.status,
                purpose="auto_recharge",
                package_id=package.id,
                credits=package.total_credits,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            "Auto-recharge charge created",
            account_id=account.id,
            intent_id=result.intent_id,
            status=result.status.value,
        )

        if result.status != PaymentStatus.SUCCEEDED:
            return False

        await self.ledger.purchase(
            account.id,
            package.total_credits,
            reference_id=result.intent_id,
            idempotency_key=purchase_key(result.intent_id),
            expires_at=now + timedelta(days=package.expiration_days) if package.expiration_days else None,
            description=f"Auto-recharge: {package.name}",
            metadata={"package_id": package.id},
        )
        return True


def purchase_key(intent_id: str) -> str:
    """Idempotency key for credits granted by a payment intent."""
    return f"purchase:{intent_id}"
