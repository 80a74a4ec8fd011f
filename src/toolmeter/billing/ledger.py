"""
Credit ledger.

An append-only transaction log with a cached per-account balance. All
mutations go through the storage adapter, which applies the balance change
and appends the transaction in one unit of work.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog

from toolmeter.core.errors import NotFoundError, ValidationError
from toolmeter.core.models import (
    CreditTransaction,
    Hold,
    Reservation,
    TransactionType,
    utcnow,
)
from toolmeter.storage.base import ReserveDecision, StorageAdapter

logger = structlog.get_logger()


@dataclass
class _Bucket:
    """Credits from one inflow, consumed first-in-first-out."""

    purchase_id: str | None
    remaining: int
    expires_at: datetime | None


class CreditLedger:
    """
    Reserve/commit/release plus direct adjustments over the storage adapter.

    ``reserve`` is the only operation that fails for insufficient funds;
    negative adjustments are clamped at zero by storage.
    """

    def __init__(self, storage: StorageAdapter, unit: str, reservation_ttl_seconds: int = 900):
        self.storage = storage
        self.unit = unit
        self.reservation_ttl = timedelta(seconds=reservation_ttl_seconds)

    # ==================== RESERVATIONS ====================

    async def reserve(
        self,
        account_id: str,
        amount: int,
        tool_name: str = "credits",
        billing_model: str = "credit-system",
        now: datetime | None = None,
    ) -> Reservation:
        """
        Hold ``amount`` from the balance.

        Raises:
            InsufficientBalanceError: balance does not cover ``amount``
        """
        if amount < 0:
            raise ValidationError("Reservation amount must be non-negative", {"amount": amount})
        hold = Hold(amount=amount, unit=self.unit, debit=amount)
        return await self.reserve_with(account_id, lambda _snapshot: hold, tool_name, billing_model, now)

    async def reserve_with(
        self,
        account_id: str,
        decide: ReserveDecision,
        tool_name: str,
        billing_model: str,
        now: datetime | None = None,
    ) -> Reservation:
        """Reserve whatever ``decide`` returns for the locked account state."""
        now = now or utcnow()
        reservation = await self.storage.reserve(
            account_id,
            decide,
            tool_name=tool_name,
            billing_model=billing_model,
            expires_at=now + self.reservation_ttl,
            now=now,
        )
        logger.debug(
            "Reserved",
            account_id=account_id,
            reservation_id=reservation.id,
            amount=reservation.amount,
            debit=reservation.debit,
        )
        return reservation

    async def commit(self, reservation_id: str, now: datetime | None = None) -> Reservation:
        return await self.storage.commit_reservation(reservation_id, now)

    async def release(
        self,
        reservation_id: str,
        now: datetime | None = None,
        reason: str | None = None,
    ) -> Reservation:
        return await self.storage.release_reservation(reservation_id, now, reason)

    # ==================== DIRECT CHANGES ====================

    async def adjust(
        self,
        account_id: str,
        amount: int,
        reason: str,
        reference_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> CreditTransaction:
        """Manual signed correction. Negative amounts are clamped at zero balance."""
        txn = await self.storage.apply_credit_change(
            account_id,
            amount,
            TransactionType.ADJUSTMENT,
            description=reason,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
        )
        logger.info("Adjusted balance", account_id=account_id, amount=txn.amount, balance=txn.balance_after)
        return txn

    async def purchase(
        self,
        account_id: str,
        credits: int,
        reference_id: str | None = None,
        idempotency_key: str | None = None,
        expires_at: datetime | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditTransaction:
        """Add purchased credits (or prepaid funds)."""
        if credits <= 0:
            raise ValidationError("Purchased amount must be positive", {"credits": credits})
        txn = await self.storage.apply_credit_change(
            account_id,
            credits,
            TransactionType.PURCHASE,
            description=description or "Credit purchase",
            reference_id=reference_id,
            idempotency_key=idempotency_key,
            expires_at=expires_at,
            metadata=metadata,
        )
        logger.info("Credits purchased", account_id=account_id, credits=credits, balance=txn.balance_after)
        return txn

    async def refund(
        self,
        account_id: str,
        amount: int,
        reason: str,
        reference_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> CreditTransaction:
        """Signed refund movement (negative for a payment clawback)."""
        return await self.storage.apply_credit_change(
            account_id,
            amount,
            TransactionType.REFUND,
            description=reason,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
        )

    # ==================== QUERIES ====================

    async def get_balance(self, account_id: str) -> int:
        account = await self.storage.get_account(account_id)
        if account is None:
            raise NotFoundError("account", account_id)
        return account.credit_balance

    async def history(
        self,
        account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        type: TransactionType | None = None,
    ) -> list[CreditTransaction]:
        return await self.storage.list_credit_transactions(account_id, start, end, type)

    async def verify(self, account_id: str) -> bool:
        """Check the transaction chain against the cached balance."""
        account = await self.storage.get_account(account_id)
        if account is None:
            raise NotFoundError("account", account_id)
        balance = 0
        for txn in await self.storage.list_credit_transactions(account_id):
            if txn.balance_after != balance + txn.amount or txn.balance_after < 0:
                logger.error("Ledger chain broken", account_id=account_id, sequence=txn.sequence)
                return False
            balance = txn.balance_after
        return balance == account.credit_balance

    # ==================== EXPIRY ====================

    async def expire_credits(
        self,
        account_id: str | None = None,
        now: datetime | None = None,
    ) -> list[CreditTransaction]:
        """
        Post one expiry transaction per expired purchase for its unused
        remainder. Consumption draws from the oldest inflow first; each
        purchase expires at most once.
        """
        now = now or utcnow()
        expiring = await self.storage.list_expiring_purchases(now)
        accounts = sorted({t.account_id for t in expiring if account_id is None or t.account_id == account_id})

        posted: list[CreditTransaction] = []
        for acct in accounts:
            history = await self.storage.list_credit_transactions(acct)
            for bucket in self._remaining_by_purchase(history):
                if bucket.expires_at is None or bucket.expires_at > now or bucket.remaining <= 0:
                    continue
                txn = await self.storage.apply_credit_change(
                    acct,
                    -bucket.remaining,
                    TransactionType.EXPIRY,
                    description="Credits expired",
                    reference_id=bucket.purchase_id,
                    idempotency_key=f"expiry:{bucket.purchase_id}",
                )
                posted.append(txn)
                logger.info(
                    "Credits expired",
                    account_id=acct,
                    purchase_id=bucket.purchase_id,
                    amount=-txn.amount,
                )
        return posted

    @staticmethod
    def _remaining_by_purchase(history: list[CreditTransaction]) -> list[_Bucket]:
        # Consumption later given back by a release is not consumption.
        released = {
            t.reservation_id
            for t in history
            if t.type == TransactionType.REFUND and t.reservation_id and t.amount > 0
        }
        expired = {t.reference_id for t in history if t.type == TransactionType.EXPIRY}

        buckets: list[_Bucket] = []
        by_purchase: dict[str, _Bucket] = {}
        for txn in history:
            if txn.reservation_id in released:
                continue
            if txn.amount > 0:
                is_purchase = txn.type == TransactionType.PURCHASE
                bucket = _Bucket(
                    purchase_id=txn.id if is_purchase else None,
                    remaining=txn.amount,
                    expires_at=txn.expires_at if is_purchase else None,
                )
                buckets.append(bucket)
                if is_purchase:
                    by_purchase[txn.id] = bucket
            elif txn.type == TransactionType.EXPIRY and txn.reference_id in by_purchase:
                by_purchase[txn.reference_id].remaining = 0
            else:
                owed = -txn.amount
                for bucket in buckets:
                    if owed == 0:
                        break
                    taken = min(bucket.remaining, owed)
                    bucket.remaining -= taken
                    owed -= taken
        return [b for b in buckets if b.purchase_id is not None and b.purchase_id not in expired]
