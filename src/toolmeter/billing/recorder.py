"""
Usage recorder: the post-invocation half of the two-phase charge.

Commits or releases the gate's reservation and writes the usage record.
Both steps are keyed by the reservation id, so recording the same outcome
twice has the effect of recording it once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from toolmeter.billing.ledger import CreditLedger
from toolmeter.core.config import MeteringSettings
from toolmeter.core.errors import ReservationError, StorageError
from toolmeter.core.models import UsageRecord, utcnow
from toolmeter.storage.base import StorageAdapter

logger = structlog.get_logger()


@dataclass(frozen=True)
class ChargeSummary:
    """What the caller was billed for one invocation."""

    tool_name: str
    amount: int
    unit: str
    charged: bool
    timestamp: datetime = field(default_factory=utcnow)
    reservation_id: str | None = None
    usage_record_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "charged": self.charged,
            "amount": self.amount,
            "tool_name": self.tool_name,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.unit == "credits":
            data["credits"] = self.amount
        else:
            data["currency"] = self.unit
        return data


class UsageRecorder:
    """Finalizes reservations and appends usage records."""

    def __init__(
        self,
        storage: StorageAdapter,
        ledger: CreditLedger,
        settings: MeteringSettings,
        unit: str,
    ):
        self.storage = storage
        self.ledger = ledger
        self.settings = settings
        self.unit = unit

    async def record(
        self,
        reservation_id: str | None,
        success: bool,
        tool_name: str,
        account_id: str | None = None,
        error_code: str | None = None,
        duration_ms: float | None = None,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> ChargeSummary:
        """
        Record the outcome of an authorized call.

        Successful calls commit the reservation. Failed calls release it
        unless failed calls are configured to be charged.

        Raises:
            ReservationError: unknown reservation id
            StorageError: backend failure; safe to retry with the same id
        """
        now = now or utcnow()
        metadata = dict(metadata or {})

        if reservation_id is None:
            return await self._record_unreserved(account_id, tool_name, success, error_code, duration_ms, metadata, now)

        reservation = await self.storage.get_reservation(reservation_id)
        if reservation is None:
            raise ReservationError(reservation_id, f"Unknown reservation {reservation_id}")

        cost = 0
        try:
            if success or self.settings.charge_failed_calls:
                committed = await self.ledger.commit(reservation_id, now)
                cost = committed.amount
            else:
                await self.ledger.release(reservation_id, now, reason=f"{tool_name} failed")
        except ReservationError:
            # Already finalized by an earlier attempt or by the expiry sweep
            current = await self.storage.get_reservation(reservation_id)
            if current is not None and current.status.value == "committed":
                cost = current.amount
            else:
                logger.warning(
                    "Reservation expired before the call finished",
                    reservation_id=reservation_id,
                    account_id=reservation.account_id,
                    tool_name=tool_name,
                )
                error_code = error_code or "reservation_expired"
        except StorageError as e:
            logger.error(
                "Failed to finalize reservation",
                reservation_id=reservation_id,
                account_id=reservation.account_id,
                success=success,
                error=e.message,
            )
            raise

        metadata.setdefault("basis", reservation.basis)
        try:
            stored = await self.storage.insert_usage_record(
                UsageRecord(
                    account_id=reservation.account_id,
                    tool_name=tool_name,
                    cost=cost,
                    unit=reservation.unit,
                    success=success,
                    timestamp=now,
                    error_code=error_code,
                    billing_model=reservation.billing_model,
                    reservation_id=reservation_id,
                    duration_ms=duration_ms,
                    metadata=metadata,
                )
            )
        except StorageError as e:
            logger.error(
                "Failed to write usage record",
                reservation_id=reservation_id,
                account_id=reservation.account_id,
                error=e.message,
            )
            raise

        logger.info(
            "Usage recorded",
            account_id=reservation.account_id,
            tool_name=tool_name,
            reservation_id=reservation_id,
            success=success,
            cost=stored.cost,
        )
        return ChargeSummary(
            tool_name=tool_name,
            amount=stored.cost,
            unit=stored.unit,
            charged=stored.cost > 0,
            timestamp=stored.timestamp,
            reservation_id=reservation_id,
            usage_record_id=stored.id,
        )

    async def _record_unreserved(
        self,
        account_id: str | None,
        tool_name: str,
        success: bool,
        error_code: str | None,
        duration_ms: float | None,
        metadata: dict[str, Any],
        now: datetime,
    ) -> ChargeSummary:
        """A call let through without a reservation (fail-open) is never charged."""
        summary = ChargeSummary(tool_name=tool_name, amount=0, unit=self.unit, charged=False, timestamp=now)
        if account_id is None:
            return summary
        try:
            stored = await self.storage.insert_usage_record(
                UsageRecord(
                    account_id=account_id,
                    tool_name=tool_name,
                    cost=0,
                    unit=self.unit,
                    success=success,
                    timestamp=now,
                    error_code=error_code,
                    duration_ms=duration_ms,
                    metadata={**metadata, "fail_open": True},
                )
            )
        except StorageError as e:
            logger.warning("Unbilled call not recorded", account_id=account_id, tool_name=tool_name, error=e.message)
            return summary
        return ChargeSummary(
            tool_name=tool_name,
            amount=0,
            unit=self.unit,
            charged=False,
            timestamp=now,
            usage_record_id=stored.id,
        )
