"""
Invocation hooks.

``before`` answers whether a tool may run and hands back a reservation
token; ``after`` finalizes the charge and stamps the billing summary on the
tool result. ``invoke`` runs both around a tool coroutine.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import structlog

from toolmeter.billing.gate import Authorization, BillingGate, Refusal
from toolmeter.billing.recorder import UsageRecorder
from toolmeter.core.errors import MeteringError, StorageError

logger = structlog.get_logger()

ToolFunc = Callable[..., Awaitable[Any]]


@dataclass
class InvocationContext:
    """Context attached to an allowed invocation."""

    account_id: str
    tool_name: str
    args: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    authorization: Authorization | None = None
    started_at: float = field(default_factory=time.monotonic)

    @property
    def reservation_token(self) -> str | None:
        return self.authorization.reservation_id if self.authorization else None

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000


@dataclass
class PreInvocationResult:
    """Either proceed with a context, or a refusal."""

    proceed: bool
    context: InvocationContext | None = None
    refusal: Refusal | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.proceed:
            return {"proceed": True, "reservation_token": self.context.reservation_token}
        return self.refusal.to_dict()


class InvocationHooks:
    """Pre/post invocation contract over the gate and recorder."""

    def __init__(self, gate: BillingGate, recorder: UsageRecorder):
        self.gate = gate
        self.recorder = recorder

    async def before(
        self,
        account_id: str,
        tool_name: str,
        args: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PreInvocationResult:
        """Authorize a call. Never runs the tool."""
        decision = await self.gate.authorize(account_id, tool_name, metadata)
        if isinstance(decision, Refusal):
            return PreInvocationResult(proceed=False, refusal=decision)
        context = InvocationContext(
            account_id=account_id,
            tool_name=tool_name,
            args=dict(args or {}),
            metadata=dict(metadata or {}),
            authorization=decision,
        )
        return PreInvocationResult(proceed=True, context=context)

    async def after(
        self,
        reservation_token: str | None,
        success: bool,
        tool_name: str,
        result: Any = None,
        account_id: str | None = None,
        error_code: str | None = None,
        duration_ms: float | None = None,
    ) -> dict[str, Any]:
        """
        Finalize the charge for a finished call.

        Returns the tool result with ``_meta.billing`` added. A storage
        failure is surfaced as ``_meta.billing.error``; the call can be
        recorded again with the same token.
        """
        try:
            summary = await self.recorder.record(
                reservation_token,
                success,
                tool_name,
                account_id=account_id,
                error_code=error_code,
                duration_ms=duration_ms,
            )
            billing = summary.to_dict()
        except MeteringError as e:
            billing = {
                "charged": False,
                "tool_name": tool_name,
                "error": e.to_dict(),
            }
            if isinstance(e, StorageError):
                billing["retryable"] = True
        return augment_result(result, billing)

    async def invoke(
        self,
        account_id: str,
        tool_name: str,
        tool: ToolFunc,
        args: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Run ``tool(**args)`` between the two hooks.

        A refused call returns the refusal payload without running the
        tool. Exceptions from the tool are re-raised after the reservation
        is released.
        """
        pre = await self.before(account_id, tool_name, args, metadata)
        if not pre.proceed:
            return pre.refusal.to_dict()

        context = pre.context
        try:
            result = await tool(**context.args)
        except asyncio.CancelledError:
            # Best effort; the maintenance sweep releases it otherwise
            await self._finish_failed(context, "cancelled")
            raise
        except Exception as e:
            logger.info("Tool failed", account_id=account_id, tool_name=tool_name, error_type=type(e).__name__)
            await self._finish_failed(context, type(e).__name__)
            raise

        return await self.after(
            context.reservation_token,
            True,
            tool_name,
            result,
            account_id=account_id,
            duration_ms=context.elapsed_ms(),
        )

    async def _finish_failed(self, context: InvocationContext, error_code: str) -> None:
        try:
            await self.recorder.record(
                context.reservation_token,
                False,
                context.tool_name,
                account_id=context.account_id,
                error_code=error_code,
                duration_ms=context.elapsed_ms(),
            )
        except MeteringError as e:
            logger.error(
                "Failed to record failed call",
                account_id=context.account_id,
                reservation_id=context.reservation_token,
                error=e.message,
            )


def augment_result(result: Any, billing: dict[str, Any]) -> dict[str, Any]:
    """Attach a billing summary under ``_meta.billing``."""
    if isinstance(result, dict):
        augmented = dict(result)
    else:
        augmented = {"result": result}
    meta = dict(augmented.get("_meta") or {})
    meta["billing"] = billing
    augmented["_meta"] = meta
    return augmented
