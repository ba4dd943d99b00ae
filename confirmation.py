"""
Confirmation resolver: the human-in-the-loop side of deferred transactions.

confirm() executes the parked call through the broker's normal dispatch
path. A confirmed call is terminal even if the capability fails; retrying
means issuing a brand-new tool call, so a financial transaction is never
broadcast twice by accident.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from invocation_result import ErrorKind, InvocationResult
from observability import InvocationEvent, elapsed_ms, get_logger
from pending_store import (
    AlreadyResolvedError,
    PendingCallNotFoundError,
    PendingConfirmationStore,
    PendingStatus,
)
from tool_registry import UnknownToolError

if TYPE_CHECKING:
    from invocation_broker import InvocationBroker

logger = get_logger(__name__)

# Event tool name when the id no longer maps to a stored call.
UNKNOWN_CALL = "<unknown>"


class ConfirmationResolver:
    def __init__(self, broker: InvocationBroker, store: PendingConfirmationStore) -> None:
        self._broker = broker
        self._store = store

    def _resolve(self, confirmation_id: str, status: PendingStatus):
        """Return (call, None) on success or (tool_name, failure)."""
        try:
            return self._store.transition(confirmation_id, status), None
        except PendingCallNotFoundError as exc:
            return UNKNOWN_CALL, InvocationResult.failure(ErrorKind.NOT_FOUND, str(exc))
        except AlreadyResolvedError as exc:
            failure = InvocationResult.failure(ErrorKind.ALREADY_RESOLVED, str(exc))
            return exc.tool_name or UNKNOWN_CALL, failure

    def _emit(self, tool_name: str, result: InvocationResult, confirmation_id: str, started: float, phase: str) -> None:
        self._broker.emit(InvocationEvent(
            tool_name=tool_name,
            outcome=result.outcome,
            duration_ms=elapsed_ms(started),
            confirmation_id=confirmation_id,
            phase=phase,
        ))

    async def confirm(self, confirmation_id: str) -> InvocationResult:
        started = time.perf_counter()
        call, failure = self._resolve(confirmation_id, PendingStatus.CONFIRMED)
        if failure is not None:
            logger.warning("confirmation_failed", confirmation_id=confirmation_id, tool=call, reason=failure.message)
            self._emit(call, failure, confirmation_id, started, "confirm")
            return failure

        try:
            descriptor = self._broker.registry.lookup(call.tool_name)
        except UnknownToolError as exc:
            result = InvocationResult.failure(ErrorKind.UNKNOWN_TOOL, str(exc))
        else:
            result = await self._broker.execute(descriptor, call.parameters)

        if result.ok:
            logger.info("transaction_confirmed", confirmation_id=confirmation_id, tool=call.tool_name)
        else:
            logger.error(
                "confirmed_transaction_failed",
                confirmation_id=confirmation_id,
                tool=call.tool_name,
                error=result.message,
            )
        self._emit(call.tool_name, result, confirmation_id, started, "confirm")
        return result

    def reject(self, confirmation_id: str) -> InvocationResult:
        started = time.perf_counter()
        call, failure = self._resolve(confirmation_id, PendingStatus.REJECTED)
        if failure is not None:
            logger.warning("rejection_failed", confirmation_id=confirmation_id, tool=call, reason=failure.message)
            self._emit(call, failure, confirmation_id, started, "reject")
            return failure

        logger.info("transaction_rejected", confirmation_id=confirmation_id, tool=call.tool_name)
        result = InvocationResult.success(
            {"confirmationId": confirmation_id, "status": PendingStatus.REJECTED.value}
        )
        self._emit(call.tool_name, result, confirmation_id, started, "reject")
        return result
