"""
Invocation broker: validates tool calls, then executes or defers them.

Per call: Received -> Validated -> Executed | Deferred | Rejected.

Deferred is only reachable for transaction-tier tools while
require_confirmation is on. The broker creates the pending entry and never
touches it again; confirmation and rejection go through ConfirmationResolver.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from typing import Any

from confirmation import ConfirmationResolver
from invocation_result import ErrorKind, InvocationResult
from observability import EventSink, InvocationEvent, elapsed_ms, get_logger, log_invocation_event
from pending_store import PendingConfirmationStore
from tool_registry import (
    InvalidParametersError,
    Tier,
    ToolDescriptor,
    ToolRegistry,
    UnknownToolError,
    validate_parameters,
)

logger = get_logger(__name__)

DEFAULT_TIERS = frozenset({Tier.READ, Tier.PREPARE, Tier.INFO})
DEFAULT_CONFIRMATION_TTL = 120.0
DEFAULT_SWEEP_INTERVAL = 30.0


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in ("false", "0", "no", "off")


def _env_seconds(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid {name}={raw!r}. Expected a number of seconds.") from exc
    if value <= 0:
        raise ValueError(f"Invalid {name}={raw!r}. Must be greater than zero.")
    return value


@dataclass(frozen=True)
class CapabilityConfiguration:
    """
    Which capability tiers are exposed and whether transactions wait for a
    human.

    Values come from the environment or a .env file:
    - MCP_ALLOWED_OPERATIONS: comma-separated tiers (default "read,prepare,info").
    - MCP_REQUIRE_CONFIRMATION: defer transaction-tier calls (default true).
    - MCP_APPROVAL_TIMEOUT: seconds a pending call stays confirmable (default 120).
    - MCP_SWEEP_INTERVAL: seconds between expiry sweeps in the server (default 30).
    """

    enabled_tiers: frozenset[Tier] = field(default_factory=lambda: DEFAULT_TIERS)
    require_confirmation: bool = True
    confirmation_ttl: float = DEFAULT_CONFIRMATION_TTL
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL

    @classmethod
    def from_env(cls) -> CapabilityConfiguration:
        raw_tiers = os.getenv("MCP_ALLOWED_OPERATIONS")
        if raw_tiers is None or not raw_tiers.strip():
            enabled_tiers = DEFAULT_TIERS
        else:
            enabled_tiers = Tier.parse_many(raw_tiers.split(","))

        return cls(
            enabled_tiers=enabled_tiers,
            require_confirmation=_env_flag("MCP_REQUIRE_CONFIRMATION", True),
            confirmation_ttl=_env_seconds("MCP_APPROVAL_TIMEOUT", DEFAULT_CONFIRMATION_TTL),
            sweep_interval=_env_seconds("MCP_SWEEP_INTERVAL", DEFAULT_SWEEP_INTERVAL),
        )

    def defers(self, descriptor: ToolDescriptor) -> bool:
        return self.require_confirmation and descriptor.tier is Tier.TRANSACTION


class InvocationBroker:
    """
    Owns the pending-confirmation store for its whole lifetime; a new
    broker starts with an empty store.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        config: CapabilityConfiguration,
        store: PendingConfirmationStore | None = None,
        sink: EventSink | None = None,
    ) -> None:
        if registry.enabled_tiers != config.enabled_tiers:
            raise ValueError("Registry tiers do not match the capability configuration.")
        self.registry = registry
        self.config = config
        self.store = store if store is not None else PendingConfirmationStore(config.confirmation_ttl)
        self._sink = sink or log_invocation_event
        self._resolver = ConfirmationResolver(self, self.store)

    def emit(self, event: InvocationEvent) -> None:
        try:
            self._sink(event)
        except Exception:  # noqa: BLE001
            # Sink failures are logged, never surfaced to the caller.
            logger.exception("invocation_sink_failed", tool=event.tool_name)

    def list_tools(self) -> list[dict[str, Any]]:
        return [d.to_listing() for d in self.registry.list_enabled()]

    async def execute(self, descriptor: ToolDescriptor, parameters: dict[str, Any]) -> InvocationResult:
        """Run a validated call against its capability. Failures are returned, never retried."""
        try:
            value = await descriptor.handler(parameters)
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or type(exc).__name__
            logger.error("capability_failed", tool=descriptor.name, error=message)
            return InvocationResult.failure(ErrorKind.CAPABILITY_ERROR, message)
        return InvocationResult.success(value)

    async def invoke(self, tool_name: str, raw_parameters: Any) -> InvocationResult:
        started = time.perf_counter()
        result = await self._invoke(tool_name, raw_parameters)
        self.emit(InvocationEvent(
            tool_name=tool_name,
            outcome=result.outcome,
            duration_ms=elapsed_ms(started),
            confirmation_id=result.confirmation_id,
        ))
        return result

    async def _invoke(self, tool_name: str, raw_parameters: Any) -> InvocationResult:
        try:
            descriptor = self.registry.lookup_enabled(tool_name)
        except UnknownToolError as exc:
            return InvocationResult.failure(ErrorKind.UNKNOWN_TOOL, str(exc))

        try:
            parameters = validate_parameters(descriptor.input_schema, raw_parameters)
        except InvalidParametersError as exc:
            return InvocationResult.failure(ErrorKind.INVALID_PARAMETERS, str(exc))

        if self.config.defers(descriptor):
            confirmation_id = self.store.create(descriptor.name, parameters)
            logger.info("transaction_pending_confirmation", tool=descriptor.name, confirmation_id=confirmation_id)
            return InvocationResult.needs_confirmation(confirmation_id)

        return await self.execute(descriptor, parameters)

    async def confirm(self, confirmation_id: str) -> InvocationResult:
        return await self._resolver.confirm(confirmation_id)

    def reject(self, confirmation_id: str) -> InvocationResult:
        return self._resolver.reject(confirmation_id)

    def sweep_expired(self) -> list[str]:
        expired = self.store.sweep_expired(self.config.confirmation_ttl)
        for confirmation_id in expired:
            logger.info("pending_confirmation_expired", confirmation_id=confirmation_id)
        return expired
