#!/usr/bin/env python3
"""
MCP server for EVM wallet operations.

Tools are grouped by capability tier (read, prepare, info, transaction);
MCP_ALLOWED_OPERATIONS selects which tiers are advertised. With
MCP_REQUIRE_CONFIRMATION on, transaction-tier calls are parked and answered
with {"error": {"code": "NEED_CONFIRMATION", "confirmationId": ...}}. The
host resolves them through confirm_transaction() / reject_transaction().

Wraps evm_wallet.py as MCP tools via wallet_tools.py.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from pathlib import Path
from typing import Any, List

from dotenv import load_dotenv
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

# Load .env from the server directory, then the user's home directory
SERVER_DIR = Path(__file__).resolve().parent
load_dotenv(SERVER_DIR / ".env")
load_dotenv(Path.home() / ".env")

from invocation_broker import CapabilityConfiguration, InvocationBroker  # noqa: E402
from invocation_result import InvocationResult  # noqa: E402
from observability import configure_logging, get_logger  # noqa: E402
from wallet_tools import build_wallet_registry  # noqa: E402

logger = get_logger(__name__)

app = Server("evm_wallet")

_broker: InvocationBroker | None = None


def build_broker(config: CapabilityConfiguration | None = None) -> InvocationBroker:
    if config is None:
        config = CapabilityConfiguration.from_env()
    registry = build_wallet_registry(config.enabled_tiers)
    return InvocationBroker(registry, config)


def get_broker() -> InvocationBroker:
    global _broker
    if _broker is None:
        _broker = build_broker()
    return _broker


def set_broker(broker: InvocationBroker | None) -> None:
    global _broker
    _broker = broker


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _json_response(result: InvocationResult) -> List[TextContent]:
    return [TextContent(type="text", text=json.dumps(result.to_response(), default=str))]


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


@app.list_tools()
async def list_tools() -> List[Tool]:
    # outputSchema stays out of the MCP Tool: MCP only accepts object-typed
    # output schemas and would then require structured content.
    return [
        Tool(name=t["name"], description=t["description"], inputSchema=t["inputSchema"])
        for t in get_broker().list_tools()
    ]


@app.call_tool(validate_input=False)
async def call_tool(name: str, arguments: Any) -> List[TextContent]:
    result = await get_broker().invoke(name, arguments)
    return _json_response(result)


# ---------------------------------------------------------------------------
# Confirmation surface (host / human-in-the-loop)
# ---------------------------------------------------------------------------


async def confirm_transaction(confirmation_id: str) -> InvocationResult:
    return await get_broker().confirm(confirmation_id)


def reject_transaction(confirmation_id: str) -> InvocationResult:
    return get_broker().reject(confirmation_id)


async def _sweep_expired_periodically(broker: InvocationBroker, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        broker.sweep_expired()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def main() -> None:
    configure_logging()
    broker = get_broker()
    logger.info(
        "server_starting",
        tiers=sorted(t.value for t in broker.config.enabled_tiers),
        require_confirmation=broker.config.require_confirmation,
        tools=len(broker.registry.list_enabled()),
    )

    sweeper = asyncio.create_task(
        _sweep_expired_periodically(broker, broker.config.sweep_interval)
    )
    try:
        async with stdio_server() as (read_stream, write_stream):
            await app.run(read_stream, write_stream, app.create_initialization_options())
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        broker.store.clear()
        logger.info("server_stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
