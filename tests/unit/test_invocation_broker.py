import asyncio
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from invocation_broker import CapabilityConfiguration, InvocationBroker  # noqa: E402
from invocation_result import ErrorKind, InvocationResult  # noqa: E402
from pending_store import PendingConfirmationStore, PendingStatus  # noqa: E402
from tool_registry import (  # noqa: E402
    ADDRESS_PATTERN,
    AMOUNT_PATTERN,
    Tier,
    ToolDescriptor,
    ToolRegistry,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class CountingCapability:
    """Async test double that records every call it receives."""

    def __init__(self, result=None, error=None):
        self.calls = []
        self.result = result
        self.error = error

    async def __call__(self, params):
        self.calls.append(params)
        if self.error is not None:
            raise self.error
        return self.result


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


TX_HASH = "0x" + "cd" * 32
TO = "0x" + "12" * 20

SEND_SCHEMA = {
    "type": "object",
    "properties": {
        "to": {"type": "string", "pattern": ADDRESS_PATTERN},
        "value": {"type": "string", "pattern": AMOUNT_PATTERN},
        "data": {"type": "string"},
    },
    "required": ["to", "value"],
    "additionalProperties": False,
}
EMPTY_SCHEMA = {"type": "object", "properties": {}, "additionalProperties": False}


def _make_broker(
    tiers=(Tier.READ, Tier.TRANSACTION),
    require_confirmation=True,
    send_error=None,
    ttl=120.0,
):
    capabilities = {
        "getBalance": CountingCapability(result="5000"),
        "signTransaction": CountingCapability(result={"signedTransaction": "0xf86c"}),
        "getTokenPrice": CountingCapability(result={"price": "3500"}),
        "sendTransaction": CountingCapability(
            result={"transactionHash": TX_HASH}, error=send_error
        ),
    }
    config = CapabilityConfiguration(
        enabled_tiers=frozenset(tiers),
        require_confirmation=require_confirmation,
        confirmation_ttl=ttl,
    )
    registry = ToolRegistry(config.enabled_tiers)
    registry.register(ToolDescriptor(
        "wallet_getBalance", "balance", EMPTY_SCHEMA, {"type": "string"},
        Tier.READ, capabilities["getBalance"],
    ))
    registry.register(ToolDescriptor(
        "wallet_signTransaction", "sign", SEND_SCHEMA, {"type": "object"},
        Tier.PREPARE, capabilities["signTransaction"],
    ))
    registry.register(ToolDescriptor(
        "wallet_getTokenPrice", "price", EMPTY_SCHEMA, {"type": "object"},
        Tier.INFO, capabilities["getTokenPrice"],
    ))
    registry.register(ToolDescriptor(
        "wallet_sendTransaction", "send", SEND_SCHEMA, {"type": "object"},
        Tier.TRANSACTION, capabilities["sendTransaction"],
    ))

    clock = FakeClock()
    events = []
    broker = InvocationBroker(
        registry,
        config,
        store=PendingConfirmationStore(ttl_seconds=ttl, clock=clock),
        sink=events.append,
    )
    return broker, capabilities, clock, events


def _send_params(value="1000000000000000"):
    return {"to": TO, "value": value}


# ---------------------------------------------------------------------------
# invoke
# ---------------------------------------------------------------------------


def test_read_tool_returns_value_directly():
    broker, caps, _, _ = _make_broker()

    result = asyncio.run(broker.invoke("wallet_getBalance", {}))

    assert result == InvocationResult.success("5000")
    assert result.to_response() == {"result": "5000"}
    assert len(caps["getBalance"].calls) == 1


def test_non_transaction_tiers_never_need_confirmation():
    broker, _, _, _ = _make_broker(tiers=set(Tier))

    for name, params in [
        ("wallet_getBalance", {}),
        ("wallet_signTransaction", _send_params()),
        ("wallet_getTokenPrice", {}),
    ]:
        result = asyncio.run(broker.invoke(name, params))
        assert result.ok, name
        assert result.error_kind is not ErrorKind.NEEDS_CONFIRMATION
    assert len(broker.store) == 0


def test_transaction_tool_is_deferred():
    broker, caps, _, _ = _make_broker()

    result = asyncio.run(broker.invoke("wallet_sendTransaction", _send_params()))

    assert result.ok is False
    assert result.error_kind is ErrorKind.NEEDS_CONFIRMATION
    assert result.to_response() == {
        "error": {"code": "NEED_CONFIRMATION", "confirmationId": result.confirmation_id}
    }
    entry = broker.store.get(result.confirmation_id)
    assert entry.status is PendingStatus.PENDING
    assert entry.parameters == _send_params()
    assert caps["sendTransaction"].calls == []


def test_transaction_tool_runs_immediately_without_confirmation_flag():
    broker, caps, _, _ = _make_broker(require_confirmation=False)

    result = asyncio.run(broker.invoke("wallet_sendTransaction", _send_params()))

    assert result.ok
    assert result.value == {"transactionHash": TX_HASH}
    assert len(caps["sendTransaction"].calls) == 1
    assert len(broker.store) == 0


def test_unknown_tool():
    broker, _, _, _ = _make_broker()

    result = asyncio.run(broker.invoke("wallet_selfDestruct", {}))

    assert result.error_kind is ErrorKind.UNKNOWN_TOOL
    assert result.to_response()["error"]["code"] == "UNKNOWN_TOOL"


def test_disabled_tier_is_unknown_tool():
    broker, caps, _, _ = _make_broker(tiers=(Tier.READ,))

    result = asyncio.run(broker.invoke("wallet_sendTransaction", _send_params()))

    assert result.error_kind is ErrorKind.UNKNOWN_TOOL
    assert caps["sendTransaction"].calls == []
    assert [t["name"] for t in broker.list_tools()] == ["wallet_getBalance"]


@pytest.mark.parametrize(
    "params",
    [
        {"to": TO},
        {"value": "1"},
        {"to": "0x1234", "value": "1"},
        {"to": TO, "value": "abc"},
        {"to": TO + "\n", "value": "1"},
        {"to": TO, "value": "1000\n"},
        {"to": TO, "value": "1", "extra": True},
        "not-an-object",
    ],
)
def test_invalid_parameters_never_reach_capability(params):
    broker, caps, _, _ = _make_broker(require_confirmation=False)

    result = asyncio.run(broker.invoke("wallet_sendTransaction", params))

    assert result.error_kind is ErrorKind.INVALID_PARAMETERS
    assert result.message
    assert caps["sendTransaction"].calls == []


def test_invalid_amount_creates_no_pending_call():
    broker, _, _, _ = _make_broker()

    result = asyncio.run(broker.invoke("wallet_sendTransaction", _send_params("abc")))

    assert result.error_kind is ErrorKind.INVALID_PARAMETERS
    assert "value" in result.message
    assert len(broker.store) == 0


def test_trailing_newline_amount_creates_no_pending_call():
    broker, caps, _, _ = _make_broker()

    result = asyncio.run(broker.invoke("wallet_sendTransaction", _send_params("1000\n")))

    assert result.error_kind is ErrorKind.INVALID_PARAMETERS
    assert len(broker.store) == 0
    assert caps["sendTransaction"].calls == []


def test_capability_error_is_surfaced_verbatim():
    broker, caps, _, _ = _make_broker(
        require_confirmation=False, send_error=RuntimeError("insufficient funds for gas")
    )

    result = asyncio.run(broker.invoke("wallet_sendTransaction", _send_params()))

    assert result.to_response() == {
        "error": {"code": "CAPABILITY_ERROR", "message": "insufficient funds for gas"}
    }
    assert len(caps["sendTransaction"].calls) == 1


def test_every_invocation_emits_an_event():
    broker, _, _, events = _make_broker()

    asyncio.run(broker.invoke("wallet_getBalance", {}))
    deferred = asyncio.run(broker.invoke("wallet_sendTransaction", _send_params()))
    asyncio.run(broker.invoke("wallet_missing", {}))

    assert [(e.tool_name, e.outcome) for e in events] == [
        ("wallet_getBalance", "ok"),
        ("wallet_sendTransaction", "needs_confirmation"),
        ("wallet_missing", "unknown_tool"),
    ]
    assert events[1].confirmation_id == deferred.confirmation_id
    assert all(e.duration_ms >= 0 for e in events)


def test_failing_sink_does_not_change_outcome():
    broker, _, _, _ = _make_broker()

    def broken_sink(event):
        raise RuntimeError("collector down")

    broker._sink = broken_sink
    result = asyncio.run(broker.invoke("wallet_getBalance", {}))
    assert result.ok


def test_list_tools_is_idempotent_and_ordered():
    broker, _, _, _ = _make_broker(tiers=set(Tier))

    first = broker.list_tools()
    assert first == broker.list_tools()
    assert [t["name"] for t in first] == [
        "wallet_getBalance",
        "wallet_signTransaction",
        "wallet_getTokenPrice",
        "wallet_sendTransaction",
    ]


def test_registry_and_config_tiers_must_match():
    config = CapabilityConfiguration(enabled_tiers=frozenset({Tier.READ}))
    with pytest.raises(ValueError):
        InvocationBroker(ToolRegistry({Tier.READ, Tier.INFO}), config)


# ---------------------------------------------------------------------------
# confirm / reject
# ---------------------------------------------------------------------------


def test_confirm_executes_once_then_already_resolved():
    broker, caps, _, _ = _make_broker()
    deferred = asyncio.run(broker.invoke("wallet_sendTransaction", _send_params()))

    first = asyncio.run(broker.confirm(deferred.confirmation_id))
    second = asyncio.run(broker.confirm(deferred.confirmation_id))

    assert first.ok
    assert first.value == {"transactionHash": TX_HASH}
    assert caps["sendTransaction"].calls == [_send_params()]
    assert second.error_kind is ErrorKind.ALREADY_RESOLVED


def test_concurrent_confirms_execute_once():
    broker, caps, _, _ = _make_broker()
    deferred = asyncio.run(broker.invoke("wallet_sendTransaction", _send_params()))

    async def race():
        return await asyncio.gather(
            broker.confirm(deferred.confirmation_id),
            broker.confirm(deferred.confirmation_id),
        )

    results = asyncio.run(race())
    assert sorted(r.ok for r in results) == [False, True]
    assert [r.error_kind for r in results if not r.ok] == [ErrorKind.ALREADY_RESOLVED]
    assert len(caps["sendTransaction"].calls) == 1


def test_reject_after_confirm_and_confirm_after_reject():
    broker, caps, _, _ = _make_broker()
    a = asyncio.run(broker.invoke("wallet_sendTransaction", _send_params()))
    b = asyncio.run(broker.invoke("wallet_sendTransaction", _send_params()))

    asyncio.run(broker.confirm(a.confirmation_id))
    assert broker.reject(a.confirmation_id).error_kind is ErrorKind.ALREADY_RESOLVED

    rejected = broker.reject(b.confirmation_id)
    assert rejected.ok
    assert rejected.value == {"confirmationId": b.confirmation_id, "status": "rejected"}
    assert asyncio.run(broker.confirm(b.confirmation_id)).error_kind is ErrorKind.ALREADY_RESOLVED
    assert broker.reject(b.confirmation_id).error_kind is ErrorKind.ALREADY_RESOLVED
    assert len(caps["sendTransaction"].calls) == 1


def test_confirm_and_reject_unknown_id():
    broker, _, _, _ = _make_broker()

    assert asyncio.run(broker.confirm("no-such-id")).error_kind is ErrorKind.NOT_FOUND
    assert broker.reject("no-such-id").error_kind is ErrorKind.NOT_FOUND


def test_confirm_after_expiry_is_not_found():
    broker, caps, clock, _ = _make_broker(ttl=120.0)
    deferred = asyncio.run(broker.invoke("wallet_sendTransaction", _send_params()))

    clock.now += 121
    result = asyncio.run(broker.confirm(deferred.confirmation_id))

    assert result.error_kind is ErrorKind.NOT_FOUND
    assert broker.reject(deferred.confirmation_id).error_kind is ErrorKind.NOT_FOUND
    assert caps["sendTransaction"].calls == []


def test_failed_confirmed_call_is_not_rearmed():
    broker, caps, _, _ = _make_broker(send_error=RuntimeError("nonce too low"))
    deferred = asyncio.run(broker.invoke("wallet_sendTransaction", _send_params()))

    first = asyncio.run(broker.confirm(deferred.confirmation_id))
    retry = asyncio.run(broker.confirm(deferred.confirmation_id))

    assert first.error_kind is ErrorKind.CAPABILITY_ERROR
    assert first.message == "nonce too low"
    assert retry.error_kind is ErrorKind.ALREADY_RESOLVED
    assert broker.store.get(deferred.confirmation_id).status is PendingStatus.CONFIRMED
    assert len(caps["sendTransaction"].calls) == 1


def test_confirm_and_reject_emit_events():
    broker, _, _, events = _make_broker()
    deferred = asyncio.run(broker.invoke("wallet_sendTransaction", _send_params()))
    events.clear()

    asyncio.run(broker.confirm(deferred.confirmation_id))
    broker.reject(deferred.confirmation_id)

    assert [(e.phase, e.tool_name, e.outcome) for e in events] == [
        ("confirm", "wallet_sendTransaction", "ok"),
        ("reject", "wallet_sendTransaction", "already_resolved"),
    ]


def test_unknown_id_events_use_placeholder_tool_name():
    broker, _, _, events = _make_broker()

    asyncio.run(broker.confirm("no-such-id"))
    broker.reject("no-such-id")

    assert [(e.phase, e.tool_name, e.outcome, e.confirmation_id) for e in events] == [
        ("confirm", "<unknown>", "not_found", "no-such-id"),
        ("reject", "<unknown>", "not_found", "no-such-id"),
    ]


def test_sweep_expired_uses_configured_ttl():
    broker, _, clock, _ = _make_broker(ttl=30.0)
    deferred = asyncio.run(broker.invoke("wallet_sendTransaction", _send_params()))

    assert broker.sweep_expired() == []
    clock.now += 31
    assert broker.sweep_expired() == [deferred.confirmation_id]
    assert len(broker.store) == 0


# ---------------------------------------------------------------------------
# End-to-end scenario
# ---------------------------------------------------------------------------


def test_read_then_send_with_confirmation_scenario():
    broker, caps, _, _ = _make_broker(tiers=(Tier.READ, Tier.TRANSACTION))

    balance = asyncio.run(broker.invoke("wallet_getBalance", {}))
    assert balance.ok and balance.confirmation_id is None

    deferred = asyncio.run(broker.invoke(
        "wallet_sendTransaction", {"to": "0x" + "a1" * 20, "value": "1000000000000000"}
    ))
    assert deferred.error_kind is ErrorKind.NEEDS_CONFIRMATION

    confirmed = asyncio.run(broker.confirm(deferred.confirmation_id))
    assert confirmed.value["transactionHash"] == TX_HASH

    again = asyncio.run(broker.confirm(deferred.confirmation_id))
    assert again.error_kind is ErrorKind.ALREADY_RESOLVED
    assert len(caps["sendTransaction"].calls) == 1


# ---------------------------------------------------------------------------
# CapabilityConfiguration
# ---------------------------------------------------------------------------


def test_configuration_defaults(monkeypatch):
    for name in ("MCP_ALLOWED_OPERATIONS", "MCP_REQUIRE_CONFIRMATION", "MCP_APPROVAL_TIMEOUT", "MCP_SWEEP_INTERVAL"):
        monkeypatch.delenv(name, raising=False)

    config = CapabilityConfiguration.from_env()

    assert config.enabled_tiers == {Tier.READ, Tier.PREPARE, Tier.INFO}
    assert config.require_confirmation is True
    assert config.confirmation_ttl == 120.0
    assert config.sweep_interval == 30.0


def test_configuration_from_env(monkeypatch):
    monkeypatch.setenv("MCP_ALLOWED_OPERATIONS", "read, transaction")
    monkeypatch.setenv("MCP_REQUIRE_CONFIRMATION", "false")
    monkeypatch.setenv("MCP_APPROVAL_TIMEOUT", "45")

    config = CapabilityConfiguration.from_env()

    assert config.enabled_tiers == {Tier.READ, Tier.TRANSACTION}
    assert config.require_confirmation is False
    assert config.confirmation_ttl == 45.0


def test_configuration_rejects_unknown_tier(monkeypatch):
    monkeypatch.setenv("MCP_ALLOWED_OPERATIONS", "read,admin")
    with pytest.raises(ValueError, match="admin"):
        CapabilityConfiguration.from_env()


def test_configuration_rejects_bad_timeout(monkeypatch):
    monkeypatch.setenv("MCP_ALLOWED_OPERATIONS", "read")
    monkeypatch.setenv("MCP_APPROVAL_TIMEOUT", "-5")
    with pytest.raises(ValueError, match="MCP_APPROVAL_TIMEOUT"):
        CapabilityConfiguration.from_env()
