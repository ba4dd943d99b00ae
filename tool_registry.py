"""
Tool registry for the EVM wallet MCP server.

Holds one ToolDescriptor per tool name, gated by capability tier:

- read:        no side effects (address, native balance)
- prepare:     builds unsigned or signed artifacts without broadcasting
- info:        read-only lookups against external data (token balances, prices)
- transaction: state-changing operations, confirmation-gated when enabled

Also validates caller-supplied parameters against a tool's JSON input schema
before anything is dispatched.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from jsonschema import Draft202012Validator, SchemaError, ValidationError, validators

ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"
AMOUNT_PATTERN = r"^[0-9]+$"
HEX_DATA_PATTERN = r"^0x([a-fA-F0-9]{2})*$"
TX_HASH_PATTERN = r"^0x[a-fA-F0-9]{64}$"

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class Tier(str, Enum):
    READ = "read"
    PREPARE = "prepare"
    INFO = "info"
    TRANSACTION = "transaction"

    @classmethod
    def parse_many(cls, names: Iterable[str]) -> frozenset[Tier]:
        tiers = set()
        for raw in names:
            name = raw.strip().lower()
            if not name:
                continue
            try:
                tiers.add(cls(name))
            except ValueError as exc:
                allowed = ", ".join(t.value for t in cls)
                raise ValueError(
                    f"Unknown capability tier {raw!r}. Expected one of: {allowed}."
                ) from exc
        return frozenset(tiers)


class ToolRegistryError(Exception):
    """Base class for registry and validation failures."""

    pass


class DuplicateToolError(ToolRegistryError):
    pass


class UnknownToolError(ToolRegistryError):
    pass


class InvalidParametersError(ToolRegistryError):
    """Raised when tool arguments do not match the declared input schema."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    input_schema: dict[str, Any]
    output_schema: dict[str, Any]
    tier: Tier
    handler: ToolHandler

    def to_listing(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
            "outputSchema": self.output_schema,
        }


class ToolRegistry:
    """
    Name -> ToolDescriptor mapping, built once at startup.

    The registry is read-only after startup, so lookups take no lock.
    Registration order is preserved for listings.
    """

    def __init__(self, enabled_tiers: Iterable[Tier]) -> None:
        self.enabled_tiers = frozenset(enabled_tiers)
        self._tools: dict[str, ToolDescriptor] = {}

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def register(self, descriptor: ToolDescriptor) -> None:
        if descriptor.name in self._tools:
            raise DuplicateToolError(f"Tool already registered: {descriptor.name}")
        try:
            ParameterValidator.check_schema(descriptor.input_schema)
        except SchemaError as exc:
            raise ToolRegistryError(f"Invalid input schema for {descriptor.name}: {exc.message}") from exc
        self._tools[descriptor.name] = descriptor

    def is_enabled(self, descriptor: ToolDescriptor) -> bool:
        return descriptor.tier in self.enabled_tiers

    def list_enabled(self) -> list[ToolDescriptor]:
        return [d for d in self._tools.values() if self.is_enabled(d)]

    def lookup(self, name: str) -> ToolDescriptor:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(f"Unknown tool: {name}") from None

    def lookup_enabled(self, name: str) -> ToolDescriptor:
        descriptor = self.lookup(name)
        if not self.is_enabled(descriptor):
            # Disabled tiers are indistinguishable from missing tools.
            raise UnknownToolError(f"Unknown tool: {name}")
        return descriptor


# ---------------------------------------------------------------------------
# Parameter validation
# ---------------------------------------------------------------------------


def _full_pattern(validator, pattern, instance, schema):
    # JSON Schema "pattern" is a search; "$" would accept a trailing newline.
    if validator.is_type(instance, "string") and re.fullmatch(pattern, instance) is None:
        yield ValidationError(f"{instance!r} does not match {pattern!r}")


ParameterValidator = validators.extend(Draft202012Validator, {"pattern": _full_pattern})


def _first_missing(error: ValidationError) -> str | None:
    return next((name for name in error.validator_value if name not in error.instance), None)


def _first_unexpected(error: ValidationError) -> str | None:
    declared = error.schema.get("properties", {})
    return next((name for name in error.instance if name not in declared), None)


def _to_invalid_parameters(error: ValidationError) -> InvalidParametersError:
    kind = error.validator
    if kind == "required":
        name = _first_missing(error)
        return InvalidParametersError(f"Missing {name}.", name)
    if kind == "additionalProperties":
        name = _first_unexpected(error)
        return InvalidParametersError(f"Unexpected parameter: {name}.", name)

    name = str(error.path[0]) if error.path else None
    label = name or "arguments"
    if kind == "type":
        return InvalidParametersError(
            f"Invalid {label}. Expected {error.validator_value}, got {type(error.instance).__name__}.",
            name,
        )
    if kind == "pattern":
        return InvalidParametersError(
            f"Invalid {label}. Value does not match pattern {error.validator_value}.", name
        )
    if kind == "enum":
        choices = ", ".join(str(c) for c in error.validator_value)
        return InvalidParametersError(f"Invalid {label}. Must be one of: {choices}.", name)
    if kind == "minimum":
        return InvalidParametersError(f"Invalid {label}. Must be >= {error.validator_value}.", name)
    if kind == "maximum":
        return InvalidParametersError(f"Invalid {label}. Must be <= {error.validator_value}.", name)
    return InvalidParametersError(f"Invalid {label}. {error.message}", name)


def validate_parameters(schema: dict[str, Any], raw: Any) -> dict[str, Any]:
    """
    Validate tool arguments against the tool's JSON input schema and return
    a copy with declared defaults filled in.

    Explicit nulls are treated as absent. Top-level problems (missing or
    unexpected parameters) are reported before per-field ones.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise InvalidParametersError("Invalid arguments. Expected an object.")

    params = {name: value for name, value in raw.items() if value is not None}
    errors = list(ParameterValidator(schema).iter_errors(params))
    if errors:
        first = min(errors, key=lambda e: (len(e.path), [str(p) for p in e.path]))
        raise _to_invalid_parameters(first)

    properties: dict[str, dict[str, Any]] = schema.get("properties", {})
    for name, field_schema in properties.items():
        if name not in params:
            if "default" in field_schema:
                params[name] = field_schema["default"]
        elif field_schema.get("type") == "integer" and isinstance(params[name], float):
            params[name] = int(params[name])
    return params
