"""Result type shared by the invocation broker and the confirmation resolver."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    UNKNOWN_TOOL = "UNKNOWN_TOOL"
    INVALID_PARAMETERS = "INVALID_PARAMETERS"
    NEEDS_CONFIRMATION = "NEED_CONFIRMATION"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_RESOLVED = "ALREADY_RESOLVED"
    CAPABILITY_ERROR = "CAPABILITY_ERROR"
    DUPLICATE_TOOL = "DUPLICATE_TOOL"


@dataclass(frozen=True)
class InvocationResult:
    """
    Outcome of a tool call, confirmation or rejection.

    Exactly one of three shapes:
    - ok=True with a value
    - ok=False with error_kind and message
    - ok=False with error_kind=NEEDS_CONFIRMATION and confirmation_id

    NEEDS_CONFIRMATION is a deferred-execution signal, not a failure: every
    caller has to surface the confirmation id.
    """

    ok: bool
    value: Any = None
    error_kind: ErrorKind | None = None
    message: str | None = None
    confirmation_id: str | None = None

    @classmethod
    def success(cls, value: Any) -> InvocationResult:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> InvocationResult:
        if kind is ErrorKind.NEEDS_CONFIRMATION:
            raise ValueError("Use InvocationResult.needs_confirmation() for deferred calls.")
        return cls(ok=False, error_kind=kind, message=message)

    @classmethod
    def needs_confirmation(cls, confirmation_id: str) -> InvocationResult:
        return cls(
            ok=False,
            error_kind=ErrorKind.NEEDS_CONFIRMATION,
            confirmation_id=confirmation_id,
        )

    @property
    def outcome(self) -> str:
        if self.ok:
            return "ok"
        if self.error_kind is ErrorKind.NEEDS_CONFIRMATION:
            return "needs_confirmation"
        return self.error_kind.value.lower()

    def to_response(self) -> dict[str, Any]:
        """Render the tool-call wire response."""
        if self.ok:
            return {"result": self.value}
        if self.error_kind is ErrorKind.NEEDS_CONFIRMATION:
            return {
                "error": {
                    "code": ErrorKind.NEEDS_CONFIRMATION.value,
                    "confirmationId": self.confirmation_id,
                }
            }
        return {"error": {"code": self.error_kind.value, "message": self.message}}
