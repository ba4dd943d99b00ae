"""
Pending-confirmation store.

Parks validated transaction-tier calls until a human confirms or rejects
them. Each entry moves pending -> confirmed or pending -> rejected exactly
once; a single lock guards the map so two racing transitions on the same id
cannot both win.

The store never schedules its own cleanup. Expired entries are treated as
missing whenever they are accessed, and the owner calls sweep_expired() on
whatever interval it chooses.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable


class PendingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class PendingStoreError(Exception):
    pass


class PendingCallNotFoundError(PendingStoreError):
    def __init__(self, confirmation_id: str) -> None:
        super().__init__(f"Transaction with ID {confirmation_id} not found")
        self.confirmation_id = confirmation_id


class AlreadyResolvedError(PendingStoreError):
    def __init__(self, confirmation_id: str, status: PendingStatus, tool_name: str = "") -> None:
        super().__init__(
            f"Transaction with ID {confirmation_id} was already {status.value}"
        )
        self.confirmation_id = confirmation_id
        self.status = status
        self.tool_name = tool_name


@dataclass
class PendingCall:
    confirmation_id: str
    tool_name: str
    parameters: dict[str, Any]
    status: PendingStatus
    created_at: float
    resolved_at: float | None = None


class PendingConfirmationStore:
    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be greater than zero.")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, PendingCall] = {}
        # Ids evicted recently, kept so a fresh token can never reuse one.
        self._retired: dict[str, float] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _new_id(self) -> str:
        while True:
            confirmation_id = str(uuid.uuid4())
            if confirmation_id not in self._entries and confirmation_id not in self._retired:
                return confirmation_id

    def _is_expired(self, entry: PendingCall, now: float) -> bool:
        return entry.status is PendingStatus.PENDING and now - entry.created_at > self.ttl_seconds

    def _evict(self, confirmation_id: str, now: float) -> None:
        self._entries.pop(confirmation_id, None)
        self._retired[confirmation_id] = now

    def _live_entry(self, confirmation_id: str, now: float) -> PendingCall:
        # Caller must hold the lock.
        entry = self._entries.get(confirmation_id)
        if entry is None:
            raise PendingCallNotFoundError(confirmation_id)
        if self._is_expired(entry, now):
            self._evict(confirmation_id, now)
            raise PendingCallNotFoundError(confirmation_id)
        return entry

    def create(self, tool_name: str, parameters: dict[str, Any]) -> str:
        with self._lock:
            confirmation_id = self._new_id()
            self._entries[confirmation_id] = PendingCall(
                confirmation_id=confirmation_id,
                tool_name=tool_name,
                parameters=dict(parameters),
                status=PendingStatus.PENDING,
                created_at=self._clock(),
            )
            return confirmation_id

    def get(self, confirmation_id: str) -> PendingCall:
        """Return a snapshot of the entry; mutating it does not touch the store."""
        with self._lock:
            entry = self._live_entry(confirmation_id, self._clock())
            return replace(entry, parameters=dict(entry.parameters))

    def transition(self, confirmation_id: str, new_status: PendingStatus) -> PendingCall:
        """
        Move a pending entry to a terminal status.

        Raises PendingCallNotFoundError for unknown or expired ids and
        AlreadyResolvedError if the entry already left `pending`. Returns a
        snapshot of the resolved call so the caller can act on its parameters.
        """
        if new_status is PendingStatus.PENDING:
            raise ValueError("Cannot transition an entry back to pending.")

        with self._lock:
            now = self._clock()
            entry = self._live_entry(confirmation_id, now)
            if entry.status is not PendingStatus.PENDING:
                raise AlreadyResolvedError(confirmation_id, entry.status, entry.tool_name)
            entry.status = new_status
            entry.resolved_at = now
            return replace(entry, parameters=dict(entry.parameters))

    def sweep_expired(self, max_age: float | None = None) -> list[str]:
        """
        Drop pending entries older than max_age and return their ids.

        Terminal entries resolved more than max_age ago are dropped as well
        (not reported), as are retired ids older than max_age.
        """
        if max_age is None:
            max_age = self.ttl_seconds

        expired: list[str] = []
        with self._lock:
            now = self._clock()
            for confirmation_id, entry in list(self._entries.items()):
                if entry.status is PendingStatus.PENDING:
                    if now - entry.created_at > max_age:
                        expired.append(confirmation_id)
                        self._evict(confirmation_id, now)
                elif entry.resolved_at is not None and now - entry.resolved_at > max_age:
                    self._evict(confirmation_id, now)

            for confirmation_id, retired_at in list(self._retired.items()):
                if now - retired_at > max_age:
                    del self._retired[confirmation_id]

        return expired

    def clear(self) -> None:
        with self._lock:
            now = self._clock()
            for confirmation_id in list(self._entries):
                self._evict(confirmation_id, now)
