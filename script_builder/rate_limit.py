"""In-memory admission control for the generation endpoint.

Each client (keyed by network address) gets a sliding-window request budget
and a minimum spacing between admitted requests. Time is always supplied by
the caller in epoch milliseconds, so the controller never reads the clock.
"""
from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import TYPE_CHECKING, Deque, Dict, Optional

if TYPE_CHECKING:
    from script_builder.config import Settings

UNKNOWN_CLIENT = "unknown"


class RejectionReason(str, Enum):
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"


@dataclass(frozen=True)
class AdmissionResult:
    """Outcome of a single admission check."""

    admitted: bool
    reason: Optional[RejectionReason] = None
    retry_after_seconds: Optional[int] = None

    @classmethod
    def admit(cls) -> "AdmissionResult":
        return cls(admitted=True)

    @classmethod
    def reject(
        cls, reason: RejectionReason, retry_after_seconds: Optional[int] = None
    ) -> "AdmissionResult":
        return cls(admitted=False, reason=reason, retry_after_seconds=retry_after_seconds)


@dataclass
class ClientState:
    identifier: str
    last_seen: int
    recent_requests: Deque[int] = field(default_factory=deque)
    last_request_at: Optional[int] = None


class AdmissionController:
    """Per-client sliding-window limiter with a cooldown between requests.

    Stale clients are purged by an inline sweep once the table reaches
    ``sweep_threshold`` entries; there is no background task.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_ms: int = 10 * 60 * 1000,
        cooldown_ms: int = 3 * 1000,
        sweep_threshold: int = 500,
    ) -> None:
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.cooldown_ms = cooldown_ms
        self.sweep_threshold = sweep_threshold
        self._clients: Dict[str, ClientState] = {}
        self._lock = Lock()

    @classmethod
    def from_settings(cls, settings: "Settings") -> "AdmissionController":
        return cls(
            max_requests=settings.rate_limit_max_requests,
            window_ms=settings.rate_limit_window_seconds * 1000,
            cooldown_ms=settings.rate_limit_cooldown_seconds * 1000,
            sweep_threshold=settings.rate_limit_sweep_threshold,
        )

    def check(self, identifier: str, now: int) -> AdmissionResult:
        """Admit or reject one request from ``identifier`` at time ``now``.

        An admitted request is recorded against the client's budget.
        Cooldown is checked before the window count, so at most one reason
        is ever reported.
        """

        identifier = identifier or UNKNOWN_CLIENT
        with self._lock:
            self._sweep_locked(now)

            state = self._clients.get(identifier)
            if state is None:
                state = ClientState(identifier=identifier, last_seen=now)
                self._clients[identifier] = state
            state.last_seen = now

            recent = state.recent_requests
            while recent and now - recent[0] >= self.window_ms:
                recent.popleft()

            if state.last_request_at is not None:
                elapsed = now - state.last_request_at
                if elapsed < self.cooldown_ms:
                    wait = math.ceil((self.cooldown_ms - elapsed) / 1000)
                    return AdmissionResult.reject(RejectionReason.COOLDOWN_ACTIVE, wait)

            if len(recent) >= self.max_requests:
                return AdmissionResult.reject(RejectionReason.RATE_LIMIT_EXCEEDED)

            recent.append(now)
            state.last_request_at = now
            return AdmissionResult.admit()

    def sweep(self, now: int) -> int:
        """Run the eviction sweep and return the number of clients removed."""

        with self._lock:
            return self._sweep_locked(now)

    def _sweep_locked(self, now: int) -> int:
        if len(self._clients) < self.sweep_threshold:
            return 0
        horizon = self.window_ms * 2
        stale = [key for key, state in self._clients.items() if now - state.last_seen > horizon]
        for key in stale:
            del self._clients[key]
        return len(stale)

    def get_state(self, identifier: str) -> Optional[ClientState]:
        return self._clients.get(identifier)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._clients

    def __len__(self) -> int:
        return len(self._clients)
