"""Fixed-window request admission, keyed by client identity."""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from makersai.errors import AdmissionRejected

logger = logging.getLogger(__name__)

GENERAL_LIMIT_MESSAGE = "Too many requests from this IP, please try again later."
GENERATION_LIMIT_MESSAGE = "Generation limit reached. Please try again later."


@dataclass(frozen=True)
class Admission:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int = 0


@dataclass
class _Window:
    started_at: float
    count: int = 0


class AdmissionController:
    """Allow at most ``max_requests`` per identity in each ``window_seconds`` window.

    A window opens on an identity's first request and closes ``window_seconds``
    later; the next request after that opens a fresh one. A disabled controller
    admits everything.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        enabled: bool = True,
        message: str = GENERAL_LIMIT_MESSAGE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.enabled = enabled
        self.message = message
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._last_prune = clock()

    def admit(self, client_identity: str) -> Admission:
        if not self.enabled:
            return Admission(allowed=True, limit=self.max_requests, remaining=self.max_requests)

        now = self._clock()
        with self._lock:
            if now - self._last_prune >= self.window_seconds:
                self._drop_stale(now)
            window = self._windows.get(client_identity)
            if window is None or now - window.started_at >= self.window_seconds:
                window = _Window(started_at=now)
                self._windows[client_identity] = window

            if window.count >= self.max_requests:
                remaining_time = window.started_at + self.window_seconds - now
                return Admission(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    retry_after_seconds=max(1, math.ceil(remaining_time)),
                )

            window.count += 1
            return Admission(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - window.count,
            )

    def check(self, client_identity: str) -> Admission:
        """Admit ``client_identity`` or raise :class:`AdmissionRejected`."""
        admission = self.admit(client_identity)
        if not admission.allowed:
            logger.warning(
                "Rate limit exceeded for %s (retry in %ss)",
                client_identity,
                admission.retry_after_seconds,
            )
            raise AdmissionRejected(admission.retry_after_seconds, self.message)
        return admission

    @property
    def tracked_identities(self) -> int:
        with self._lock:
            return len(self._windows)

    def prune(self) -> int:
        """Forget identities whose window has closed.

        ``admit`` also does this at most once per window.
        """
        now = self._clock()
        with self._lock:
            return self._drop_stale(now)

    def _drop_stale(self, now: float) -> int:
        stale = [
            identity
            for identity, window in self._windows.items()
            if now - window.started_at >= self.window_seconds
        ]
        for identity in stale:
            del self._windows[identity]
        self._last_prune = now
        return len(stale)

    def reset(self, client_identity: Optional[str] = None) -> None:
        with self._lock:
            if client_identity is None:
                self._windows.clear()
            else:
                self._windows.pop(client_identity, None)


class LayeredAdmission:
    """Run a request through several controllers; every one must admit it.

    Counters are only consumed up to and including the first rejecting
    controller, matching middleware that stops the chain on rejection.
    """

    def __init__(self, *controllers: AdmissionController) -> None:
        self.controllers = controllers

    def check(self, client_identity: str) -> None:
        for controller in self.controllers:
            controller.check(client_identity)


def build_admission_controllers(settings, clock: Callable[[], float] = time.monotonic):
    """Return ``(general, strict)`` controllers from a :class:`RateLimitSettings`.

    The strict controller gates generation endpoints with half the general budget.
    """
    window_seconds = settings.window_ms / 1000.0
    general = AdmissionController(
        max_requests=settings.max_requests,
        window_seconds=window_seconds,
        enabled=settings.enabled,
        message=GENERAL_LIMIT_MESSAGE,
        clock=clock,
    )
    strict = AdmissionController(
        max_requests=max(1, settings.max_requests // 2),
        window_seconds=window_seconds,
        enabled=settings.enabled,
        message=GENERATION_LIMIT_MESSAGE,
        clock=clock,
    )
    return general, strict
