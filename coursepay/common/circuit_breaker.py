"""Count-based circuit breaker for blocking calls to flaky dependencies."""

import threading
import time
from collections import deque
from enum import Enum
from typing import Callable, TypeVar

from coursepay.common.config import settings
from coursepay.common.logging import logger
from coursepay.common.metrics import circuit_breaker_state


T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE_VALUE = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


class CircuitOpenError(RuntimeError):
    """Raised (and handed to the fallback) when a call is short-circuited."""

    def __init__(self, name: str) -> None:
        super().__init__(f"circuit breaker {name} is OPEN")
        self.name = name


class CircuitBreaker:
    """Circuit breaker with a sliding window of call outcomes.

    CLOSED: calls pass through; once the window holds at least
    `minimum_calls` outcomes and the failure percentage reaches
    `failure_rate_threshold`, the breaker opens.

    OPEN: calls short-circuit without touching the dependency until
    `open_seconds` have elapsed, then the breaker goes HALF_OPEN.

    HALF_OPEN: up to `half_open_max_calls` probes are let through. Any probe
    failure re-opens; once every probe has succeeded the breaker closes with an
    empty window.
    """

    def __init__(
        self,
        name: str,
        failure_rate_threshold: float = 50.0,
        window_size: int = 10,
        minimum_calls: int = 5,
        open_seconds: float = 30.0,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window_size < 1 or minimum_calls < 1 or half_open_max_calls < 1:
            raise ValueError("window_size, minimum_calls and half_open_max_calls must be positive")
        self.name = name
        self.failure_rate_threshold = failure_rate_threshold
        self.window_size = window_size
        self.minimum_calls = min(minimum_calls, window_size)
        self.open_seconds = open_seconds
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._window: deque[bool] = deque(maxlen=window_size)
        self._opened_at: float | None = None
        self._probes_in_flight = 0
        self._probe_successes = 0
        self._lock = threading.Lock()
        self._publish_state()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def failure_rate(self) -> float:
        """Failure percentage over the current window (0 when empty)."""

        with self._lock:
            return self._failure_rate()

    def allow_request(self) -> bool:
        """Reserve permission for one call; False means short-circuit."""

        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                return False
            if self._probes_in_flight + self._probe_successes >= self.half_open_max_calls:
                return False
            self._probes_in_flight += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._probes_in_flight = max(0, self._probes_in_flight - 1)
                self._probe_successes += 1
                if self._probe_successes >= self.half_open_max_calls:
                    self._transition(CircuitState.CLOSED)
                    logger.info("circuit_closed name=%s", self.name)
            elif self._state == CircuitState.CLOSED:
                self._window.append(True)

    def record_failure(self, error: BaseException | None = None) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
                logger.warning("circuit_reopened name=%s error=%s", self.name, error)
                return
            if self._state == CircuitState.OPEN:
                return
            self._window.append(False)
            if len(self._window) >= self.minimum_calls and self._failure_rate() >= self.failure_rate_threshold:
                rate = self._failure_rate()
                self._transition(CircuitState.OPEN)
                logger.warning(
                    "circuit_opened name=%s failure_rate=%.1f window=%s error=%s",
                    self.name,
                    rate,
                    self.window_size,
                    error,
                )

    def call(
        self,
        func: Callable[..., T],
        *args,
        fallback: Callable[[BaseException], T] | None = None,
        **kwargs,
    ) -> T:
        """Run `func` under the breaker.

        Short-circuited calls and failing calls go to `fallback` with the
        triggering exception; without a fallback the exception propagates.
        """

        if not self.allow_request():
            error = CircuitOpenError(self.name)
            if fallback is None:
                raise error
            return fallback(error)
        try:
            result = func(*args, **kwargs)
        except Exception as exc:
            self.record_failure(exc)
            if fallback is None:
                raise
            return fallback(exc)
        self.record_success()
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED with an empty window."""

        with self._lock:
            self._transition(CircuitState.CLOSED)

    def _failure_rate(self) -> float:
        if not self._window:
            return 0.0
        failures = sum(1 for ok in self._window if not ok)
        return failures * 100.0 / len(self._window)

    def _maybe_half_open(self) -> None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return
        elapsed = self._clock() - self._opened_at
        if elapsed >= self.open_seconds:
            self._transition(CircuitState.HALF_OPEN)
            logger.info("circuit_half_open name=%s elapsed=%.1f", self.name, elapsed)

    def _transition(self, new_state: CircuitState) -> None:
        self._state = new_state
        self._probes_in_flight = 0
        self._probe_successes = 0
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        else:
            self._opened_at = None
        if new_state == CircuitState.CLOSED:
            self._window.clear()
        self._publish_state()

    def _publish_state(self) -> None:
        circuit_breaker_state.labels(service=settings.service_name, name=self.name).set(
            _STATE_GAUGE_VALUE[self._state]
        )
