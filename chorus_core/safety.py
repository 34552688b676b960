import logging
import time
from collections import deque
from typing import Callable, List


class CircuitBreaker:
    """
    Fail closed after repeated failures within a window. While tripped, callers
    are expected to skip the guarded call entirely rather than queue it.
    """

    def __init__(
        self,
        name: str,
        threshold: int = 3,
        window_seconds: float = 60.0,
        cooldown_seconds: float = 120.0,
        clock: Callable[[], float] | None = None,
    ):
        self.name = name
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self.failures: deque[float] = deque()
        self.tripped_until: float = 0.0
        self.reason: str = ""
        self._clock = clock
        self.logger = logging.getLogger(f"chorus.safety.{name}")

    def _now(self) -> float:
        return self._clock() if self._clock else time.time()

    @property
    def tripped(self) -> bool:
        return self._now() < self.tripped_until

    def allow(self) -> bool:
        now = self._now()
        self._prune(now)
        return now >= self.tripped_until

    def record_failure(self, reason: str) -> None:
        now = self._now()
        self.failures.append(now)
        self.reason = reason
        self._prune(now)
        if len(self.failures) >= self.threshold and now >= self.tripped_until:
            self.tripped_until = now + self.cooldown_seconds
            self.logger.warning(
                "[CIRCUIT] %s tripped for %.0fs after %d failures: %s",
                self.name,
                self.cooldown_seconds,
                len(self.failures),
                reason,
            )

    def record_success(self) -> None:
        self._prune(self._now())
        if not self.failures:
            self.reason = ""

    def status(self) -> tuple[bool, str]:
        return self.tripped, self.reason

    def _prune(self, now: float) -> None:
        while self.failures and now - self.failures[0] > self.window_seconds:
            self.failures.popleft()
        if self.tripped_until and now >= self.tripped_until:
            self.tripped_until = 0.0
            self.failures.clear()
            self.reason = ""


def backoff_delays(base_delay: float, attempts: int, cap: float = 300.0) -> List[float]:
    """
    Exponential backoff schedule: base, 2*base, 4*base, ... capped.
    """
    if attempts <= 0:
        return []
    return [min(cap, base_delay * (2 ** i)) for i in range(attempts)]
