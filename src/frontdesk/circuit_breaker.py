"""Failure gate for the backend, recorder and model HTTP clients.

Each client owns one breaker. Once a dependency has failed
``failure_threshold`` times in a row, ``should_try`` answers False and the
client serves its local fallback instead. When ``cooldown_seconds`` have
passed a single trial request is allowed; its outcome either resets the
gate or starts another cooldown.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreaker:
    failure_threshold: int = 3
    cooldown_seconds: float = 30.0
    label: str = "service"

    _failures: int = field(default=0, init=False, repr=False)
    _tripped_at: Optional[float] = field(default=None, init=False, repr=False)

    def should_try(self) -> bool:
        if self._failures < self.failure_threshold:
            return True
        return self._tripped_at is not None and time.monotonic() - self._tripped_at >= self.cooldown_seconds

    def record_success(self) -> None:
        if self._tripped_at is not None:
            logger.info("%s reachable again, resuming calls", self.label)
        self._failures = 0
        self._tripped_at = None

    def record_failure(self) -> None:
        self._failures += 1
        if self._failures >= self.failure_threshold:
            # Also re-arms the cooldown when the trial request fails.
            self._tripped_at = time.monotonic()
            logger.warning(
                "%s failed %d times in a row; using fallback for the next %.0fs",
                self.label,
                self._failures,
                self.cooldown_seconds,
            )
