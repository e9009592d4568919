"""Per-channel admission budget for plugin-to-host messages."""

from __future__ import annotations

import math
import time
from collections.abc import Callable


class AdmissionBudget:
    """Refilling allowance of inbound messages for one bridge channel.

    Credit accrues continuously at ``per_second`` up to ``burst``; a message
    is admitted when a whole credit is available. ``admitted`` and
    ``rejected`` count decisions over the channel's lifetime.
    """

    def __init__(
        self,
        per_second: float,
        burst: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.per_second = per_second
        self.burst = max(burst, 1)
        self.admitted = 0
        self.rejected = 0
        self._clock = clock
        self._credit = float(self.burst)
        self._stamp = clock()

    @property
    def available(self) -> float:
        self._accrue()
        return self._credit

    def try_spend(self) -> bool:
        self._accrue()
        if self._credit < 1.0:
            self.rejected += 1
            return False
        self._credit -= 1.0
        self.admitted += 1
        return True

    def retry_after(self) -> float:
        """Seconds until the next message would be admitted."""
        missing = 1.0 - self.available
        if missing <= 0:
            return 0.0
        if self.per_second <= 0:
            return math.inf
        return missing / self.per_second

    def _accrue(self) -> None:
        now = self._clock()
        earned = (now - self._stamp) * self.per_second
        self._credit = min(float(self.burst), self._credit + earned)
        self._stamp = now
