from __future__ import annotations

import time
from collections.abc import Callable

from lofi_pipeline.errors import StageTimeout


class Deadline:
    """
    Wall-clock ceiling for one pipeline attempt.

    Worker threads cannot be interrupted, so the ceiling is enforced by
    shrinking every subprocess timeout to the time that is left. A stage
    that would start with no time left raises `StageTimeout` instead.
    """

    def __init__(
        self, seconds: float | None, *, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._clock = clock
        self.seconds = float(seconds) if seconds is not None else None
        self._t0 = clock()

    def elapsed(self) -> float:
        return max(0.0, self._clock() - self._t0)

    def remaining(self) -> float | None:
        if self.seconds is None:
            return None
        return self.seconds - self.elapsed()

    def expired(self) -> bool:
        rem = self.remaining()
        return rem is not None and rem <= 0

    def bound(self, stage: str, timeout_s: float) -> float:
        rem = self.remaining()
        if rem is None:
            return float(timeout_s)
        if rem <= 0:
            raise StageTimeout(stage, f"attempt deadline of {self.seconds}s exceeded")
        return min(float(timeout_s), rem)


def unbounded() -> Deadline:
    return Deadline(None)
