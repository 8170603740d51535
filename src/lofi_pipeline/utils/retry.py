from __future__ import annotations

import random
import time
from collections.abc import Callable
from contextlib import suppress
from typing import Any


def backoff_delay(attempt: int, *, base: float, cap: float, jitter: bool = False) -> float:
    """
    Delay before retry number `attempt` (1-based): base * 2**(attempt-1), capped.
    """
    delay = min(float(cap), float(base) * (2 ** max(0, int(attempt) - 1)))
    if jitter:
        delay = delay * (0.5 + random.random())
    return max(0.0, float(delay))


def retry_call(
    fn: Callable[[], Any],
    *,
    retries: int = 3,
    base: float = 0.5,
    cap: float = 8.0,
    jitter: bool = True,
    retry_on: Callable[[BaseException], bool] | None = None,
    on_retry: Callable[[int, float, BaseException], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Call fn() with capped exponential backoff (+ optional jitter).

    retries: number of retry attempts (so total calls = 1 + retries)
    retry_on: predicate deciding whether an exception is worth another call;
              exceptions it rejects propagate immediately.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as ex:
            if attempt >= int(retries):
                raise
            if retry_on is not None and not retry_on(ex):
                raise
            attempt += 1
            delay = backoff_delay(attempt, base=base, cap=cap, jitter=jitter)
            if on_retry is not None:
                with suppress(Exception):
                    on_retry(attempt, delay, ex)
            sleep(delay)
