from __future__ import annotations

from typing import Protocol

from lofi_pipeline.jobs.store import JobStore
from lofi_pipeline.utils.log import logger


class ProgressSink(Protocol):
    def __call__(self, percent: float, message: str | None = None) -> None: ...


class StoreProgressSink:
    """
    Progress channel from one attempt to its Job Record.

    Bound to (job_id, attempt) at creation, so a report arriving after the
    attempt was superseded is dropped by the store rather than overwriting
    the new attempt's progress.
    """

    def __init__(self, store: JobStore, job_id: str, attempt: int) -> None:
        self.store = store
        self.job_id = job_id
        self.attempt = int(attempt)

    def __call__(self, percent: float, message: str | None = None) -> None:
        job = self.store.record_progress(
            self.job_id, attempt=self.attempt, percent=percent, message=message
        )
        logger.debug(
            "job_progress",
            job_id=self.job_id,
            attempt=self.attempt,
            reported=float(percent),
            stored=int(job.progress),
        )
