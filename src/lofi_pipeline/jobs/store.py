from __future__ import annotations

import threading
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path
from typing import Any

from sqlitedict import SqliteDict  # type: ignore

from lofi_pipeline.errors import InvalidTransition, JobNotFound
from lofi_pipeline.jobs.models import (
    ALLOWED_TRANSITIONS,
    FailureReason,
    Job,
    JobResult,
    JobStatus,
    now_utc,
)


def _check_transition(job: Job, new: JobStatus) -> None:
    if new not in ALLOWED_TRANSITIONS[job.status]:
        raise InvalidTransition(f"job {job.id}: {job.status.value} -> {new.value} not allowed")


class JobStore:
    """
    Job Record persistence.

    Every mutation is a read-modify-write of the whole record under one lock,
    so readers always see a complete snapshot. State changes go through the
    transition guard; nothing outside this class writes `status`.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        with self._jobs():
            pass

    def _jobs(self) -> SqliteDict:
        # Open/close per operation (safe + avoids cross-thread SQLite handle issues)
        return SqliteDict(str(self.db_path), tablename="jobs", autocommit=True)

    def _mutate(self, id: str, fn: Callable[[Job], bool]) -> Job:
        """
        Apply fn to the stored job; fn returns False to leave the record untouched.
        """
        with self._lock, self._jobs() as db:
            raw = db.get(id)
            if raw is None:
                raise JobNotFound(id)
            job = Job.from_dict(raw)
            if fn(job):
                job.updated_at = now_utc()
                db[id] = job.to_dict()
            return job

    def create(self, job: Job) -> tuple[Job, bool]:
        """
        Insert a new record. If the id already exists the stored job is returned
        unchanged with created=False.
        """
        if job.status != JobStatus.PENDING:
            raise InvalidTransition(f"job {job.id}: new jobs start pending")
        with self._lock, self._jobs() as db:
            raw = db.get(job.id)
            if raw is not None:
                return Job.from_dict(raw), False
            db[job.id] = job.to_dict()
            return job, True

    def get(self, id: str) -> Job | None:
        with self._lock, self._jobs() as db:
            raw = db.get(id)
        if raw is None:
            return None
        return Job.from_dict(raw)

    def require(self, id: str) -> Job:
        job = self.get(id)
        if job is None:
            raise JobNotFound(id)
        return job

    def list(self, limit: int = 100, status: str | JobStatus | None = None) -> list[Job]:
        with self._lock, self._jobs() as db:
            items = list(db.items())

        jobs = [Job.from_dict(v) for _, v in items]
        if status:
            try:
                st = JobStatus(status)
            except ValueError:
                return []
            jobs = [j for j in jobs if j.status == st]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    def begin_attempt(self, id: str, *, message: str = "Starting") -> Job:
        """
        Start a fresh attempt: attempt += 1, progress back to 0.
        Valid from PENDING (first attempt) or PROCESSING (queue-level retry).
        """

        def _fn(job: Job) -> bool:
            _check_transition(job, JobStatus.PROCESSING)
            job.status = JobStatus.PROCESSING
            job.attempt = int(job.attempt) + 1
            job.progress = 0
            job.message = message
            return True

        return self._mutate(id, _fn)

    def record_progress(
        self, id: str, *, attempt: int, percent: float, message: str | None = None
    ) -> Job:
        """
        Persist a progress value for `attempt`.

        Values are clamped to [0, 100]. Reports from a stale attempt, for a job
        that is not processing, or lower than the stored value are ignored.
        """
        pct = int(max(0, min(100, round(float(percent)))))

        def _fn(job: Job) -> bool:
            if job.status != JobStatus.PROCESSING or int(job.attempt) != int(attempt):
                return False
            changed = False
            if pct > int(job.progress):
                job.progress = pct
                changed = True
            if message is not None and pct >= int(job.progress) and message != job.message:
                job.message = message
                changed = True
            return changed

        return self._mutate(id, _fn)

    def set_message(self, id: str, message: str) -> Job:
        def _fn(job: Job) -> bool:
            if job.is_terminal or job.message == message:
                return False
            job.message = message
            return True

        return self._mutate(id, _fn)

    def complete(self, id: str, result: JobResult) -> Job:
        def _fn(job: Job) -> bool:
            _check_transition(job, JobStatus.COMPLETED)
            job.status = JobStatus.COMPLETED
            job.progress = 100
            job.message = "Completed"
            job.result = result
            job.error = None
            return True

        return self._mutate(id, _fn)

    def fail(self, id: str, reason: FailureReason) -> Job:
        def _fn(job: Job) -> bool:
            _check_transition(job, JobStatus.FAILED)
            job.status = JobStatus.FAILED
            job.message = "Failed"
            job.result = None
            job.error = reason
            return True

        return self._mutate(id, _fn)

    def delete_job(self, id: str) -> None:
        if not id:
            return
        with self._lock, self._jobs() as db, suppress(KeyError):
            del db[str(id)]

    def stats(self) -> dict[str, Any]:
        counts = {s.value: 0 for s in JobStatus}
        for j in self.list(limit=1_000_000):
            counts[j.status.value] += 1
        return counts
