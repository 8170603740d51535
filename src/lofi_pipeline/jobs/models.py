from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SourceKind(str, Enum):
    UPLOAD = "upload"
    REMOTE_URL = "remote_url"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# Forward-only lifecycle. PROCESSING -> PROCESSING is a queue-level retry
# (attempt increments, progress resets); nothing ever returns to PENDING.
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def now_utc() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def _enum_value(v: Any) -> str:
    s = str(v.value if isinstance(v, Enum) else v)
    # Older records may carry "JobStatus.PENDING"-style strings.
    if "." in s and s.split(".", 1)[0] in {"JobStatus", "SourceKind"}:
        s = s.split(".", 1)[1].lower()
    return s


@dataclass(frozen=True, slots=True)
class JobResult:
    mp3_url: str
    wav_url: str

    def to_dict(self) -> dict[str, str]:
        return {"mp3_url": self.mp3_url, "wav_url": self.wav_url}


@dataclass(frozen=True, slots=True)
class FailureReason:
    """Taxonomy code plus a user-safe message; never raw internal error text."""

    code: str
    message: str
    stage: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "stage": self.stage}


@dataclass(slots=True)
class Job:
    id: str
    source_kind: SourceKind
    source_ref: str
    preset: str
    status: JobStatus
    created_at: str
    updated_at: str
    progress: int = 0
    attempt: int = 0
    message: str = ""
    result: JobResult | None = None
    error: FailureReason | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["source_kind"] = self.source_kind.value
        d["status"] = self.status.value
        d["result"] = self.result.to_dict() if self.result else None
        d["error"] = self.error.to_dict() if self.error else None
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Job:
        dd = dict(d)
        dd.setdefault("progress", 0)
        dd.setdefault("attempt", 0)
        dd.setdefault("message", "")
        dd["source_kind"] = SourceKind(_enum_value(dd["source_kind"]))
        dd["status"] = JobStatus(_enum_value(dd["status"]))
        res = dd.get("result")
        dd["result"] = JobResult(**res) if isinstance(res, dict) else None
        err = dd.get("error")
        dd["error"] = FailureReason(**err) if isinstance(err, dict) else None
        return cls(**dd)

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            job_id=self.id,
            status=self.status,
            progress=int(self.progress),
            attempt=int(self.attempt),
            preset=self.preset,
            source_kind=self.source_kind,
            message=self.message,
            result=self.result,
            error=self.error,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@dataclass(frozen=True, slots=True)
class JobSnapshot:
    """
    Read-only view handed to pollers.

    Carries no source reference or filesystem path.
    """

    job_id: str
    status: JobStatus
    progress: int
    attempt: int
    preset: str
    source_kind: SourceKind
    message: str
    result: JobResult | None
    error: FailureReason | None
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "job_id": self.job_id,
            "status": self.status.value,
            "progress": self.progress,
            "attempt": self.attempt,
            "preset": self.preset,
            "source_kind": self.source_kind.value,
            "message": self.message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.result is not None:
            out["result"] = self.result.to_dict()
        if self.error is not None:
            out["error"] = self.error.to_dict()
        return out
