"""
Closed error taxonomy.

Every failure a caller can observe is one of `ErrorCode`. Exceptions carry an
internal `detail` (logged, never shown) and look their user-safe text up from
`SAFE_MESSAGES` by code.
"""

from __future__ import annotations

from enum import Enum

from lofi_pipeline.jobs.models import FailureReason


class ErrorCode(str, Enum):
    INVALID_ARGUMENT = "invalid_argument"
    SOURCE_UNAVAILABLE = "source_unavailable"
    SOURCE_PRIVATE = "source_private"
    SOURCE_RESTRICTED = "source_restricted"
    SOURCE_TOO_LONG = "source_too_long"
    SOURCE_TIMEOUT = "source_timeout"
    STAGE_FAILURE = "stage_failure"
    STAGE_TIMEOUT = "stage_timeout"
    PUBLISH_FAILURE = "publish_failure"
    PROCESSING_FAILED = "processing_failed"


SAFE_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.INVALID_ARGUMENT: "The request was invalid. Check the preset and source.",
    ErrorCode.SOURCE_UNAVAILABLE: "The audio source could not be retrieved.",
    ErrorCode.SOURCE_PRIVATE: "This video is private and cannot be processed.",
    ErrorCode.SOURCE_RESTRICTED: "This video is age-restricted or requires sign-in.",
    ErrorCode.SOURCE_TOO_LONG: "The source is too long to process.",
    ErrorCode.SOURCE_TIMEOUT: "Fetching the source took too long. Please try again.",
    ErrorCode.STAGE_FAILURE: "Audio processing failed. Please try again.",
    ErrorCode.STAGE_TIMEOUT: "Audio processing took too long. Please try again.",
    ErrorCode.PUBLISH_FAILURE: "The finished audio could not be saved. Please try again.",
    ErrorCode.PROCESSING_FAILED: "Audio processing failed. Please try again.",
}

# A retry cannot change these outcomes.
PERMANENT_CODES = frozenset(
    {
        ErrorCode.INVALID_ARGUMENT,
        ErrorCode.SOURCE_PRIVATE,
        ErrorCode.SOURCE_RESTRICTED,
        ErrorCode.SOURCE_TOO_LONG,
    }
)


class LofiError(Exception):
    code: ErrorCode = ErrorCode.PROCESSING_FAILED

    def __init__(self, detail: str = "", *, stage: str | None = None) -> None:
        super().__init__(detail or self.code.value)
        self.detail = str(detail or "")
        self.stage = stage

    @property
    def safe_message(self) -> str:
        return SAFE_MESSAGES[self.code]

    @property
    def retryable(self) -> bool:
        return self.code not in PERMANENT_CODES

    def to_failure(self) -> FailureReason:
        return FailureReason(code=self.code.value, message=self.safe_message, stage=self.stage)


class InvalidArgument(LofiError):
    code = ErrorCode.INVALID_ARGUMENT


class SourceError(LofiError):
    code = ErrorCode.SOURCE_UNAVAILABLE

    def __init__(self, detail: str = "", *, stage: str | None = "acquire") -> None:
        super().__init__(detail, stage=stage)


class SourceUnavailable(SourceError):
    code = ErrorCode.SOURCE_UNAVAILABLE


class SourcePrivate(SourceError):
    code = ErrorCode.SOURCE_PRIVATE


class SourceRestricted(SourceError):
    code = ErrorCode.SOURCE_RESTRICTED


class SourceTooLong(SourceError):
    code = ErrorCode.SOURCE_TOO_LONG


class SourceTimeout(SourceError):
    code = ErrorCode.SOURCE_TIMEOUT


class StageFailure(LofiError):
    code = ErrorCode.STAGE_FAILURE

    def __init__(self, stage: str, detail: str = "") -> None:
        super().__init__(detail, stage=stage)


class StageTimeout(LofiError):
    code = ErrorCode.STAGE_TIMEOUT

    def __init__(self, stage: str, detail: str = "") -> None:
        super().__init__(detail, stage=stage)


class PublishFailure(LofiError):
    code = ErrorCode.PUBLISH_FAILURE

    def __init__(self, detail: str = "", *, stage: str | None = "publish") -> None:
        super().__init__(detail, stage=stage)


class JobNotFound(KeyError):
    pass


class InvalidTransition(RuntimeError):
    pass


def failure_from_exception(ex: BaseException) -> FailureReason:
    if isinstance(ex, LofiError):
        return ex.to_failure()
    return FailureReason(
        code=ErrorCode.PROCESSING_FAILED.value,
        message=SAFE_MESSAGES[ErrorCode.PROCESSING_FAILED],
    )


def is_retryable(ex: BaseException) -> bool:
    if isinstance(ex, LofiError):
        return ex.retryable
    return True
