from __future__ import annotations

import pytest

from lofi_pipeline.errors import (
    SAFE_MESSAGES,
    ErrorCode,
    InvalidArgument,
    PublishFailure,
    SourcePrivate,
    SourceRestricted,
    SourceTimeout,
    SourceTooLong,
    SourceUnavailable,
    StageFailure,
    StageTimeout,
    failure_from_exception,
    is_retryable,
)


def test_every_code_has_a_safe_message() -> None:
    assert set(SAFE_MESSAGES) == set(ErrorCode)


@pytest.mark.parametrize(
    ("ex", "code", "retryable"),
    [
        (InvalidArgument("bad preset"), "invalid_argument", False),
        (SourcePrivate("x"), "source_private", False),
        (SourceRestricted("x"), "source_restricted", False),
        (SourceTooLong("x"), "source_too_long", False),
        (SourceUnavailable("x"), "source_unavailable", True),
        (SourceTimeout("x"), "source_timeout", True),
        (StageFailure("encode", "x"), "stage_failure", True),
        (StageTimeout("transform", "x"), "stage_timeout", True),
        (PublishFailure("x"), "publish_failure", True),
    ],
)
def test_taxonomy(ex: Exception, code: str, retryable: bool) -> None:
    reason = failure_from_exception(ex)
    assert reason.code == code
    assert is_retryable(ex) is retryable


def test_failure_reason_hides_detail() -> None:
    ex = StageFailure("encode", "ffmpeg failed argv=['/srv/work/job/transformed.wav']")
    reason = failure_from_exception(ex)
    assert reason.stage == "encode"
    assert "/srv" not in reason.message
    assert reason.message == SAFE_MESSAGES[ErrorCode.STAGE_FAILURE]


def test_source_errors_default_to_acquire_stage() -> None:
    assert failure_from_exception(SourceTimeout("x")).stage == "acquire"
    assert failure_from_exception(PublishFailure("x")).stage == "publish"


def test_unknown_exception_is_processing_failed() -> None:
    reason = failure_from_exception(ValueError("secret path /etc/x"))
    assert reason.code == "processing_failed"
    assert reason.stage is None
    assert is_retryable(ValueError("x"))
