from __future__ import annotations

import logging
import re
import sys
from contextlib import suppress
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from lofi_pipeline.config import get_settings

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)


def set_request_id(rid: str | None) -> None:
    request_id_var.set(rid)


def set_job_id(job_id: str | None) -> None:
    job_id_var.set(job_id)


def _log_path() -> Path:
    return get_settings().public.log_root() / "app.log"


_URL_CRED_RE = re.compile(r"(?i)([a-z][a-z0-9+\-.]*://)([^:@/\s]+):([^@/\s]+)@")
_BEARER_RE = re.compile(r"(?i)\bBearer\s+([A-Za-z0-9_\-\.=]+)")
_KV_RE = re.compile(
    r"(?i)\b(ytdlp_cookies_file|ytdlp_proxy|token|secret|password|cookie|cookies|proxy)\b\s*=\s*([^\s,;]+)"
)


def _secret_literals() -> list[str]:
    """
    Configured secret values that must never appear in logs.
    Safe to call before settings are fully valid.
    """
    vals: list[str] = []
    try:
        sec = get_settings().secret
    except Exception:
        return vals
    for name in ("ytdlp_cookies_file", "ytdlp_proxy"):
        v = getattr(sec, name, None)
        if v is not None and hasattr(v, "get_secret_value"):
            raw = str(v.get_secret_value() or "")
            # Ignore tiny values to avoid over-redaction.
            if len(raw) >= 8 and raw not in vals:
                vals.append(raw)
    return vals


def redact_str(s: str) -> str:
    for lit in _secret_literals():
        if lit in s:
            s = s.replace(lit, "***REDACTED***")
    s = _URL_CRED_RE.sub(r"\1***REDACTED***@", s)
    s = _BEARER_RE.sub("Bearer ***REDACTED***", s)
    s = _KV_RE.sub(lambda m: f"{m.group(1)}=***REDACTED***", s)
    return s


def redact_event(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    for k, v in list(event_dict.items()):
        if isinstance(v, str):
            event_dict[k] = redact_str(v)
    return event_dict


def add_contextvars(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    rid = request_id_var.get()
    jid = job_id_var.get()
    if rid:
        event_dict.setdefault("request_id", rid)
    if jid:
        event_dict.setdefault("job_id", jid)
    return event_dict


def rename_event_to_msg(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    if "msg" not in event_dict and "event" in event_dict:
        event_dict["msg"] = event_dict.pop("event")
    return event_dict


def _configure_structlog() -> structlog.stdlib.BoundLogger:
    s = get_settings()
    level = str(s.log_level).upper()

    root = logging.getLogger()
    root.setLevel(level)

    # Avoid duplicates if re-imported
    if getattr(root, "_lofi_pipeline_structlog_configured", False):
        return structlog.get_logger("lofi_pipeline")

    foreign_pre_chain = [
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.stdlib.add_log_level,
        add_contextvars,
        redact_event,
        structlog.processors.format_exc_info,
        rename_event_to_msg,
    ]

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=foreign_pre_chain,
    )

    root.handlers.clear()

    log_path = _log_path()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=str(log_path),
            maxBytes=int(s.log_max_bytes),
            backupCount=int(s.log_backup_count),
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    except OSError:
        # Read-only filesystems still get stdout logging.
        pass

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.stdlib.add_log_level,
            add_contextvars,
            redact_event,
            structlog.processors.format_exc_info,
            rename_event_to_msg,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root._lofi_pipeline_structlog_configured = True
    return structlog.get_logger("lofi_pipeline")


logger = _configure_structlog()


def set_log_level(level: str) -> None:
    """
    Runtime log level override (CLI convenience).
    Does not change handlers/formatters; only raises/lowers filtering level.
    """
    lvl = getattr(logging, str(level).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(lvl)
    for h in root.handlers:
        with suppress(Exception):
            h.setLevel(lvl)
