"""Structured JSON logging helpers for dispatch and inbound events."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

# Emitted only when the record carries a value for them.
OPTIONAL_FIELDS = ("channel_id", "error_code", "error_message")


class JsonFormatter(logging.Formatter):
    """One JSON object per record, keyed on the fields operators filter on."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "workflow_step": getattr(record, "workflow_step", "unknown"),
            "patient_name": mask_patient_name(getattr(record, "patient_name", "")),
            "job_key": getattr(record, "job_key", None),
            "status": getattr(record, "status", record.levelname.lower()),
        }
        for name in OPTIONAL_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value

        message = record.getMessage()
        if message:
            payload["message"] = message
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False)


def mask_patient_name(name: str) -> str:
    """Keep the first letter of each word: "Alice Gómez" -> "A**** G****"."""
    if not name:
        return ""
    return " ".join(f"{word[0]}{'*' * (len(word) - 1)}" if len(word) > 1 else "*" for word in name.split())


def mask_phone(phone: str | None) -> str:
    if not phone:
        return ""
    return f"{'*' * max(len(phone) - 4, 0)}{phone[-4:]}"


def get_structured_logger(name: str = "dental_comms.events") -> logging.Logger:
    """Logger emitting JSON records; handlers are attached once per process."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger


def log_workflow_event(
    logger: logging.Logger,
    *,
    workflow_step: str,
    patient_name: str,
    job_key: str | None,
    status: str,
    message: str = "",
    channel_id: str | None = None,
    error_code: str | None = None,
    error_message: str | None = None,
) -> None:
    """Emit one structured event; events carrying an error code log at WARNING."""
    logger.log(
        logging.WARNING if error_code else logging.INFO,
        message,
        extra={
            "workflow_step": workflow_step,
            "patient_name": patient_name,
            "job_key": job_key,
            "status": status,
            "channel_id": channel_id,
            "error_code": error_code,
            "error_message": error_message,
        },
    )
