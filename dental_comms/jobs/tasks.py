"""Configuration and task functions executed by the scheduler and CLI."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from dental_comms.domain.models import (
    Appointment,
    AppointmentStatus,
    Channel,
    ChannelPurpose,
    ChannelStatus,
    ClinicConfig,
)
from dental_comms.orchestration.service import CommsService
from dental_comms.reporting.triage import prune_reports

logger = logging.getLogger(__name__)

ENV_PREFIX = "DENTAL_COMMS_"
TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(slots=True)
class CommsConfig:
    timezone: str = "America/Asuncion"
    default_country_code: str = "55"
    default_area_code: str = "11"
    explicit_country: bool = False
    max_attempts: int = 3
    backoff_base_seconds: float = 300.0
    backoff_multiplier: float = 2.0
    backoff_max_seconds: float = 3600.0
    failure_threshold: int = 3
    tick_seconds: int = 60
    artifact_root: Path | None = None
    idempotency_store_path: Path | None = None
    secretary_phone: str | None = None
    dry_run: bool = True
    evolution_api_url: str | None = None
    evolution_api_key: str | None = None
    evolution_timeout_seconds: float = 10.0


class ConfigError(ValueError):
    """Raised when an environment variable holds an unusable value."""


def _env(name: str, default: str | None = None, *, prefixed: bool = True) -> str | None:
    value = os.getenv(f"{ENV_PREFIX}{name}" if prefixed else name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _number(name: str, default: float, cast: type = float) -> Any:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise ConfigError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from exc


def resolve_config(*, dry_run: bool | None = None) -> CommsConfig:
    """Read ``DENTAL_COMMS_*`` and ``EVOLUTION_*`` variables into a config."""
    artifact_root = _env("ARTIFACT_ROOT", "artifacts/dispatch")
    store_path = _env("IDEMPOTENCY_STORE_PATH", "state/sent_reminder_keys.json")
    env_dry_run = (_env("DRY_RUN", "1") or "1").lower() in TRUE_VALUES

    config = CommsConfig(
        timezone=_env("TIMEZONE", "America/Asuncion") or "America/Asuncion",
        default_country_code=_env("DEFAULT_COUNTRY_CODE", "55") or "55",
        default_area_code=_env("DEFAULT_AREA_CODE", "11") or "11",
        explicit_country=(_env("EXPLICIT_COUNTRY", "0") or "0").lower() in TRUE_VALUES,
        max_attempts=_number("MAX_ATTEMPTS", 3, int),
        backoff_base_seconds=_number("BACKOFF_BASE_SECONDS", 300.0),
        backoff_multiplier=_number("BACKOFF_MULTIPLIER", 2.0),
        backoff_max_seconds=_number("BACKOFF_MAX_SECONDS", 3600.0),
        failure_threshold=_number("FAILURE_THRESHOLD", 3, int),
        tick_seconds=_number("TICK_SECONDS", 60, int),
        artifact_root=Path(artifact_root) if artifact_root else None,
        idempotency_store_path=Path(store_path) if store_path else None,
        secretary_phone=_env("SECRETARY_PHONE"),
        dry_run=env_dry_run if dry_run is None else dry_run,
        evolution_api_url=_env("EVOLUTION_API_URL", prefixed=False),
        evolution_api_key=_env("EVOLUTION_API_KEY", prefixed=False),
        evolution_timeout_seconds=float(_env("EVOLUTION_TIMEOUT_SECONDS", "10", prefixed=False) or 10),
    )
    if config.max_attempts < 1:
        raise ConfigError(f"{ENV_PREFIX}MAX_ATTEMPTS must be at least 1")

    logger.info(
        "Resolved comms config (timezone=%s, dry_run=%s, max_attempts=%s, tick_seconds=%s)",
        config.timezone,
        config.dry_run,
        config.max_attempts,
        config.tick_seconds,
    )
    return config


# -- fixture loaders --------------------------------------------------------


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        raise ValueError(f"Datetime {value!r} must carry a UTC offset")
    return parsed


def _read_records(path: Path | str, key: str) -> list[dict[str, Any]]:
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get(key, [])
    if not isinstance(payload, list):
        raise ValueError(f"{path} must hold a list of {key}")
    return payload


def load_channels(path: Path | str) -> list[Channel]:
    channels = []
    for item in _read_records(path, "channels"):
        channels.append(
            Channel(
                channel_id=str(item["channel_id"]),
                country=str(item.get("country", "PY")),
                display_name=str(item.get("display_name") or item["channel_id"]),
                purpose=ChannelPurpose(item.get("purpose", ChannelPurpose.REMINDERS.value)),
                instance_name=item.get("instance_name"),
                status=ChannelStatus(item.get("status", ChannelStatus.ACTIVE.value)),
                daily_message_count=int(item.get("daily_message_count", 0)),
                daily_limit=int(item.get("daily_limit", 1000)),
                timezone=str(item.get("timezone", "America/Asuncion")),
            )
        )
    return channels


def load_appointments(path: Path | str) -> list[Appointment]:
    appointments = []
    for item in _read_records(path, "appointments"):
        appointments.append(
            Appointment(
                appointment_id=str(item["appointment_id"]),
                patient_name=str(item.get("patient_name", "")),
                patient_phone=str(item.get("patient_phone", "")),
                scheduled_at=_parse_datetime(str(item["scheduled_at"])),
                status=AppointmentStatus(item.get("status", AppointmentStatus.SCHEDULED.value)),
                clinic_name=str(item.get("clinic_name", "")),
                country=item.get("country"),
            )
        )
    return appointments


def load_clinic_config(path: Path | str | None) -> ClinicConfig:
    if path is None:
        return ClinicConfig(clinic_name="Clínica Dental")
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    return ClinicConfig(
        clinic_name=str(payload.get("clinic_name", "Clínica Dental")),
        chair_count=int(payload.get("chair_count", 1)),
        channel_count=int(payload.get("channel_count", 1)),
        timezone=str(payload.get("timezone", "America/Asuncion")),
    )


# -- scheduled tasks --------------------------------------------------------


def dispatch_tick(service: CommsService, now: datetime | None = None) -> dict[str, Any]:
    """Enqueue due reminders and run one dispatch pass."""
    report = service.tick(now)
    logger.info(
        "Dispatch tick completed: due=%s sent=%s retried=%s failed=%s requeued=%s cancelled=%s report_json=%s",
        report.summary.get("total_due", 0),
        report.sent,
        report.retried,
        report.failed,
        report.requeued,
        report.cancelled,
        report.report_json,
    )
    for record in report.records:
        if record.get("status") == "failed":
            logger.warning(
                "Reminder %s for %s failed: %s",
                record.get("job_id"),
                record.get("patient_name"),
                record.get("reason"),
            )
    return {
        "summary": report.summary,
        "records": report.records,
        "report_json": report.report_json,
        "report_md": report.report_md,
    }


def reset_channel_counters(service: CommsService) -> int:
    return service.reset_daily_counters()


def sweep_alerts(service: CommsService) -> int:
    return service.sweep_alerts()


def purge_finished_jobs(service: CommsService, retention_days: int = 7) -> int:
    """Nightly cleanup of finished jobs and of report files past the same retention."""
    retention = timedelta(days=retention_days)
    purged = service.purge_terminal(retention=retention)
    if service.queue.artifacts_dir is not None:
        prune_reports(service.queue.artifacts_dir, older_than=service.clock() - retention)
    return purged
