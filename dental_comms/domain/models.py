from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ChannelPurpose(str, Enum):
    INTEGRATION = "integration"
    REMINDERS = "reminders"


class ChannelStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BLOCKED = "blocked"
    WARNING = "warning"


class ChannelEventKind(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    BLOCKED = "blocked"
    WARNING = "warning"


class JobStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Intent(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    RESCHEDULE = "reschedule"
    UNKNOWN = "unknown"


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    NOT_CONFIRMED = "not_confirmed"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    RESCHEDULING_PENDING = "rescheduling_pending"


class RescheduleStatus(str, Enum):
    PENDING = "pending"
    NOTIFIED = "notified"
    RESOLVED = "resolved"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


CLOSED_APPOINTMENT_STATUSES = frozenset({AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED})
TERMINAL_JOB_STATUSES = frozenset({JobStatus.SENT, JobStatus.FAILED, JobStatus.CANCELLED})


@dataclass(slots=True)
class Channel:
    channel_id: str
    country: str
    display_name: str
    purpose: ChannelPurpose
    instance_name: str | None = None
    status: ChannelStatus = ChannelStatus.ACTIVE
    daily_message_count: int = 0
    daily_limit: int = 1000
    last_reset_at: datetime | None = None
    timezone: str = "America/Asuncion"
    consecutive_failures: int = 0
    last_error: str | None = None

    @property
    def remaining_quota(self) -> int:
        return max(self.daily_limit - self.daily_message_count, 0)

    @property
    def usage_ratio(self) -> float:
        if self.daily_limit <= 0:
            return 1.0
        return self.daily_message_count / self.daily_limit

    def can_send(self) -> bool:
        return self.status is ChannelStatus.ACTIVE and self.daily_message_count < self.daily_limit


@dataclass(slots=True)
class ChannelEvent:
    """Provider status callback for one channel.

    ``channel_ref`` is either the registry channel id or the provider
    instance name, whichever the callback carries.
    """

    channel_ref: str
    kind: ChannelEventKind
    occurred_at: datetime | None = None
    detail: str | None = None


@dataclass(slots=True)
class Appointment:
    appointment_id: str
    patient_name: str
    patient_phone: str
    scheduled_at: datetime
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    clinic_name: str = ""
    country: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status not in CLOSED_APPOINTMENT_STATUSES


@dataclass(slots=True)
class ClinicConfig:
    clinic_name: str
    chair_count: int = 1
    channel_count: int = 1
    timezone: str = "America/Asuncion"


@dataclass(slots=True)
class ReminderJob:
    job_id: str
    appointment_id: str
    patient_name: str
    recipient_phone: str
    content: str
    scheduled_for: datetime
    trigger_rule: str
    idempotency_key: str
    media_url: str | None = None
    country: str | None = None
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    channel_id: str | None = None
    provider_message_id: str | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    sent_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass(slots=True)
class TriageIssue:
    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SendRequest:
    recipient_phone: str
    content: str
    purpose: ChannelPurpose = ChannelPurpose.REMINDERS
    country: str | None = None
    media_url: str | None = None
    patient_name: str = ""
    idempotency_key: str | None = None


@dataclass(slots=True)
class SendOutcome:
    success: bool
    provider_message_id: str | None = None
    error: str | None = None


@dataclass(slots=True)
class SendResult:
    sent: bool
    triage_issues: list[TriageIssue] = field(default_factory=list)
    idempotency_key: str | None = None
    normalized_phone: str | None = None
    channel_id: str | None = None
    provider_message_id: str | None = None

    @property
    def issue_codes(self) -> list[str]:
        return [issue.code for issue in self.triage_issues]


@dataclass(slots=True, frozen=True)
class IntentResult:
    intent: Intent
    confidence: float
    matched_keyword: str | None = None


@dataclass(slots=True, frozen=True)
class CheckOutcome:
    code: str
    passed: bool
    message: str


@dataclass(slots=True)
class EligibilityResult:
    eligible: bool
    reasons: list[str] = field(default_factory=list)
    checks: list[CheckOutcome] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "eligible": self.eligible,
            "reasons": list(self.reasons),
            "checks": {check.code: {"passed": check.passed, "message": check.message} for check in self.checks},
        }


@dataclass(slots=True, frozen=True)
class IncomingMessage:
    message_id: str
    sender_phone: str
    sender_name: str | None
    text: str
    intent: Intent
    confidence: float
    received_at: datetime
    appointment_id: str | None = None
    processed: bool = False


@dataclass(slots=True)
class RescheduleRequest:
    request_id: str
    appointment_id: str
    patient_name: str
    patient_phone: str
    message_text: str
    original_scheduled_at: datetime | None = None
    status: RescheduleStatus = RescheduleStatus.PENDING
    notes: str | None = None
    follow_up_messages: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    notified_at: datetime | None = None
    resolved_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status is not RescheduleStatus.RESOLVED


@dataclass(slots=True)
class Alert:
    alert_id: str
    alert_type: str
    severity: AlertSeverity
    message: str
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
    resolved: bool = False
    resolved_at: datetime | None = None


@dataclass(slots=True)
class DispatchReport:
    started_at: datetime
    records: list[dict[str, Any]] = field(default_factory=list)
    summary: dict[str, Any] = field(default_factory=dict)
    report_json: str | None = None
    report_md: str | None = None

    def count(self, status: str) -> int:
        return sum(1 for record in self.records if record.get("status") == status)

    @property
    def sent(self) -> int:
        return self.count("sent")

    @property
    def failed(self) -> int:
        return self.count("failed")

    @property
    def retried(self) -> int:
        return self.count("retry")

    @property
    def requeued(self) -> int:
        return self.count("requeued")

    @property
    def cancelled(self) -> int:
        return self.count("cancelled")
