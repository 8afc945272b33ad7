"""Reminder dispatch queue with claim-before-send, backoff and triage outputs.

A job is moved from ``pending`` to ``claimed`` under the queue lock before any
external call is made, so overlapping ticks or a manual "send now" can never
deliver the same reminder twice. A claimed job leaves that state only as
``sent``, ``failed``, ``cancelled`` or, through the backoff path, ``pending``.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable

from dental_comms.adapters.appointments import AppointmentRepository
from dental_comms.adapters.whatsapp_provider import MessagingProvider
from dental_comms.alerts.bus import AlertBus, Clock, utc_now
from dental_comms.channels.registry import ChannelRegistry
from dental_comms.domain.errors import InvalidTransition, UnknownJob
from dental_comms.domain.models import (
    AlertSeverity,
    Appointment,
    AppointmentStatus,
    ChannelPurpose,
    DispatchReport,
    JobStatus,
    ReminderJob,
    SendRequest,
)
from dental_comms.domain.triggers import DEFAULT_TRIGGER_RULES, RULES_BY_NAME, TriggerRule
from dental_comms.eligibility.post_attendance import is_eligible
from dental_comms.orchestration.send import INVALID_PHONE, NO_CHANNEL_AVAILABLE, orchestrate_send
from dental_comms.reporting.summary import compute_summary
from dental_comms.reporting.triage import write_dispatch_report
from dental_comms.utils.idempotency import IdempotencyStore, build_idempotency_key
from dental_comms.utils.logging import get_structured_logger, log_workflow_event, mask_patient_name
from dental_comms.utils.phone import PhoneRules

logger = logging.getLogger(__name__)

WORKFLOW_STEP = "reminder_dispatch"
DUPLICATE_SEND = "duplicate_send"
ALREADY_CONFIRMED = "already_confirmed"
RESCHEDULE_PENDING = "reschedule_pending"
REMINDER_EXPIRED = "reminder_expired"
DEFAULT_RETENTION = timedelta(days=7)


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    base_delay: timedelta = timedelta(minutes=5)
    multiplier: float = 2.0
    max_delay: timedelta = timedelta(hours=1)
    max_attempts: int = 3

    def delay_for(self, attempt: int) -> timedelta:
        """Delay before retry number ``attempt`` (1-based), capped at ``max_delay``."""
        exponent = max(attempt, 1) - 1
        seconds = self.base_delay.total_seconds() * (self.multiplier**exponent)
        return min(timedelta(seconds=seconds), self.max_delay)


@dataclass(slots=True)
class _TickState:
    now: datetime
    no_channel_alerted: bool = False


class ReminderDispatchQueue:
    def __init__(
        self,
        registry: ChannelRegistry,
        provider: MessagingProvider,
        alert_bus: AlertBus | None = None,
        *,
        appointments: AppointmentRepository | None = None,
        backoff: BackoffPolicy | None = None,
        phone_rules: PhoneRules | None = None,
        clock: Clock = utc_now,
        idempotency_store: IdempotencyStore | None = None,
        artifacts_dir: str | Path | None = None,
        rules: Iterable[TriggerRule] = DEFAULT_TRIGGER_RULES,
    ) -> None:
        self.registry = registry
        self.provider = provider
        self.alert_bus = alert_bus
        self.appointments = appointments
        self.backoff = backoff or BackoffPolicy()
        self.phone_rules = phone_rules or PhoneRules()
        self.idempotency_store = idempotency_store or IdempotencyStore()
        self.artifacts_dir = artifacts_dir
        self.rules = tuple(rules)
        self._rules_by_name = {**RULES_BY_NAME, **{rule.name: rule for rule in self.rules}}
        self._clock = clock
        self._jobs: dict[str, ReminderJob] = {}
        self._by_key: dict[str, str] = {}
        self._lock = threading.Lock()
        self._events = get_structured_logger()

    # -- enqueueing -------------------------------------------------------

    def enqueue(
        self,
        appointment: Appointment,
        trigger_rule: TriggerRule | str,
        now: datetime | None = None,
    ) -> ReminderJob:
        """Create the reminder for (appointment, rule), or return the existing one."""
        job, _ = self._enqueue(appointment, self._resolve_rule(trigger_rule), now or self._clock())
        return job

    def enqueue_due(
        self,
        appointments: Iterable[Appointment],
        rules: Iterable[TriggerRule] | None = None,
        now: datetime | None = None,
    ) -> list[ReminderJob]:
        """Enqueue every rule whose threshold has been crossed; returns only new jobs."""
        now = now or self._clock()
        selected = tuple(rules) if rules is not None else self.rules
        created: list[ReminderJob] = []
        for appointment in appointments:
            for rule in selected:
                if not rule.is_due(appointment, now):
                    continue
                job, is_new = self._enqueue(appointment, rule, now)
                if is_new:
                    created.append(job)
        if created:
            logger.info("Enqueued %s due reminder(s)", len(created))
        return created

    def _resolve_rule(self, trigger_rule: TriggerRule | str) -> TriggerRule:
        if isinstance(trigger_rule, TriggerRule):
            return trigger_rule
        try:
            return self._rules_by_name[trigger_rule]
        except KeyError:
            raise ValueError(f"Unknown trigger rule {trigger_rule!r}") from None

    def _enqueue(self, appointment: Appointment, rule: TriggerRule, now: datetime) -> tuple[ReminderJob, bool]:
        key = build_idempotency_key(appointment.appointment_id, rule.name)
        already_sent = self.idempotency_store.has_been_sent(key)

        with self._lock:
            existing_id = self._by_key.get(key)
            if existing_id is not None:
                return replace(self._jobs[existing_id]), False

            job = ReminderJob(
                job_id=uuid.uuid4().hex,
                appointment_id=appointment.appointment_id,
                patient_name=appointment.patient_name,
                recipient_phone=self.phone_rules.normalize(appointment.patient_phone, appointment.country)
                or appointment.patient_phone,
                content=rule.render(appointment),
                scheduled_for=rule.fire_time(appointment.scheduled_at),
                trigger_rule=rule.name,
                idempotency_key=key,
                media_url=rule.media_url,
                country=appointment.country,
                created_at=now,
            )
            if already_sent:
                job.status = JobStatus.CANCELLED
                job.last_error = DUPLICATE_SEND
                job.finished_at = now
            self._jobs[job.job_id] = job
            self._by_key[key] = job.job_id
            snapshot = replace(job)

        log_workflow_event(
            self._events,
            workflow_step="reminder_enqueue",
            patient_name=snapshot.patient_name,
            job_key=key,
            status=snapshot.status.value,
            message=f"Reminder {rule.name} scheduled for {snapshot.scheduled_for.isoformat()}",
        )
        return snapshot, True

    # -- dispatch ---------------------------------------------------------

    def tick(self, now: datetime | None = None) -> DispatchReport:
        """Dispatch every pending job due at ``now``, oldest first."""
        now = now or self._clock()
        state = _TickState(now=now)
        report = DispatchReport(started_at=now)

        with self._lock:
            total_due = sum(
                1 for job in self._jobs.values() if job.status is JobStatus.PENDING and job.scheduled_for <= now
            )

        seen: set[str] = set()
        while True:
            job = self._claim_next(now, seen)
            if job is None:
                break
            seen.add(job.job_id)
            report.records.append(self._run_claimed(job, state))

        return self._finish_report(report, total_due)

    def send_now(self, job_id: str, now: datetime | None = None) -> DispatchReport:
        """Send one pending job immediately, ignoring its scheduled time."""
        now = now or self._clock()
        report = DispatchReport(started_at=now)

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise UnknownJob(f"Unknown reminder job {job_id!r}")
            if job.status is not JobStatus.PENDING:
                record = self._record(job, "skipped", reason="not_pending")
                report.records.append(record)
                return self._finish_report(report, 0)
            job.status = JobStatus.CLAIMED
            claimed = replace(job)

        report.records.append(self._run_claimed(claimed, _TickState(now=now)))
        return self._finish_report(report, 1)

    def _claim_next(self, now: datetime, seen: set[str]) -> ReminderJob | None:
        with self._lock:
            due = [
                job
                for job in self._jobs.values()
                if job.status is JobStatus.PENDING and job.scheduled_for <= now and job.job_id not in seen
            ]
            if not due:
                return None
            job = min(due, key=lambda item: (item.scheduled_for, item.created_at or now, item.job_id))
            job.status = JobStatus.CLAIMED
            return replace(job)

    def _run_claimed(self, job: ReminderJob, state: _TickState) -> dict[str, Any]:
        try:
            return self._dispatch(job, state)
        except Exception as exc:  # broad to keep the tick going for remaining jobs
            logger.exception("Unexpected error dispatching job %s", job.job_id)
            retry_at = state.now + self.backoff.base_delay
            self._update(job.job_id, status=JobStatus.PENDING, scheduled_for=retry_at, last_error=str(exc))
            return self._emit(job, "requeued", reason=type(exc).__name__, error_message=str(exc))

    def _dispatch(self, job: ReminderJob, state: _TickState) -> dict[str, Any]:
        now = state.now

        denial = self._check_appointment(job, now)
        if denial is not None:
            reason, details = denial
            self._update(job.job_id, status=JobStatus.CANCELLED, last_error=reason, finished_at=now)
            return self._emit(job, "cancelled", reason=reason, **details)

        if self.idempotency_store.has_been_sent(job.idempotency_key):
            self._update(job.job_id, status=JobStatus.CANCELLED, last_error=DUPLICATE_SEND, finished_at=now)
            return self._emit(job, "cancelled", reason=DUPLICATE_SEND)

        result = orchestrate_send(
            SendRequest(
                recipient_phone=job.recipient_phone,
                content=job.content,
                purpose=ChannelPurpose.REMINDERS,
                country=job.country,
                media_url=job.media_url,
                patient_name=job.patient_name,
                idempotency_key=job.idempotency_key,
            ),
            registry=self.registry,
            provider=self.provider,
            phone_rules=self.phone_rules,
        )

        if result.sent:
            self.idempotency_store.mark_sent(job.idempotency_key)
            updated = self._update(
                job.job_id,
                status=JobStatus.SENT,
                attempts=job.attempts + 1,
                channel_id=result.channel_id,
                provider_message_id=result.provider_message_id,
                recipient_phone=result.normalized_phone,
                last_error=None,
                sent_at=now,
                finished_at=now,
            )
            return self._emit(updated, "sent", attempted=True)

        issue = result.triage_issues[0]

        if issue.code == INVALID_PHONE:
            updated = self._update(job.job_id, status=JobStatus.FAILED, last_error=INVALID_PHONE, finished_at=now)
            self._alert(
                "invalid_phone",
                AlertSeverity.HIGH,
                f"Reminder for {job.patient_name} not sent: phone {job.recipient_phone!r} is not dialable",
                {"job_id": job.job_id, "appointment_id": job.appointment_id},
            )
            return self._emit(updated, "failed", reason=INVALID_PHONE)

        if issue.code == NO_CHANNEL_AVAILABLE:
            updated = self._update(
                job.job_id,
                status=JobStatus.PENDING,
                scheduled_for=now + self.backoff.base_delay,
                last_error=NO_CHANNEL_AVAILABLE,
            )
            if not state.no_channel_alerted:
                state.no_channel_alerted = True
                self._alert(
                    NO_CHANNEL_AVAILABLE,
                    AlertSeverity.HIGH,
                    "No reminder channel has quota left; due reminders were requeued",
                    {"purpose": ChannelPurpose.REMINDERS.value, "country": job.country},
                )
            return self._emit(updated, "requeued", reason=NO_CHANNEL_AVAILABLE)

        attempts = job.attempts + 1
        if attempts < self.backoff.max_attempts:
            updated = self._update(
                job.job_id,
                status=JobStatus.PENDING,
                attempts=attempts,
                channel_id=result.channel_id,
                scheduled_for=now + self.backoff.delay_for(attempts),
                last_error=issue.message,
            )
            return self._emit(updated, "retry", reason=issue.code, attempted=True, error_message=issue.message)

        updated = self._update(
            job.job_id,
            status=JobStatus.FAILED,
            attempts=attempts,
            channel_id=result.channel_id,
            last_error=issue.message,
            finished_at=now,
        )
        self._alert(
            "reminder_failed",
            AlertSeverity.CRITICAL,
            f"Reminder for {job.patient_name} failed {attempts} times on channel {result.channel_id}",
            {
                "job_id": job.job_id,
                "appointment_id": job.appointment_id,
                "patient_name": job.patient_name,
                "channel_id": result.channel_id,
                "error": issue.message,
            },
        )
        return self._emit(updated, "failed", reason=issue.code, attempted=True, error_message=issue.message)

    def _check_appointment(self, job: ReminderJob, now: datetime) -> tuple[str, dict[str, Any]] | None:
        """Re-read the appointment; return (reason, details) when the job must not go out."""
        if self.appointments is None:
            return None
        appointment = self.appointments.get_appointment(job.appointment_id)
        if appointment is None:
            return "appointment_missing", {}
        if not appointment.is_open:
            return "appointment_closed", {"appointment_status": appointment.status.value}

        rule = self._rules_by_name.get(job.trigger_rule)
        if rule is None:
            return None
        if rule.is_post_attendance:
            eligibility = is_eligible(appointment, now)
            if not eligibility.eligible:
                return "ineligible", {"eligibility_reasons": eligibility.reasons}
            return None

        # Pre-visit reminders are held until staff settle the new time.
        if appointment.status is AppointmentStatus.RESCHEDULING_PENDING:
            return RESCHEDULE_PENDING, {}
        if rule.asks_confirmation and appointment.status is AppointmentStatus.CONFIRMED:
            return ALREADY_CONFIRMED, {}
        if rule.is_expired(appointment, now):
            return REMINDER_EXPIRED, {"expired_at": rule.expires_at(appointment.scheduled_at).isoformat()}
        return None

    # -- staff actions ----------------------------------------------------

    def cancel(self, job_id: str, reason: str = "cancelled_by_staff") -> ReminderJob:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise UnknownJob(f"Unknown reminder job {job_id!r}")
            if job.status is JobStatus.CANCELLED:
                return replace(job)
            if job.status is not JobStatus.PENDING:
                raise InvalidTransition(job.status.value, JobStatus.CANCELLED.value)
            job.status = JobStatus.CANCELLED
            job.last_error = reason
            job.finished_at = self._clock()
            snapshot = replace(job)
        self._emit(snapshot, "cancelled", reason=reason)
        return snapshot

    def cancel_for_appointment(self, appointment_id: str, reason: str = "appointment_cancelled") -> int:
        cancelled: list[ReminderJob] = []
        now = self._clock()
        with self._lock:
            for job in self._jobs.values():
                if job.appointment_id == appointment_id and job.status is JobStatus.PENDING:
                    job.status = JobStatus.CANCELLED
                    job.last_error = reason
                    job.finished_at = now
                    cancelled.append(replace(job))
        for job in cancelled:
            self._emit(job, "cancelled", reason=reason)
        return len(cancelled)

    def get(self, job_id: str) -> ReminderJob:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise UnknownJob(f"Unknown reminder job {job_id!r}")
            return replace(job)

    def jobs(self, status: JobStatus | None = None) -> list[ReminderJob]:
        with self._lock:
            selected = [replace(job) for job in self._jobs.values() if status is None or job.status is status]
        return sorted(selected, key=lambda job: (job.scheduled_for, job.job_id))

    def purge_terminal(self, now: datetime | None = None, retention: timedelta = DEFAULT_RETENTION) -> int:
        """Drop terminal jobs that finished more than ``retention`` ago."""
        cutoff = (now or self._clock()) - retention
        with self._lock:
            stale = [
                job
                for job in self._jobs.values()
                if job.is_terminal and job.finished_at is not None and job.finished_at <= cutoff
            ]
            for job in stale:
                del self._jobs[job.job_id]
                if self._by_key.get(job.idempotency_key) == job.job_id:
                    del self._by_key[job.idempotency_key]
        if stale:
            logger.info("Purged %s terminal reminder job(s)", len(stale))
        return len(stale)

    # -- internals --------------------------------------------------------

    def _update(self, job_id: str, **changes: Any) -> ReminderJob:
        with self._lock:
            job = self._jobs[job_id]
            for name, value in changes.items():
                setattr(job, name, value)
            return replace(job)

    def _alert(self, alert_type: str, severity: AlertSeverity, message: str, details: dict[str, Any]) -> None:
        if self.alert_bus is not None:
            self.alert_bus.publish(alert_type, severity, message, details)

    def _record(self, job: ReminderJob, status: str, *, reason: str | None = None, **extra: Any) -> dict[str, Any]:
        record: dict[str, Any] = {
            "job_id": job.job_id,
            "appointment_id": job.appointment_id,
            "trigger_rule": job.trigger_rule,
            "patient_name": mask_patient_name(job.patient_name),
            "idempotency_key": job.idempotency_key,
            "status": status,
            "attempts": job.attempts,
            "channel_id": job.channel_id,
            "attempted": False,
        }
        if reason:
            record["reason"] = reason
        record.update(extra)
        return record

    def _emit(
        self,
        job: ReminderJob,
        status: str,
        *,
        reason: str | None = None,
        error_message: str | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        """Log the structured event for a job outcome and return its report record."""
        failed = status in ("failed", "retry", "requeued")
        log_workflow_event(
            self._events,
            workflow_step=WORKFLOW_STEP,
            patient_name=job.patient_name,
            job_key=job.idempotency_key,
            status=status,
            channel_id=job.channel_id,
            error_code=reason.upper() if failed and reason else None,
            error_message=error_message,
            message=f"Reminder {job.trigger_rule} {status}",
        )
        return self._record(job, status, reason=reason, **extra)

    def _finish_report(self, report: DispatchReport, total_due: int) -> DispatchReport:
        report.summary = compute_summary(report.records, total_due=total_due)
        if self.artifacts_dir is not None and report.records:
            json_path, md_path = write_dispatch_report(
                artifacts_dir=self.artifacts_dir,
                summary=report.summary,
                records=report.records,
                started_at=report.started_at,
            )
            report.report_json = str(json_path)
            report.report_md = str(md_path)
        return report
