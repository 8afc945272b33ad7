"""HTTP surface for the communications engine."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from dental_comms.domain.errors import (
    ChannelInUse,
    InvalidTransition,
    UnknownChannel,
    UnknownJob,
    UnknownRescheduleRequest,
)
from dental_comms.domain.models import Alert, DispatchReport, RescheduleRequest
from dental_comms.orchestration.service import CommsService
from dental_comms.webhooks.router import InboundWebhookPayload

logger = logging.getLogger(__name__)

NOT_FOUND_ERRORS = (UnknownChannel, UnknownJob, UnknownRescheduleRequest)
CONFLICT_ERRORS = (InvalidTransition, ChannelInUse)


class WebhookResponse(BaseModel):
    success: bool
    detectedIntent: str
    appointmentUpdated: bool
    notificationSent: bool
    processingTimeMs: int


class ProviderStatusResponse(BaseModel):
    applied: bool
    channel_id: str | None = None
    status: str | None = None


class DispatchReportResponse(BaseModel):
    started_at: datetime
    summary: dict[str, Any]
    records: list[dict[str, Any]]
    report_json: str | None = None
    report_md: str | None = None


class RescheduleRequestResponse(BaseModel):
    request_id: str
    appointment_id: str
    patient_name: str
    patient_phone: str
    message_text: str
    status: str
    notes: str | None = None
    follow_up_messages: list[str] = []
    original_scheduled_at: datetime | None = None
    created_at: datetime | None = None
    notified_at: datetime | None = None
    resolved_at: datetime | None = None


class ResolveRescheduleBody(BaseModel):
    notes: str | None = None


class AlertResponse(BaseModel):
    alert_id: str
    alert_type: str
    severity: str
    message: str
    details: dict[str, Any]
    created_at: datetime
    resolved: bool


def _report(report: DispatchReport) -> DispatchReportResponse:
    return DispatchReportResponse(
        started_at=report.started_at,
        summary=report.summary,
        records=report.records,
        report_json=report.report_json,
        report_md=report.report_md,
    )


def _reschedule(request: RescheduleRequest) -> RescheduleRequestResponse:
    return RescheduleRequestResponse(
        request_id=request.request_id,
        appointment_id=request.appointment_id,
        patient_name=request.patient_name,
        patient_phone=request.patient_phone,
        message_text=request.message_text,
        status=request.status.value,
        notes=request.notes,
        follow_up_messages=list(request.follow_up_messages),
        original_scheduled_at=request.original_scheduled_at,
        created_at=request.created_at,
        notified_at=request.notified_at,
        resolved_at=request.resolved_at,
    )


def _alert(alert: Alert) -> AlertResponse:
    return AlertResponse(
        alert_id=alert.alert_id,
        alert_type=alert.alert_type,
        severity=alert.severity.value,
        message=alert.message,
        details=alert.details,
        created_at=alert.created_at,
        resolved=alert.resolved,
    )


def create_app(service: CommsService) -> FastAPI:
    app = FastAPI(title="dental-comms")

    async def _not_found(_request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    async def _conflict(_request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    for error in NOT_FOUND_ERRORS:
        app.add_exception_handler(error, _not_found)
    for error in CONFLICT_ERRORS:
        app.add_exception_handler(error, _conflict)

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/webhooks/whatsapp", response_model=WebhookResponse)
    def inbound_whatsapp(payload: InboundWebhookPayload) -> dict[str, Any]:
        return service.handle_inbound_webhook(payload)

    @app.post("/webhooks/provider-status", response_model=ProviderStatusResponse)
    def provider_status(payload: dict[str, Any]) -> ProviderStatusResponse:
        channel = service.handle_provider_status(payload)
        if channel is None:
            return ProviderStatusResponse(applied=False)
        return ProviderStatusResponse(applied=True, channel_id=channel.channel_id, status=channel.status.value)

    @app.get("/channels/health")
    def channel_health() -> list[dict[str, Any]]:
        return service.get_channel_health()

    @app.post("/reminders/tick", response_model=DispatchReportResponse)
    def reminders_tick() -> DispatchReportResponse:
        return _report(service.tick())

    @app.post("/reminders/{job_id}/send-now", response_model=DispatchReportResponse)
    def reminders_send_now(job_id: str) -> DispatchReportResponse:
        return _report(service.send_now(job_id))

    @app.get("/reschedules/pending", response_model=list[RescheduleRequestResponse])
    def pending_reschedules() -> list[RescheduleRequestResponse]:
        return [_reschedule(request) for request in service.get_pending_reschedules()]

    @app.post("/reschedules/{request_id}/resolve", response_model=RescheduleRequestResponse)
    def resolve_reschedule(request_id: str, body: ResolveRescheduleBody | None = None) -> RescheduleRequestResponse:
        notes = body.notes if body else None
        return _reschedule(service.resolve_reschedule(request_id, notes))

    @app.get("/alerts", response_model=list[AlertResponse])
    def list_alerts(active_only: bool = True) -> list[AlertResponse]:
        return [_alert(alert) for alert in service.alerts(active_only=active_only)]

    logger.info("Created dental-comms API")
    return app
