from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import NOW, make_appointment, make_channel
from dental_comms.adapters.appointments import InMemoryAppointmentRepository
from dental_comms.adapters.whatsapp_provider import DryRunProvider
from dental_comms.api import create_app
from dental_comms.domain.models import ChannelPurpose, ClinicConfig
from dental_comms.jobs.tasks import CommsConfig
from dental_comms.orchestration.service import CommsService, build_service


@pytest.fixture
def service(clock) -> CommsService:
    appointments = InMemoryAppointmentRepository(
        [make_appointment(scheduled_at=NOW + timedelta(hours=20))],
        clinic_config=ClinicConfig(clinic_name="Odonto Central"),
    )
    return build_service(
        CommsConfig(),
        appointments,
        provider=DryRunProvider(),
        channels=[
            make_channel("rem-1", instance_name="clinica-rem"),
            make_channel("int-1", purpose=ChannelPurpose.INTEGRATION),
        ],
        clock=clock,
    )


@pytest.fixture
def client(service: CommsService) -> TestClient:
    return TestClient(create_app(service))


def test_healthz(client: TestClient) -> None:
    assert client.get("/healthz").json() == {"status": "ok"}


def test_inbound_webhook_confirms_appointment(client: TestClient, service: CommsService) -> None:
    response = client.post(
        "/webhooks/whatsapp",
        json={"senderPhone": "5511987654321", "senderName": "Alice", "message": "Sí, confirmo"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["detectedIntent"] == "confirmed"
    assert body["appointmentUpdated"] is True
    assert service.appointments.get_appointment("appt-1").status.value == "confirmed"


def test_inbound_webhook_validates_payload(client: TestClient) -> None:
    assert client.post("/webhooks/whatsapp", json={"message": "Sí"}).status_code == 422


def test_reschedule_round_trip(client: TestClient) -> None:
    client.post("/webhooks/whatsapp", json={"senderPhone": "11987654321", "message": "quiero reagendar"})

    pending = client.get("/reschedules/pending").json()
    assert len(pending) == 1
    assert pending[0]["status"] == "notified"

    request_id = pending[0]["request_id"]
    resolved = client.post(f"/reschedules/{request_id}/resolve", json={"notes": "jueves 10:00"})
    assert resolved.status_code == 200
    assert resolved.json()["status"] == "resolved"
    assert resolved.json()["notes"] == "jueves 10:00"
    assert client.get("/reschedules/pending").json() == []

    alerts = client.get("/alerts").json()
    assert [alert["alert_type"] for alert in alerts] == ["reschedule_alert"]


def test_unknown_reschedule_is_404(client: TestClient) -> None:
    assert client.post("/reschedules/missing/resolve").status_code == 404


def test_provider_status_blocks_channel(client: TestClient) -> None:
    response = client.post(
        "/webhooks/provider-status",
        json={"event": "connection.update", "instance": "clinica-rem", "data": {"state": "close", "statusReason": 403}},
    )

    assert response.json() == {"applied": True, "channel_id": "rem-1", "status": "blocked"}
    health = {entry["channel_id"]: entry for entry in client.get("/channels/health").json()}
    assert health["rem-1"]["status"] == "blocked"

    ignored = client.post("/webhooks/provider-status", json={"event": "messages.upsert"})
    assert ignored.json()["applied"] is False


def test_provider_status_for_unknown_channel_is_404(client: TestClient) -> None:
    response = client.post("/webhooks/provider-status", json={"channelId": "ghost", "event": "connected"})

    assert response.status_code == 404


def test_tick_and_send_now(client: TestClient, service: CommsService) -> None:
    report = client.post("/reminders/tick").json()

    assert report["summary"]["successful_sends"] == 1
    job_id = report["records"][0]["job_id"]

    again = client.post(f"/reminders/{job_id}/send-now").json()
    assert again["records"][0]["reason"] == "not_pending"
    assert client.post("/reminders/unknown/send-now").status_code == 404
