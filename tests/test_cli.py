from __future__ import annotations

import json
from pathlib import Path

import pytest

from dental_comms import cli


def test_classify_prints_intent(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["classify", "no puedo ir mañana"])

    payload = json.loads(capsys.readouterr().out)
    assert code == 0
    assert payload["intent"] == "cancelled"
    assert payload["confidence"] == pytest.approx(0.9)


def test_normalize_phone_success_and_failure(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["normalize-phone", "(11) 98765-4321"]) == 0
    assert capsys.readouterr().out.strip() == "5511987654321"

    assert cli.main(["normalize-phone", "0981 123456", "--country", "PY"]) == 0
    assert capsys.readouterr().out.strip() == "595981123456"

    assert cli.main(["normalize-phone", "12345"]) == 1
    assert "invalid phone" in capsys.readouterr().out


def test_check_eligibility_exit_code_follows_result(capsys: pytest.CaptureFixture[str]) -> None:
    eligible = cli.main(
        [
            "check-eligibility",
            "--scheduled-at",
            "2026-03-10T10:00:00-03:00",
            "--now",
            "2026-03-10T12:10:00-03:00",
        ]
    )
    assert eligible == 0
    assert json.loads(capsys.readouterr().out)["eligible"] is True

    denied = cli.main(
        [
            "check-eligibility",
            "--status",
            "scheduled",
            "--scheduled-at",
            "2026-03-10T10:00:00-03:00",
            "--now",
            "2026-03-10T12:10:00-03:00",
        ]
    )
    assert denied == 1
    assert json.loads(capsys.readouterr().out)["reasons"] == ["confirmationCheck"]


def test_check_eligibility_rejects_naive_datetime() -> None:
    with pytest.raises(SystemExit):
        cli.main(["check-eligibility", "--scheduled-at", "2026-03-10T10:00:00"])


def _write_fixtures(tmp_path: Path) -> tuple[Path, Path]:
    channels = tmp_path / "channels.json"
    channels.write_text(
        json.dumps([{"channel_id": "rem-1", "country": "PY", "purpose": "reminders", "daily_limit": 100}]),
        encoding="utf-8",
    )
    appointments = tmp_path / "appointments.json"
    appointments.write_text(
        json.dumps(
            {
                "appointments": [
                    {
                        "appointment_id": "appt-1",
                        "patient_name": "Jane Testuser",
                        "patient_phone": "11987654321",
                        "scheduled_at": "2026-03-11T12:00:00-03:00",
                        "clinic_name": "Odonto Central",
                    }
                ]
            }
        ),
        encoding="utf-8",
    )
    return channels, appointments


def test_dispatch_dry_run_writes_summary_and_reports(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    store = tmp_path / "state" / "keys.json"
    monkeypatch.setenv("DENTAL_COMMS_IDEMPOTENCY_STORE_PATH", str(store))
    channels, appointments = _write_fixtures(tmp_path)
    summary_out = tmp_path / "out" / "summary.json"

    code = cli.main(
        [
            "dispatch",
            "--channels",
            str(channels),
            "--appointments",
            str(appointments),
            "--now",
            "2026-03-10T12:00:00-03:00",
            "--summary-out",
            str(summary_out),
            "--report-dir",
            str(tmp_path / "reports"),
        ]
    )

    assert code == 0
    printed = json.loads(capsys.readouterr().out)
    # one_day_before opens now; two_days_before closed at the same instant.
    assert printed["successful_sends"] == 1

    summary = json.loads(summary_out.read_text(encoding="utf-8"))
    assert summary["mode"] == "dry-run"
    assert Path(summary["report_json"]).exists()
    assert Path(summary["report_md"]).exists()
    assert not store.exists()
