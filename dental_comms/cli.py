"""Top-level dental-comms command line interface."""

from __future__ import annotations

import argparse
import json
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from dental_comms.adapters.appointments import InMemoryAppointmentRepository
from dental_comms.classification.intent import classify_intent
from dental_comms.domain.models import Appointment, AppointmentStatus
from dental_comms.eligibility.post_attendance import is_eligible
from dental_comms.jobs.tasks import (
    dispatch_tick,
    load_appointments,
    load_channels,
    load_clinic_config,
    resolve_config,
)
from dental_comms.orchestration.service import build_service
from dental_comms.utils.phone import DEFAULT_AREA_CODE, DEFAULT_COUNTRY_CODE, PhoneRules, normalize_phone

MODE_CHOICES = ("dry-run", "confirm-send")


def _aware_datetime(value: str) -> datetime:
    normalized = value.replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(
            f"{value!r} must be an ISO-8601 datetime (example: 2026-02-13T10:00:00-03:00)"
        ) from exc
    if parsed.tzinfo is None:
        raise argparse.ArgumentTypeError(f"{value!r} must include a UTC offset")
    return parsed


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dental-comms", description="Dental clinic WhatsApp communications CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    classify_parser = subparsers.add_parser("classify", help="Detect the intent of a patient reply")
    classify_parser.add_argument("text", help="Message text as the patient wrote it")
    classify_parser.set_defaults(handler=_handle_classify)

    phone_parser = subparsers.add_parser("normalize-phone", help="Normalize a phone number to dialable digits")
    phone_parser.add_argument("phone")
    phone_parser.add_argument("--country", help="ISO country (BR, BO, PY, PA, CL, UY, CO, PE)")
    phone_parser.add_argument("--country-code", default=DEFAULT_COUNTRY_CODE)
    phone_parser.add_argument("--area-code", default=DEFAULT_AREA_CODE)
    phone_parser.set_defaults(handler=_handle_normalize_phone)

    eligibility_parser = subparsers.add_parser(
        "check-eligibility",
        help="Evaluate whether the post-attendance message may be sent",
    )
    eligibility_parser.add_argument(
        "--status",
        choices=[status.value for status in AppointmentStatus],
        default=AppointmentStatus.CONFIRMED.value,
    )
    eligibility_parser.add_argument("--scheduled-at", type=_aware_datetime, required=True)
    eligibility_parser.add_argument("--now", type=_aware_datetime, help="Evaluation time (default: now, UTC)")
    eligibility_parser.add_argument("--timezone", help="IANA timezone for the calendar-day check")
    eligibility_parser.set_defaults(handler=_handle_check_eligibility)

    dispatch_parser = subparsers.add_parser("dispatch", help="Run one reminder dispatch tick over JSON fixtures")
    dispatch_parser.add_argument("--channels", type=Path, required=True, help="JSON file with channels")
    dispatch_parser.add_argument("--appointments", type=Path, required=True, help="JSON file with appointments")
    dispatch_parser.add_argument("--clinic", type=Path, help="JSON file with the clinic configuration")
    dispatch_parser.add_argument(
        "--mode",
        choices=MODE_CHOICES,
        default="dry-run",
        help="Execution mode: dry-run (no provider calls) or confirm-send (sends through the gateway)",
    )
    dispatch_parser.add_argument("--now", type=_aware_datetime, help="Tick time (default: now, UTC)")
    dispatch_parser.add_argument("--summary-out", type=Path, help="Optional explicit summary artifact path")
    dispatch_parser.add_argument("--report-dir", type=Path, help="Directory for JSON/Markdown dispatch reports")
    dispatch_parser.set_defaults(handler=_handle_dispatch)

    return parser


def _handle_classify(args: argparse.Namespace) -> int:
    result = classify_intent(args.text)
    print(
        json.dumps(
            {
                "intent": result.intent.value,
                "confidence": result.confidence,
                "matched_keyword": result.matched_keyword,
            },
            ensure_ascii=False,
        )
    )
    return 0


def _handle_normalize_phone(args: argparse.Namespace) -> int:
    normalized = normalize_phone(
        args.phone,
        country=args.country,
        default_country_code=args.country_code,
        default_area_code=args.area_code,
    )
    if normalized is None:
        print(f"invalid phone: {args.phone}")
        return 1
    print(normalized)
    return 0


def _handle_check_eligibility(args: argparse.Namespace) -> int:
    appointment = Appointment(
        appointment_id="cli",
        patient_name="",
        patient_phone="",
        scheduled_at=args.scheduled_at,
        status=AppointmentStatus(args.status),
    )
    result = is_eligible(appointment, args.now or datetime.now(timezone.utc), args.timezone)
    print(json.dumps(result.as_dict(), indent=2, ensure_ascii=False))
    return 0 if result.eligible else 1


def _handle_dispatch(args: argparse.Namespace) -> int:
    confirm_send = args.mode == "confirm-send"
    config = replace(resolve_config(dry_run=not confirm_send), artifact_root=args.report_dir)
    if not confirm_send:
        # Dry runs must not mark reminders as delivered.
        config = replace(config, idempotency_store_path=None)
    phone_rules = PhoneRules(config.default_country_code, config.default_area_code, config.explicit_country)
    appointments = InMemoryAppointmentRepository(
        load_appointments(args.appointments),
        clinic_config=load_clinic_config(args.clinic),
        phone_rules=phone_rules,
    )
    service = build_service(config, appointments, channels=load_channels(args.channels))
    result = dispatch_tick(service, args.now)

    if args.summary_out:
        args.summary_out.parent.mkdir(parents=True, exist_ok=True)
        args.summary_out.write_text(
            json.dumps(
                {
                    "mode": args.mode,
                    "now": (args.now or service.clock()).isoformat(),
                    "summary": result["summary"],
                    "report_json": result["report_json"],
                    "report_md": result["report_md"],
                },
                indent=2,
                ensure_ascii=False,
            )
            + "\n",
            encoding="utf-8",
        )
    print(json.dumps(result["summary"], indent=2, ensure_ascii=False))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    return args.handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
