"""Read/write boundary to the CRM's appointment store."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Protocol

from dental_comms.domain.models import Appointment, AppointmentStatus, ClinicConfig
from dental_comms.utils.phone import PhoneRules


class AppointmentRepository(Protocol):
    def get_appointments_due_for_reminder(self, start: datetime, end: datetime) -> list[Appointment]: ...

    def get_appointment_by_phone(self, phone: str) -> Appointment | None: ...

    def get_appointment(self, appointment_id: str) -> Appointment | None: ...

    def update_appointment_status(self, appointment_id: str, status: AppointmentStatus) -> Appointment | None: ...

    def get_clinic_config(self) -> ClinicConfig: ...


class InMemoryAppointmentRepository:
    """Dictionary-backed repository; phones are compared in canonical form."""

    def __init__(
        self,
        appointments: Iterable[Appointment] = (),
        clinic_config: ClinicConfig | None = None,
        phone_rules: PhoneRules | None = None,
    ) -> None:
        self._appointments = {appointment.appointment_id: appointment for appointment in appointments}
        self._clinic_config = clinic_config or ClinicConfig(clinic_name="Clínica Dental")
        self._phone_rules = phone_rules or PhoneRules()
        self._lock = threading.Lock()

    def add(self, appointment: Appointment) -> None:
        with self._lock:
            self._appointments[appointment.appointment_id] = appointment

    def all(self) -> list[Appointment]:
        with self._lock:
            return [replace(appointment) for appointment in self._appointments.values()]

    def get_appointments_due_for_reminder(self, start: datetime, end: datetime) -> list[Appointment]:
        with self._lock:
            due = [
                replace(appointment)
                for appointment in self._appointments.values()
                if appointment.is_open and start <= appointment.scheduled_at <= end
            ]
        return sorted(due, key=lambda appointment: appointment.scheduled_at)

    def get_appointment_by_phone(self, phone: str) -> Appointment | None:
        """Latest scheduled open appointment for the phone, if any."""
        target = self._phone_rules.normalize(phone) or phone
        with self._lock:
            matches = [
                appointment
                for appointment in self._appointments.values()
                if appointment.is_open
                and self._phone_rules.normalize(appointment.patient_phone, appointment.country) == target
            ]
            if not matches:
                return None
            return replace(max(matches, key=lambda appointment: appointment.scheduled_at))

    def get_appointment(self, appointment_id: str) -> Appointment | None:
        with self._lock:
            appointment = self._appointments.get(appointment_id)
            return replace(appointment) if appointment else None

    def update_appointment_status(self, appointment_id: str, status: AppointmentStatus) -> Appointment | None:
        with self._lock:
            appointment = self._appointments.get(appointment_id)
            if appointment is None:
                return None
            appointment.status = status
            return replace(appointment)

    def get_clinic_config(self) -> ClinicConfig:
        return replace(self._clinic_config)
