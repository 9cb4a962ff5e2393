"""
This module defines the `ClinicService`, the data operations behind the nutritionist screens.

It provides functionalities for:
- Listing the patients actively assigned to the signed-in nutritionist.
- Listing, scheduling and completing appointments, including their payment state.
- Summarising collected and pending payments.
- Listing and assigning diet plans.
- Building the figures shown on the nutritionist dashboard.

Every operation is scoped to the signed-in nutritionist taken from the
`IdentityStore`; calling them without a nutritionist identity raises
`PermissionDenied`.
"""
# nutriu/clinic.py

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from nutriu.errors import PermissionDenied, ValidationError
from nutriu.models import (
    ACTIVE_STATUSES,
    Appointment,
    AppointmentStatus,
    DietPlan,
    Nutritionist,
    Patient,
)

logger = logging.getLogger("nutriu.clinic")

# Amount shown for an appointment with no payment rows and no configured fee.
DEFAULT_APPOINTMENT_AMOUNT = 800.0
APPOINTMENT_DURATION_MINUTES = 60
APPOINTMENT_TYPE = "presencial"
PAYMENT_COMPLETED = "completado"

APPOINTMENT_SELECT = (
    "id_cita, fecha_hora, estado, id_paciente, "
    "pacientes!inner (nombre, apellido, correo), "
    "pagos!left (monto, estado)"
)


def parse_timestamp(value) -> datetime:
    """Parses an ISO 8601 timestamp from the remote store into an aware datetime."""
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def same_month(when: datetime, now: datetime) -> bool:
    """True if `when` falls in the calendar month of `now`, compared in UTC."""
    when = when.astimezone(timezone.utc)
    now = now.astimezone(timezone.utc)
    return (when.year, when.month) == (now.year, now.month)


class ClinicService:
    """Patient, appointment, payment and diet operations for a nutritionist."""

    def __init__(self, gateway, store):
        """
        Args:
            gateway: Persistence gateway (see `nutriu.gateway.SupabaseGateway`).
            store: The `IdentityStore` holding the signed-in identity.
        """
        self._gateway = gateway
        self._store = store

    def _nutritionist(self) -> Nutritionist:
        identity = self._store.identity
        if not isinstance(identity, Nutritionist):
            raise PermissionDenied("a nutritionist must be signed in")
        return identity

    # Patients

    def _assigned_patient_ids(self, nutritionist_id: int) -> List[int]:
        relations = self._gateway.select(
            "paciente_nutriologo",
            "id_paciente",
            filters={"id_nutriologo": nutritionist_id, "activo": True},
        )
        return [int(r["id_paciente"]) for r in relations]

    def list_patients(self) -> List[Patient]:
        """Returns the patients actively assigned to the signed-in nutritionist."""
        me = self._nutritionist()
        patient_ids = self._assigned_patient_ids(me.role_profile_id)
        if not patient_ids:
            return []
        rows = self._gateway.select(
            "pacientes",
            "id_paciente, nombre, apellido, correo",
            in_filters={"id_paciente": patient_ids},
        )
        return [Patient.from_row(row) for row in rows]

    def _require_assigned(self, me: Nutritionist, patient_id) -> int:
        if patient_id in (None, ""):
            raise ValidationError("Select a patient.")
        try:
            patient_id = int(patient_id)
        except (TypeError, ValueError):
            raise ValidationError("Select a valid patient.")
        if patient_id not in self._assigned_patient_ids(me.role_profile_id):
            raise PermissionDenied("this patient is not assigned to you")
        return patient_id

    # Appointments

    def _appointment_from_row(self, row: Dict, fee: Optional[float]) -> Appointment:
        patient = row.get("pacientes") or {}
        payments = row.get("pagos") or []
        paid = any(p.get("estado") == PAYMENT_COMPLETED for p in payments)
        if payments:
            amount = sum(float(p.get("monto") or 0) for p in payments)
        else:
            amount = fee if fee else DEFAULT_APPOINTMENT_AMOUNT
        name = " ".join(part for part in (patient.get("nombre"), patient.get("apellido")) if part)
        return Appointment(
            appointment_id=int(row["id_cita"]),
            scheduled_at=parse_timestamp(row["fecha_hora"]),
            status=row.get("estado") or AppointmentStatus.PENDING.value,
            patient_id=row.get("id_paciente"),
            patient_name=name,
            patient_email=patient.get("correo") or "",
            paid=paid,
            amount=amount,
        )

    def list_appointments(self) -> List[Appointment]:
        """Returns the nutritionist's appointments, most recent first."""
        me = self._nutritionist()
        rows = self._gateway.select(
            "citas",
            APPOINTMENT_SELECT,
            filters={"id_nutriologo": me.role_profile_id},
            order="fecha_hora",
            descending=True,
        )
        return [self._appointment_from_row(row, me.consultation_fee) for row in rows]

    @staticmethod
    def split_appointments(appointments: List[Appointment]) -> Tuple[List[Appointment], List[Appointment]]:
        """Splits appointments into (active, completed)."""
        active = [a for a in appointments if a.status in ACTIVE_STATUSES]
        completed = [a for a in appointments if a.status == AppointmentStatus.COMPLETED.value]
        return active, completed

    def schedule_appointment(self, patient_id, when: datetime, now: Optional[datetime] = None) -> Dict:
        """Books a pending, in-person appointment for an assigned patient.

        Args:
            patient_id: Id of the patient; must be assigned to the nutritionist.
            when (datetime): Start time. Naive values are taken as UTC.
            now (datetime, optional): Reference time for the past-date check.

        Returns:
            dict: The inserted row.

        Raises:
            ValidationError: If the patient is missing or the date is in the past.
            PermissionDenied: If the patient is not assigned to the nutritionist.
        """
        me = self._nutritionist()
        if when is None:
            raise ValidationError("Choose a date and time.")
        when = parse_timestamp(when)
        now = parse_timestamp(now or datetime.now(timezone.utc))
        if when < now:
            raise ValidationError("Appointments cannot be scheduled in the past.")
        patient_id = self._require_assigned(me, patient_id)
        rows = self._gateway.insert("citas", {
            "id_paciente": patient_id,
            "id_nutriologo": me.role_profile_id,
            "fecha_hora": when.astimezone(timezone.utc).isoformat(),
            "estado": AppointmentStatus.PENDING.value,
            "duracion_minutos": APPOINTMENT_DURATION_MINUTES,
            "tipo_cita": APPOINTMENT_TYPE,
        })
        logger.info("Scheduled appointment for patient %s", patient_id)
        return rows[0] if rows else {}

    def complete_appointment(self, appointment_id: int) -> bool:
        """Marks one of the nutritionist's appointments as completed."""
        me = self._nutritionist()
        rows = self._gateway.update(
            "citas",
            {"estado": AppointmentStatus.COMPLETED.value},
            {"id_cita": int(appointment_id), "id_nutriologo": me.role_profile_id},
        )
        return bool(rows)

    # Payments

    @staticmethod
    def payment_summary(appointments: List[Appointment], now: Optional[datetime] = None) -> Dict[str, float]:
        """Totals collected and pending amounts and counts this month's appointments."""
        now = parse_timestamp(now or datetime.now(timezone.utc))
        collected = sum(a.amount for a in appointments if a.paid)
        pending = sum(
            a.amount for a in appointments
            if not a.paid and a.status != AppointmentStatus.CANCELLED.value
        )
        this_month = sum(1 for a in appointments if same_month(a.scheduled_at, now))
        return {"collected": collected, "pending": pending, "appointments_this_month": this_month}

    # Diet plans

    def list_diet_plans(self) -> List[DietPlan]:
        me = self._nutritionist()
        rows = self._gateway.select(
            "dietas",
            "*",
            filters={"id_nutriologo": me.role_profile_id},
            order="fecha_creacion",
            descending=True,
        )
        return [DietPlan.from_row(row) for row in rows]

    def assign_diet_plan(self, patient_id, meals: Dict[str, str], calories=None) -> Dict:
        """Stores a diet plan for an assigned patient.

        Args:
            patient_id: Id of the patient.
            meals (dict): Meal name (see `DietPlan.MEAL_COLUMNS`) to description.
            calories: Optional daily calorie target; must be a positive integer.

        Returns:
            dict: The inserted row.
        """
        me = self._nutritionist()
        values = {}
        for name, column in DietPlan.MEAL_COLUMNS.items():
            text = (meals.get(name) or "").strip()
            if text:
                values[column] = text
        if not values:
            raise ValidationError("Describe at least one meal.")
        if calories not in (None, ""):
            try:
                calories = int(calories)
            except (TypeError, ValueError):
                raise ValidationError("Calories must be a whole number.")
            if calories <= 0:
                raise ValidationError("Calories must be greater than zero.")
            values["calorias"] = calories
        patient_id = self._require_assigned(me, patient_id)
        values.update({"id_paciente": patient_id, "id_nutriologo": me.role_profile_id})
        rows = self._gateway.insert("dietas", values)
        return rows[0] if rows else {}

    # Dashboard

    def dashboard_summary(self, now: Optional[datetime] = None) -> Dict[str, float]:
        """Figures for the nutritionist dashboard."""
        now = parse_timestamp(now or datetime.now(timezone.utc))
        appointments = self.list_appointments()
        active, completed = self.split_appointments(appointments)
        return {
            "patients": len(self.list_patients()),
            "active_appointments": len(active),
            "completed_appointments": len(completed),
            "income_this_month": sum(
                a.amount for a in appointments if a.paid and same_month(a.scheduled_at, now)
            ),
            "total_appointments": len(appointments),
        }
