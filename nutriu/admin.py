"""
This module defines the `AdminService`, the data operations behind the administrator screens.

It provides functionalities for:
- Listing, registering, updating and removing nutritionists.
- Validating nutritionist data before it is written.
- Computing the clinic-wide statistics shown on the administrator dashboard.
"""
# nutriu/admin.py

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from nutriu.clinic import PAYMENT_COMPLETED, parse_timestamp, same_month
from nutriu.errors import GatewayError, PermissionDenied, ValidationError
from nutriu.models import Administrator, Nutritionist

logger = logging.getLogger("nutriu.admin")

MIN_PASSWORD_LENGTH = 6
PHONE_DIGITS = 10

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def validate_nutritionist_form(form: Dict[str, Any], require_password: bool = True) -> Dict[str, Any]:
    """Checks a nutritionist form and returns the column values to store.

    Args:
        form (dict): Keys `given_name`, `family_name`, `username`, `email`,
            `phone`, `consultation_fee` and optionally `password`.
        require_password (bool): Whether a password must be supplied.

    Returns:
        dict: Values keyed by `nutriologos` column name.

    Raises:
        ValidationError: On the first rule the form breaks.
    """
    given = (form.get("given_name") or "").strip()
    family = (form.get("family_name") or "").strip()
    username = (form.get("username") or "").strip()
    email = (form.get("email") or "").strip()
    if not given or not family or not username or not email:
        raise ValidationError("Name, surname, username and email are required.")
    if not _EMAIL.match(email):
        raise ValidationError("Enter a valid email address.")

    password = form.get("password") or ""
    if require_password or password:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"The password must be at least {MIN_PASSWORD_LENGTH} characters long.")

    phone = re.sub(r"\D", "", str(form.get("phone") or ""))
    if len(phone) != PHONE_DIGITS:
        raise ValidationError(f"The phone number must have {PHONE_DIGITS} digits.")

    try:
        fee = float(form.get("consultation_fee"))
    except (TypeError, ValueError):
        raise ValidationError("The consultation fee must be a number greater than 0.")
    if fee <= 0:
        raise ValidationError("The consultation fee must be a number greater than 0.")

    return {
        "nombre": given,
        "apellido": family,
        "nombre_usuario": username,
        "correo": email,
        "numero_celular": phone,
        "tarifa_consulta": round(fee, 2),
    }


class AdminService:
    """Clinic-wide management operations for administrators."""

    def __init__(self, gateway, store, auth=None):
        """
        Args:
            gateway: Persistence gateway.
            store: The `IdentityStore` holding the signed-in identity.
            auth: Optional authentication service able to provision accounts.
        """
        self._gateway = gateway
        self._store = store
        self._auth = auth

    def _require_admin(self) -> Administrator:
        identity = self._store.identity
        if not isinstance(identity, Administrator):
            raise PermissionDenied("an administrator must be signed in")
        return identity

    def _remove_account(self, subject_id: str) -> None:
        try:
            self._auth.delete_user(subject_id)
        except GatewayError as e:
            logger.warning("Account %s could not be removed: %s", subject_id, e)

    def list_nutritionists(self) -> List[Nutritionist]:
        self._require_admin()
        rows = self._gateway.select(
            Nutritionist.TABLE,
            Nutritionist.SELECT + ", id_auth_user",
            order="apellido",
        )
        return [Nutritionist.from_row(row.get("id_auth_user") or "", row) for row in rows]

    def register_nutritionist(self, form: Dict[str, Any]) -> Dict:
        """Validates the form, provisions the account if possible, and stores the profile.

        Returns:
            dict: The inserted `nutriologos` row.
        """
        self._require_admin()
        values = validate_nutritionist_form(form, require_password=True)
        subject_id = None
        if self._auth is not None and getattr(self._auth, "can_provision", False):
            subject_id = self._auth.create_user(values["correo"], form["password"])
            values["id_auth_user"] = subject_id
        try:
            rows = self._gateway.insert(Nutritionist.TABLE, values)
        except GatewayError:
            if subject_id is not None:
                self._remove_account(subject_id)
            raise
        logger.info("Registered nutritionist %s", values["nombre_usuario"])
        return rows[0] if rows else {}

    def update_nutritionist(self, nutritionist_id: int, form: Dict[str, Any]) -> bool:
        """Updates a nutritionist's profile. A new password is not stored in the profile table."""
        self._require_admin()
        values = validate_nutritionist_form(form, require_password=False)
        rows = self._gateway.update(Nutritionist.TABLE, values, {Nutritionist.ID_COLUMN: int(nutritionist_id)})
        return bool(rows)

    def delete_nutritionist(self, nutritionist_id: int) -> bool:
        """Deletes the profile row and, when provisioning is available, its account."""
        self._require_admin()
        rows = self._gateway.delete(Nutritionist.TABLE, {Nutritionist.ID_COLUMN: int(nutritionist_id)})
        if not rows:
            return False
        subject_id = rows[0].get("id_auth_user")
        if subject_id and self._auth is not None and getattr(self._auth, "can_provision", False):
            self._remove_account(subject_id)
        return True

    def clinic_statistics(self, now: Optional[datetime] = None) -> Dict[str, float]:
        """Counts patients, nutritionists and appointments and sums this month's income."""
        self._require_admin()
        now = parse_timestamp(now or datetime.now(timezone.utc))
        today = now.astimezone(timezone.utc).date()

        patients = self._gateway.select("pacientes", "id_paciente")
        nutritionists = self._gateway.select(Nutritionist.TABLE, Nutritionist.ID_COLUMN)
        appointments = self._gateway.select("citas", "id_cita, fecha_hora")
        payments = self._gateway.select(
            "pagos", "monto, estado, fecha_pago", filters={"estado": PAYMENT_COMPLETED}
        )

        scheduled = [parse_timestamp(a["fecha_hora"]) for a in appointments if a.get("fecha_hora")]
        income = sum(
            float(p.get("monto") or 0)
            for p in payments
            if p.get("fecha_pago") and same_month(parse_timestamp(p["fecha_pago"]), now)
        )
        return {
            "patients": len(patients),
            "nutritionists": len(nutritionists),
            "appointments_today": sum(1 for when in scheduled if when.astimezone(timezone.utc).date() == today),
            "appointments_this_month": sum(1 for when in scheduled if same_month(when, now)),
            "income_this_month": income,
        }
