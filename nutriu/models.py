"""
This module defines the data models for the Nutri U application.

The identity of the signed-in user is modelled as a tagged variant: an
`Administrator` or a `Nutritionist` (absence of an identity is simply `None`).
Both variants share the base attributes of `Identity`; only `Nutritionist`
carries the consultation fee, bio and avatar reference, so an administrator
identity can never hold them.

The module also holds the session value exchanged with the authentication
service and the records returned by the clinic services.
"""
# nutriu/models.py

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from nutriu.errors import CacheCorruptionError


class Role(str, Enum):
    ADMINISTRATOR = "administrator"
    NUTRITIONIST = "nutritionist"


class SessionEvent(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


@dataclass(frozen=True)
class Session:
    """An authenticated session as reported by the authentication service."""
    subject_id: str
    email: str = ""
    access_token: str = field(default="", repr=False)
    refresh_token: str = field(default="", repr=False)


@dataclass(frozen=True)
class Identity:
    """Attributes shared by every resolved identity.

    Attributes:
        subject_id (str): Opaque id issued by the authentication service.
        role_profile_id (int): Primary key of the matched role-table row.
        email (str): Contact email from the profile row.
        given_name (str): First name.
        family_name (str): Last name.
        username (str): Login name shown in the UI (empty for administrators).
        phone (str): Mobile phone number.
    """
    subject_id: str
    role_profile_id: int
    email: str = ""
    given_name: str = ""
    family_name: str = ""
    username: str = ""
    phone: str = ""

    role = None

    # Identity attribute -> column in the role table. Subclasses extend it.
    COLUMNS = {
        "given_name": "nombre",
        "family_name": "apellido",
        "email": "correo",
        "phone": "numero_celular",
    }

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.given_name, self.family_name) if part)

    def to_dict(self) -> Dict[str, Any]:
        """Serializes the identity into a flat, JSON-friendly dictionary."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["role"] = self.role.value
        return data

    def column_values(self, changes: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Keeps only the changes this role may write.

        Args:
            changes (dict): Attribute names mapped to new values.

        Returns:
            tuple: (column values for the remote update, accepted attribute values).
        """
        columns = {}
        accepted = {}
        for name, value in changes.items():
            column = self.COLUMNS.get(name)
            if column is None:
                continue
            columns[column] = value
            accepted[name] = value
        return columns, accepted

    def merged(self, accepted: Dict[str, Any]) -> "Identity":
        return replace(self, **accepted)


@dataclass(frozen=True)
class Administrator(Identity):
    role = Role.ADMINISTRATOR

    TABLE = "administradores"
    ID_COLUMN = "id_admin"
    SELECT = "id_admin, nombre, apellido, correo, numero_celular"

    @classmethod
    def from_row(cls, subject_id: str, row: Dict[str, Any]) -> "Administrator":
        return cls(
            subject_id=subject_id,
            role_profile_id=int(row["id_admin"]),
            email=row.get("correo") or "",
            given_name=row.get("nombre") or "",
            family_name=row.get("apellido") or "",
            phone=row.get("numero_celular") or "",
        )


@dataclass(frozen=True)
class Nutritionist(Identity):
    consultation_fee: Optional[float] = None
    bio: Optional[str] = None
    avatar_ref: Optional[str] = None

    role = Role.NUTRITIONIST

    TABLE = "nutriologos"
    ID_COLUMN = "id_nutriologo"
    SELECT = (
        "id_nutriologo, nombre, apellido, correo, numero_celular, "
        "nombre_usuario, tarifa_consulta, biografia, foto_perfil"
    )
    COLUMNS = dict(
        Identity.COLUMNS,
        username="nombre_usuario",
        consultation_fee="tarifa_consulta",
        bio="biografia",
        avatar_ref="foto_perfil",
    )

    @classmethod
    def from_row(cls, subject_id: str, row: Dict[str, Any]) -> "Nutritionist":
        fee = row.get("tarifa_consulta")
        return cls(
            subject_id=subject_id,
            role_profile_id=int(row["id_nutriologo"]),
            email=row.get("correo") or "",
            given_name=row.get("nombre") or "",
            family_name=row.get("apellido") or "",
            username=row.get("nombre_usuario") or "",
            phone=row.get("numero_celular") or "",
            consultation_fee=float(fee) if fee is not None else None,
            bio=row.get("biografia"),
            avatar_ref=row.get("foto_perfil"),
        )


# Probe order for role resolution: administrators take precedence.
ROLE_TABLES = (Administrator, Nutritionist)

_VARIANTS = {Role.ADMINISTRATOR.value: Administrator, Role.NUTRITIONIST.value: Nutritionist}


def identity_from_dict(data: Any) -> Identity:
    """Rebuilds an identity from the output of `Identity.to_dict`.

    Raises:
        CacheCorruptionError: If the data is not a well-formed identity record.
    """
    if not isinstance(data, dict):
        raise CacheCorruptionError("identity record is not an object")
    variant = _VARIANTS.get(data.get("role"))
    if variant is None:
        raise CacheCorruptionError(f"unknown role {data.get('role')!r}")
    subject_id = data.get("subject_id")
    if not isinstance(subject_id, str) or not subject_id:
        raise CacheCorruptionError("identity record has no subject_id")
    profile_id = data.get("role_profile_id")
    if isinstance(profile_id, bool) or not isinstance(profile_id, int):
        raise CacheCorruptionError("identity record has no numeric role_profile_id")
    known = {f.name for f in fields(variant)}
    values = {name: value for name, value in data.items() if name in known}
    try:
        return variant(**values)
    except TypeError as exc:
        raise CacheCorruptionError(str(exc)) from exc


class AppointmentStatus(str, Enum):
    PENDING = "pendiente"
    CONFIRMED = "confirmada"
    COMPLETED = "completada"
    CANCELLED = "cancelada"


ACTIVE_STATUSES = frozenset({AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value})


@dataclass(frozen=True)
class Patient:
    patient_id: int
    given_name: str = ""
    family_name: str = ""
    email: str = ""

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.given_name, self.family_name) if part)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Patient":
        return cls(
            patient_id=int(row["id_paciente"]),
            given_name=row.get("nombre") or "",
            family_name=row.get("apellido") or "",
            email=row.get("correo") or "",
        )


@dataclass(frozen=True)
class Appointment:
    """An appointment row joined with its patient and payments."""
    appointment_id: int
    scheduled_at: datetime
    status: str
    patient_id: Optional[int] = None
    patient_name: str = ""
    patient_email: str = ""
    paid: bool = False
    amount: float = 0.0

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


@dataclass(frozen=True)
class DietPlan:
    """A meal plan assigned to a patient."""
    plan_id: Optional[int]
    patient_id: int
    breakfast: str = ""
    morning_snack: str = ""
    lunch: str = ""
    afternoon_snack: str = ""
    dinner: str = ""
    calories: Optional[int] = None
    created_at: Optional[str] = None

    MEAL_COLUMNS = {
        "breakfast": "desayuno",
        "morning_snack": "colacion_matutina",
        "lunch": "comida",
        "afternoon_snack": "merienda",
        "dinner": "cena",
    }

    @property
    def meals(self) -> List[Tuple[str, str]]:
        return [(name, getattr(self, name)) for name in self.MEAL_COLUMNS if getattr(self, name)]

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DietPlan":
        calories = row.get("calorias")
        return cls(
            plan_id=row.get("id_dieta"),
            patient_id=int(row["id_paciente"]),
            calories=int(calories) if calories is not None else None,
            created_at=row.get("fecha_creacion"),
            **{name: row.get(column) or "" for name, column in cls.MEAL_COLUMNS.items()},
        )
