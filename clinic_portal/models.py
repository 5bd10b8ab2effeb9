from __future__ import annotations
from datetime import date as Date, datetime, time as Time
from enum import Enum
from pydantic import BaseModel, ConfigDict


class Role(str, Enum):
    PATIENT = "patient"
    PROVIDER = "provider"
    RECEPTIONIST = "receptionist"
    ADMINISTRATOR = "administrator"

    @classmethod
    def from_backend(cls, subtipo: str | None, type_id: int | None = None) -> "Role":
        """Map the backend ``subtipo`` (or, failing that, ``idtipousuario``) to a role."""
        by_name = {
            "paciente": cls.PATIENT,
            "odontologo": cls.PROVIDER,
            "odontólogo": cls.PROVIDER,
            "recepcionista": cls.RECEPTIONIST,
            "administrador": cls.ADMINISTRATOR,
        }
        if subtipo:
            key = subtipo.strip().lower()
            if key in by_name:
                return by_name[key]
            try:
                return cls(key)
            except ValueError:
                pass
        by_id = {1: cls.ADMINISTRATOR, 2: cls.PATIENT}
        if type_id in by_id:
            return by_id[type_id]
        raise ValueError(f"unknown role: subtipo={subtipo!r} idtipousuario={type_id!r}")


STAFF_ROLES = frozenset({Role.PROVIDER, Role.RECEPTIONIST, Role.ADMINISTRATOR})


class Identity(BaseModel):
    """Who is signed in. ``id`` is the portal user code (``usuario.codigo``)."""

    model_config = ConfigDict(frozen=True)

    id: int
    display_name: str
    email: str
    role: Role
    user_id: int | None = None
    notifications: bool | None = None

    @classmethod
    def from_auth_payload(cls, payload: dict) -> "Identity":
        """Build from the ``{user, usuario}`` body of ``/auth/login/`` and ``/auth/user/``."""
        user = payload.get("user") or {}
        usuario = payload.get("usuario") or {}
        name = " ".join(p for p in (usuario.get("nombre"), usuario.get("apellido")) if p)
        return cls(
            id=usuario["codigo"],
            display_name=name or user.get("email", ""),
            email=user.get("email") or usuario.get("correoelectronico", ""),
            role=Role.from_backend(usuario.get("subtipo") or usuario.get("role"), usuario.get("idtipousuario")),
            user_id=user.get("id"),
            notifications=usuario.get("recibir_notificaciones"),
        )


class SessionStatus(str, Enum):
    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


class SessionState(BaseModel):
    """Immutable snapshot; the session manager replaces it whole."""

    model_config = ConfigDict(frozen=True)

    status: SessionStatus = SessionStatus.LOADING
    token: str | None = None
    identity: Identity | None = None

    @property
    def authenticated(self) -> bool:
        return bool(self.token) and self.identity is not None


class Credentials(BaseModel):
    email: str
    password: str


class LoginResult(BaseModel):
    token: str
    identity: Identity


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    @property
    def terminal(self) -> bool:
        return self in (AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED)


class Appointment(BaseModel):
    id: int
    patient_ref: int
    provider_ref: int
    date: Date
    slot_ref: int
    consultation_type_ref: int | None = None
    status: AppointmentStatus
    slot_time: Time | None = None  # only when the server expands the slot
    patient_name: str | None = None
    provider_name: str | None = None
    consultation_type_name: str | None = None
    cancel_reason: str | None = None

    def starts_at(self) -> datetime:
        """Start time; end of day when the slot time is unknown."""
        return datetime.combine(self.date, self.slot_time or Time.max)


class TimeSlot(BaseModel):
    id: int
    time: Time | None = None


class ConsultationType(BaseModel):
    id: int
    name: str


class Provider(BaseModel):
    id: int
    name: str


class Patient(BaseModel):
    id: int
    name: str | None = None
    document: str | None = None


class Page(BaseModel):
    results: list[Appointment]
    count: int
    next_page: int | None = None


class Sex(str, Enum):
    MALE = "M"
    FEMALE = "F"


# portal field -> backend field for profile edits
PROFILE_FIELDS = {
    "first_name": "nombre",
    "last_name": "apellido",
    "email": "correoelectronico",
    "sex": "sexo",
    "phone": "telefono",
    "notifications": "recibir_notificaciones",
}


class Profile(BaseModel):
    """The signed-in user's own record as served by ``/usuario/me``."""

    id: int
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    sex: Sex | None = None
    phone: str | None = None
    type_id: int | None = None
    notifications: bool | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> "Profile":
        return cls(
            id=payload["codigo"],
            first_name=payload.get("nombre") or "",
            last_name=payload.get("apellido") or "",
            email=payload.get("correoelectronico") or "",
            sex=payload.get("sexo") or None,
            phone=payload.get("telefono"),
            type_id=payload.get("idtipousuario"),
            notifications=payload.get("recibir_notificaciones"),
        )

    @property
    def display_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class UserRecord(BaseModel):
    id: int
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str | None = None
    type_id: int

    @classmethod
    def from_payload(cls, payload: dict) -> "UserRecord":
        return cls(
            id=payload["codigo"],
            first_name=payload.get("nombre") or "",
            last_name=payload.get("apellido") or "",
            email=payload.get("correoelectronico") or "",
            phone=payload.get("telefono"),
            type_id=payload["idtipousuario"],
        )


class UserType(BaseModel):
    id: int
    name: str
    description: str | None = None
