"""Appointment lifecycle: booking, confirmation, cancellation, rescheduling.

The backend is the authority on slot availability; the checks here run
before a mutation is sent so obvious double-bookings are reported as
``Conflict`` without a round trip, and whatever the server rejects is
mapped to the same error types. No client-side state changes before the
server acknowledges a mutation.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Callable
from . import config
from .client import ApiClient, results_of
from .errors import AuthenticationFailure, Conflict, PermissionDenied, ValidationFailure
from .models import (
    STAFF_ROLES,
    Appointment,
    AppointmentStatus,
    ConsultationType,
    Identity,
    Page,
    Patient,
    Provider,
    Role,
    TimeSlot,
)
from .session import SessionManager

logger = logging.getLogger(__name__)

APPOINTMENTS_PATH = "/consultas/"
AVAILABLE_SLOTS_PATH = "/horarios-disponibles/"
PROVIDERS_PATH = "/odontologos/"
TIME_SLOTS_PATH = "/horarios/"
CONSULTATION_TYPES_PATH = "/tipos-consulta/"
PATIENTS_PATH = "/pacientes/"

# idestadoconsulta values on the wire
STATUS_IDS = {
    AppointmentStatus.SCHEDULED: 1,
    AppointmentStatus.CONFIRMED: 2,
    AppointmentStatus.CANCELLED: 3,
    AppointmentStatus.COMPLETED: 4,
}
_STATUS_BY_ID = {v: k for k, v in STATUS_IDS.items()}
_STATUS_BY_NAME = {
    "agendada": AppointmentStatus.SCHEDULED,
    "confirmada": AppointmentStatus.CONFIRMED,
    "cancelada": AppointmentStatus.CANCELLED,
    "finalizada": AppointmentStatus.COMPLETED,
    "completada": AppointmentStatus.COMPLETED,
}

CANCEL_ROLES = frozenset({Role.RECEPTIONIST, Role.ADMINISTRATOR})

# event -> {from: to}; anything missing is not allowed
TRANSITIONS: dict[str, dict[AppointmentStatus, AppointmentStatus]] = {
    "confirm": {AppointmentStatus.SCHEDULED: AppointmentStatus.CONFIRMED},
    "cancel": {
        AppointmentStatus.SCHEDULED: AppointmentStatus.CANCELLED,
        AppointmentStatus.CONFIRMED: AppointmentStatus.CANCELLED,
    },
    "reschedule": {
        AppointmentStatus.SCHEDULED: AppointmentStatus.SCHEDULED,
        AppointmentStatus.CONFIRMED: AppointmentStatus.SCHEDULED,
    },
    "elapse": {
        AppointmentStatus.SCHEDULED: AppointmentStatus.COMPLETED,
        AppointmentStatus.CONFIRMED: AppointmentStatus.COMPLETED,
    },
}


def next_status(current: AppointmentStatus, event: str) -> AppointmentStatus:
    """Target status for ``event``, or ``Conflict`` if the graph has no such edge."""
    try:
        return TRANSITIONS[event][current]
    except KeyError:
        raise Conflict(f"Cannot {event} an appointment that is {current.value}") from None


def is_stale(appointment: Appointment, now: datetime) -> bool:
    """Past its start time without reaching a terminal status."""
    return not appointment.status.terminal and appointment.starts_at() < now


# -- wire parsing ---------------------------------------------------------

def _parse_time(value: Any) -> time | None:
    if isinstance(value, time):
        return value
    if isinstance(value, str) and value:
        return time.fromisoformat(value)
    return None


def _person(value: Any) -> tuple[int, str | None]:
    """``codpaciente``/``cododontologo`` come as a bare code or a nested user block."""
    if isinstance(value, dict):
        user = value.get("codusuario")
        if isinstance(user, dict):
            name = " ".join(p for p in (user.get("nombre"), user.get("apellido")) if p)
            return user["codigo"], name or None
        if isinstance(user, int):
            return user, None
        return value.get("codigo", value.get("id")), None
    return int(value), None


def _status(value: Any) -> AppointmentStatus:
    if isinstance(value, dict):
        name = (value.get("estado") or "").strip().lower()
        if name in _STATUS_BY_NAME:
            return _STATUS_BY_NAME[name]
        value = value.get("id")
    if isinstance(value, str):
        key = value.strip().lower()
        if key in _STATUS_BY_NAME:
            return _STATUS_BY_NAME[key]
        return AppointmentStatus(key)
    return _STATUS_BY_ID[int(value)]


def appointment_from_payload(payload: dict) -> Appointment:
    patient_ref, patient_name = _person(payload["codpaciente"])
    provider_ref, provider_name = _person(payload["cododontologo"])

    slot = payload["idhorario"]
    slot_ref, slot_time = (slot.get("id"), _parse_time(slot.get("hora"))) if isinstance(slot, dict) else (slot, None)

    ctype = payload.get("idtipoconsulta")
    if isinstance(ctype, dict):
        ctype_ref, ctype_name = ctype.get("id"), ctype.get("nombreconsulta")
    else:
        ctype_ref, ctype_name = ctype, None

    return Appointment(
        id=payload["id"],
        patient_ref=patient_ref,
        provider_ref=provider_ref,
        date=payload["fecha"],
        slot_ref=slot_ref,
        slot_time=slot_time,
        consultation_type_ref=ctype_ref,
        consultation_type_name=ctype_name,
        status=_status(payload.get("idestadoconsulta", 1)),
        patient_name=patient_name,
        provider_name=provider_name,
        cancel_reason=payload.get("motivo_cancelacion"),
    )


def _merge(current: Appointment, data: Any, **changes) -> Appointment:
    """Prefer the server's record; fall back to patching the one we had."""
    if isinstance(data, dict) and {"id", "codpaciente", "cododontologo", "fecha", "idhorario"} <= set(data):
        updated = appointment_from_payload(data)
        # keep the labels we already resolved when the server answers with bare codes
        keep = {
            k: getattr(current, k)
            for k in ("patient_name", "provider_name", "consultation_type_name")
            if getattr(updated, k) is None
        }
        if updated.slot_time is None and updated.slot_ref == current.slot_ref:
            keep["slot_time"] = current.slot_time
        return updated.model_copy(update=keep)
    return current.model_copy(update=changes)


# -- engine -------------------------------------------------------------

class AppointmentEngine:
    def __init__(
        self,
        client: ApiClient,
        session: SessionManager,
        *,
        clock: Callable[[], datetime] = datetime.now,
        cancel_reason_max: int | None = None,
    ):
        self.client = client
        self.session = session
        self.clock = clock
        self.cancel_reason_max = cancel_reason_max or config.CANCEL_REASON_MAX

    def _actor(self) -> Identity:
        if not self.session.authenticated:
            raise AuthenticationFailure("Sign in to manage appointments")
        return self.session.identity

    def _require_future(self, day: date) -> None:
        if day < self.clock().date():
            raise ValidationFailure(fields={"fecha": "Choose a date that has not passed"})

    @staticmethod
    def _may_modify(actor: Identity, appointment: Appointment) -> bool:
        if actor.role in CANCEL_ROLES:
            return True
        return actor.role is Role.PATIENT and appointment.patient_ref == actor.id

    # reference data

    async def providers(self) -> list[Provider]:
        out = []
        for item in results_of(await self.client.get(PROVIDERS_PATH)):
            ref, name = _person(item)
            out.append(Provider(id=ref, name=name or str(ref)))
        return out

    async def time_slots(self) -> list[TimeSlot]:
        return [
            TimeSlot(id=item["id"], time=_parse_time(item.get("hora")))
            for item in results_of(await self.client.get(TIME_SLOTS_PATH))
        ]

    async def consultation_types(self) -> list[ConsultationType]:
        return [
            ConsultationType(id=item["id"], name=item.get("nombreconsulta", ""))
            for item in results_of(await self.client.get(CONSULTATION_TYPES_PATH))
        ]

    async def patients(self) -> list[Patient]:
        out = []
        for item in results_of(await self.client.get(PATIENTS_PATH)):
            ref, name = _person(item)
            out.append(Patient(id=ref, name=name, document=item.get("carnetidentidad")))
        return out

    async def available_slots(self, day: date, provider_ref: int) -> list[TimeSlot]:
        params = {"fecha": day.isoformat(), "odontologo_id": provider_ref}
        payload = await self.client.get(AVAILABLE_SLOTS_PATH, params=params)
        return [TimeSlot(id=item["id"], time=_parse_time(item.get("hora"))) for item in results_of(payload)]

    async def _ensure_available(self, provider_ref: int, day: date, slot_ref: int) -> None:
        slots = await self.available_slots(day, provider_ref)
        if slot_ref not in {s.id for s in slots}:
            raise Conflict(
                "That time slot is already taken",
                fields={"idhorario": f"Slot {slot_ref} is not available on {day.isoformat()}"},
            )

    async def _own_patient_record(self, actor: Identity) -> Patient:
        for patient in await self.patients():
            if patient.id == actor.id:
                return patient
        raise ValidationFailure("No patient profile was found for this user")

    # reads

    async def get(self, appointment_id: int) -> Appointment:
        return appointment_from_payload(await self.client.get(f"{APPOINTMENTS_PATH}{appointment_id}/"))

    async def fetch_patient_appointments(
        self, patient_ref: int | None = None
    ) -> tuple[list[Appointment], list[Appointment]]:
        """Return ``(current, stale)`` for a patient, current ordered most recent first."""
        actor = self._actor()
        if actor.role is Role.PATIENT:
            if patient_ref is not None and patient_ref != actor.id:
                raise PermissionDenied("Patients can only see their own appointments")
            patient_ref = actor.id
        elif patient_ref is None:
            raise ValidationFailure(fields={"codpaciente": "A patient is required"})

        payload = await self.client.get(APPOINTMENTS_PATH, params={"codpaciente": patient_ref})
        now = self.clock()
        current, stale = [], []
        for item in results_of(payload):
            appt = appointment_from_payload(item)
            (stale if is_stale(appt, now) else current).append(appt)
        current.sort(key=lambda a: a.starts_at(), reverse=True)
        return current, stale

    async def list_mine(self, patient_ref: int | None = None) -> list[Appointment]:
        current, stale = await self.fetch_patient_appointments(patient_ref)
        if stale:
            logger.debug("Dropped %d stale appointment(s)", len(stale))
        return current

    async def list_all(self, page: int = 1) -> Page:
        """Staff-wide listing, in server order. Stale entries show as completed."""
        actor = self._actor()
        if actor.role not in STAFF_ROLES:
            raise PermissionDenied("Only clinic staff can see the full agenda")

        payload = await self.client.get(APPOINTMENTS_PATH, params={"page": page})
        now = self.clock()
        results = []
        for item in results_of(payload):
            appt = appointment_from_payload(item)
            if is_stale(appt, now):
                appt = appt.model_copy(update={"status": next_status(appt.status, "elapse")})
            results.append(appt)

        count = payload.get("count", len(results)) if isinstance(payload, dict) else len(results)
        has_next = isinstance(payload, dict) and bool(payload.get("next"))
        return Page(results=results, count=count, next_page=page + 1 if has_next else None)

    # mutations

    async def create(
        self,
        patient_ref: int | None,
        provider_ref: int,
        day: date,
        slot_ref: int,
        consultation_type_ref: int,
    ) -> Appointment:
        """Book a slot for the signed-in patient.

        ``patient_ref`` may be omitted; if given it must be the actor's own
        record, since patients only book for themselves.
        """
        actor = self._actor()
        if actor.role is not Role.PATIENT:
            raise PermissionDenied("Staff manage bookings from the clinic agenda")
        patient = await self._own_patient_record(actor)
        if patient_ref is not None and patient_ref != patient.id:
            raise PermissionDenied("Patients can only book for themselves")
        self._require_future(day)
        await self._ensure_available(provider_ref, day, slot_ref)

        body = {
            "fecha": day.isoformat(),
            "codpaciente": patient.id,
            "cododontologo": provider_ref,
            "idhorario": slot_ref,
            "idtipoconsulta": consultation_type_ref,
            "idestadoconsulta": STATUS_IDS[AppointmentStatus.SCHEDULED],
        }
        data = await self.client.post(APPOINTMENTS_PATH, json=body)
        appt = appointment_from_payload({**body, **(data or {})})
        logger.info("Booked appointment %s (provider %s, %s slot %s)", appt.id, provider_ref, day, slot_ref)
        return appt

    async def confirm(self, appointment_id: int) -> Appointment:
        actor = self._actor()
        if actor.role not in STAFF_ROLES:
            raise PermissionDenied("Only clinic staff can confirm appointments")

        current = await self.get(appointment_id)
        if current.status is AppointmentStatus.CONFIRMED:
            return current
        target = next_status(current.status, "confirm")

        data = await self.client.patch(
            f"{APPOINTMENTS_PATH}{appointment_id}/", json={"idestadoconsulta": STATUS_IDS[target]}
        )
        logger.info("Confirmed appointment %s", appointment_id)
        return _merge(current, data, status=target)

    async def cancel(self, appointment_id: int, reason: str | None = None) -> Appointment:
        actor = self._actor()
        if reason is not None and len(reason) > self.cancel_reason_max:
            raise ValidationFailure(
                fields={"motivo_cancelacion": f"At most {self.cancel_reason_max} characters"}
            )

        current = await self.get(appointment_id)
        if not self._may_modify(actor, current):
            raise PermissionDenied("You cannot cancel this appointment")
        target = next_status(current.status, "cancel")

        body = {"motivo_cancelacion": reason} if reason else {}
        data = await self.client.post(f"{APPOINTMENTS_PATH}{appointment_id}/cancelar/", json=body)
        logger.info("Cancelled appointment %s", appointment_id)
        return _merge(current, data, status=target, cancel_reason=reason)

    async def reschedule(self, appointment_id: int, new_date: date, new_slot_ref: int) -> Appointment:
        """Move an appointment in place; the id and its history are kept.

        The availability check skips the appointment's own current slot, so
        rescheduling onto the same date and slot succeeds.
        """
        actor = self._actor()
        current = await self.get(appointment_id)
        if not self._may_modify(actor, current):
            raise PermissionDenied("You cannot reschedule this appointment")
        target = next_status(current.status, "reschedule")
        self._require_future(new_date)

        if (new_date, new_slot_ref) != (current.date, current.slot_ref):
            await self._ensure_available(current.provider_ref, new_date, new_slot_ref)

        data = await self.client.patch(
            f"{APPOINTMENTS_PATH}{appointment_id}/reprogramar/",
            json={"fecha": new_date.isoformat(), "idhorario": new_slot_ref},
        )
        logger.info("Rescheduled appointment %s to %s slot %s", appointment_id, new_date, new_slot_ref)
        changes: dict[str, Any] = {"status": target, "date": new_date, "slot_ref": new_slot_ref}
        if new_slot_ref != current.slot_ref:
            changes["slot_time"] = None
        return _merge(current, data, **changes)


# -- patient board --------------------------------------------------------

@dataclass
class RefreshResult:
    appointments: list[Appointment]
    removed_automatically: int = 0
    notice: str | None = None
    changed: Appointment | None = None


@dataclass
class AppointmentBoard:
    """The list a patient is looking at, reconciled on every refresh.

    Appointments that vanish from the server, or come back stale, are
    announced once in a single notice. Ones the user removed through this
    board are not counted.
    """

    engine: AppointmentEngine
    patient_ref: int | None = None
    appointments: list[Appointment] = field(default_factory=list)
    _known: set[int] = field(default_factory=set, repr=False)
    _announced: set[int] = field(default_factory=set, repr=False)
    _removed_by_user: set[int] = field(default_factory=set, repr=False)

    async def refresh(self) -> RefreshResult:
        current, stale = await self.engine.fetch_patient_appointments(self.patient_ref)
        current_ids = {a.id for a in current}
        stale_ids = {a.id for a in stale}

        pruned = (self._known - current_ids - self._removed_by_user) | stale_ids
        pruned -= self._announced
        # only ids that can still show up again need remembering
        self._announced = (self._announced | pruned) & (current_ids | stale_ids)
        self._removed_by_user &= current_ids
        self._known = current_ids
        self.appointments = current

        notice = None
        if pruned:
            n = len(pruned)
            notice = (
                "1 appointment was removed automatically because its date has passed."
                if n == 1
                else f"{n} appointments were removed automatically because their dates have passed."
            )
            logger.info("Stale cleanup removed %d appointment(s) from view", n)
        return RefreshResult(appointments=current, removed_automatically=len(pruned), notice=notice)

    async def _after_change(self, changed: Appointment, refresh: bool) -> RefreshResult:
        if not refresh:
            # the next refresh reconciles; any pending notice is kept for it
            self.appointments = [changed if a.id == changed.id else a for a in self.appointments]
            return RefreshResult(appointments=self.appointments, changed=changed)
        result = await self.refresh()
        result.changed = changed
        return result

    async def cancel(self, appointment_id: int, reason: str | None = None, *, refresh: bool = True) -> RefreshResult:
        changed = await self.engine.cancel(appointment_id, reason)
        self._removed_by_user.add(appointment_id)
        return await self._after_change(changed, refresh)

    async def reschedule(
        self, appointment_id: int, new_date: date, new_slot_ref: int, *, refresh: bool = True
    ) -> RefreshResult:
        changed = await self.engine.reschedule(appointment_id, new_date, new_slot_ref)
        return await self._after_change(changed, refresh)
