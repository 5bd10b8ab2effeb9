import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from . import config
from .appointments import AppointmentBoard, AppointmentEngine
from .errors import (
    AuthenticationFailure,
    Conflict,
    NetworkFailure,
    NotFound,
    PermissionDenied,
    PortalError,
    ValidationFailure,
)
from .gate import LOGIN_PATH, GateDecision, decide
from .models import STAFF_ROLES, Appointment, Identity, Page, Profile, Role, Sex, TimeSlot, UserRecord, UserType
from .session import SessionManager, build_session
from .token_store import FileTokenStore
from .users import UserDirectory

logger = logging.getLogger(__name__)


class LoginRequest(BaseModel):
    email: str
    password: str


class SettingsRequest(BaseModel):
    notifications: bool = Field(alias="recibir_notificaciones")

    model_config = {
        "populate_by_name": True
    }


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    sex: Optional[Sex] = None
    phone: Optional[str] = None
    notifications: Optional[bool] = None

    model_config = {
        "extra": "forbid"
    }


class RoleChange(BaseModel):
    type_id: int


class BookRequest(BaseModel):
    provider_id: int
    date: date
    slot_id: int
    consultation_type_id: int
    patient_id: Optional[int] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RescheduleRequest(BaseModel):
    date: date
    slot_id: int


class BoardResponse(BaseModel):
    appointments: list[Appointment]
    notice: Optional[str] = None


_ERROR_STATUS = {
    AuthenticationFailure: 401,
    PermissionDenied: 403,
    NotFound: 404,
    Conflict: 409,
    ValidationFailure: 422,
    NetworkFailure: 503,
}


def _status_for(exc: PortalError) -> int:
    for cls in type(exc).__mro__:
        if cls in _ERROR_STATUS:
            return _ERROR_STATUS[cls]
    return 502


def create_app(
    session: SessionManager | None = None,
    engine: AppointmentEngine | None = None,
    users: UserDirectory | None = None,
) -> FastAPI:
    """Portal app around one session. Pass ``session``/``engine``/``users`` to reuse existing ones."""
    if session is None:
        session = build_session(FileTokenStore())
    if engine is None:
        engine = AppointmentEngine(session.client, session)
    if users is None:
        users = UserDirectory(session.client, session)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(level=config.LOG_LEVEL)
        logging.getLogger("httpx").setLevel(logging.WARNING)
        session.bootstrap()
        yield
        await session.client.aclose()

    app = FastAPI(title="Clinic Portal", lifespan=lifespan)
    app.state.session = session
    app.state.engine = engine
    app.state.users = users
    app.state.boards = {}

    @app.exception_handler(PortalError)
    async def portal_error(request: Request, exc: PortalError):
        return JSONResponse(status_code=_status_for(exc), content=exc.to_dict())

    def require_session(*roles: Role):
        """Gate dependency; ``roles`` empty means any signed-in user."""
        allowed = roles or None

        def dependency(request: Request) -> Identity:
            state = request.app.state.session.state
            decision = decide(state, allowed)
            if decision is GateDecision.WAIT:
                raise HTTPException(status_code=503, detail="Session is loading", headers={"Retry-After": "1"})
            if decision is GateDecision.REDIRECT_TO_LOGIN:
                raise HTTPException(status_code=307, detail="Sign in required", headers={"Location": LOGIN_PATH})
            if decision is GateDecision.FORBIDDEN:
                raise HTTPException(status_code=403, detail="Not available for your role")
            return state.identity

        return dependency

    def board_for(request: Request, identity: Identity) -> AppointmentBoard:
        boards = request.app.state.boards
        if identity.id not in boards:
            boards.clear()  # one session, one visible board
            boards[identity.id] = AppointmentBoard(request.app.state.engine)
        return boards[identity.id]

    # Session ---------------------------------------------------------------

    @app.post("/login", response_model=Identity)
    async def login(req: LoginRequest, request: Request):
        state = await request.app.state.session.sign_in(req.email, req.password)
        return state.identity

    @app.post("/logout", status_code=204)
    async def logout(request: Request):
        request.app.state.session.logout()
        request.app.state.boards.clear()
        return None

    @app.get("/me", response_model=Identity)
    async def me(identity: Identity = Depends(require_session())):
        return identity

    @app.patch("/me/settings", response_model=Identity)
    async def update_settings(req: SettingsRequest, request: Request, _: Identity = Depends(require_session())):
        return await request.app.state.session.update_notification_setting(req.notifications)

    @app.get("/me/profile", response_model=Profile)
    async def my_profile(request: Request, _: Identity = Depends(require_session())):
        return await request.app.state.session.profile()

    @app.patch("/me/profile", response_model=Profile)
    async def edit_profile(req: ProfileUpdate, request: Request, _: Identity = Depends(require_session())):
        return await request.app.state.session.update_profile(req.model_dump(exclude_unset=True, mode="json"))

    # Appointments --------------------------------------------------------

    @app.get("/appointments/mine", response_model=BoardResponse)
    async def my_appointments(request: Request, identity: Identity = Depends(require_session(Role.PATIENT))):
        result = await board_for(request, identity).refresh()
        return BoardResponse(appointments=result.appointments, notice=result.notice)

    @app.get("/appointments", response_model=Page)
    async def agenda(
        request: Request,
        page: int = Query(1, ge=1),
        _: Identity = Depends(require_session(*STAFF_ROLES)),
    ):
        return await request.app.state.engine.list_all(page)

    @app.post("/appointments", response_model=Appointment, status_code=201)
    async def book(req: BookRequest, request: Request, _: Identity = Depends(require_session(Role.PATIENT))):
        return await request.app.state.engine.create(
            req.patient_id, req.provider_id, req.date, req.slot_id, req.consultation_type_id
        )

    @app.post("/appointments/{appointment_id}/confirm", response_model=Appointment)
    async def confirm(appointment_id: int, request: Request, _: Identity = Depends(require_session(*STAFF_ROLES))):
        return await request.app.state.engine.confirm(appointment_id)

    @app.post("/appointments/{appointment_id}/cancel", response_model=Appointment)
    async def cancel(
        appointment_id: int,
        request: Request,
        req: Optional[CancelRequest] = Body(None),
        identity: Identity = Depends(require_session()),
    ):
        reason = req.reason if req else None
        if identity.role is Role.PATIENT:
            result = await board_for(request, identity).cancel(appointment_id, reason, refresh=False)
            return result.changed
        return await request.app.state.engine.cancel(appointment_id, reason)

    @app.patch("/appointments/{appointment_id}/reschedule", response_model=Appointment)
    async def reschedule(
        appointment_id: int, req: RescheduleRequest, request: Request, identity: Identity = Depends(require_session())
    ):
        if identity.role is Role.PATIENT:
            result = await board_for(request, identity).reschedule(appointment_id, req.date, req.slot_id, refresh=False)
            return result.changed
        return await request.app.state.engine.reschedule(appointment_id, req.date, req.slot_id)

    @app.get("/availability", response_model=list[TimeSlot])
    async def availability(
        request: Request,
        day: date = Query(..., alias="date", description="YYYY-MM-DD"),
        provider_id: int = Query(...),
        _: Identity = Depends(require_session()),
    ):
        return await request.app.state.engine.available_slots(day, provider_id)

    # Users (administrators) ---------------------------------------------

    @app.get("/users", response_model=list[UserRecord])
    async def find_users(
        request: Request, q: str = Query(""), _: Identity = Depends(require_session(Role.ADMINISTRATOR))
    ):
        return await request.app.state.users.search(q)

    @app.get("/user-types", response_model=list[UserType])
    async def user_types(request: Request, _: Identity = Depends(require_session(Role.ADMINISTRATOR))):
        return await request.app.state.users.user_types()

    @app.patch("/users/{user_code}/role", status_code=204)
    async def change_role(
        user_code: int, req: RoleChange, request: Request, _: Identity = Depends(require_session(Role.ADMINISTRATOR))
    ):
        if await request.app.state.users.change_role(user_code, req.type_id):
            request.app.state.boards.clear()
        return None

    return app
