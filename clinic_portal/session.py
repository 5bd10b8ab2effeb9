"""Session manager: login, token adoption, revalidation and logout.

Session state is a single immutable ``SessionState`` slot. Every change is a
whole replacement, so concurrent readers (the route gate, the appointment
engine) only ever see a consistent token/identity pair.
"""
from __future__ import annotations
import asyncio
import hashlib
import json
import logging
from . import config
from .client import ApiClient
from .errors import AuthenticationFailure, NetworkFailure, PortalError, ValidationFailure
from .models import PROFILE_FIELDS, Credentials, Identity, LoginResult, Profile, SessionState, SessionStatus, Sex
from .token_store import TokenStore

logger = logging.getLogger(__name__)

LOGIN_PATH = "/auth/login/"
IDENTITY_PATH = "/auth/user/"
SETTINGS_PATH = "/auth/user/settings/"
PROFILE_PATH = "/usuario/me"


def _login_key(credentials: Credentials) -> str:
    """Canonical key for an in-flight login; the password is not kept in clear."""
    raw = json.dumps(
        {"email": credentials.email.strip().lower(), "password": credentials.password},
        sort_keys=True,
    )
    return hashlib.sha256(raw.encode()).hexdigest()


class SessionManager:
    def __init__(self, client: ApiClient):
        self.client = client
        # the client reads the Authorization token from this same store
        self.store: TokenStore = client.token_store
        self._state = SessionState(status=SessionStatus.LOADING)
        self._ready = asyncio.Event()
        self._inflight_logins: dict[str, asyncio.Task] = {}
        self._revalidation: asyncio.Task | None = None

    # -- state ---------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> SessionStatus:
        return self._state.status

    @property
    def identity(self) -> Identity | None:
        return self._state.identity

    @property
    def authenticated(self) -> bool:
        return self._state.status is SessionStatus.AUTHENTICATED and self._state.authenticated

    def _set_state(self, state: SessionState) -> None:
        self._state = state
        if state.status is SessionStatus.LOADING:
            self._ready.clear()
        else:
            self._ready.set()

    async def wait_until_ready(self) -> SessionState:
        await self._ready.wait()
        return self._state

    # -- bootstrap / revalidation ---------------------------------------

    def bootstrap(self) -> None:
        """Restore the persisted session, then revalidate it in the background.

        The restored session is visible immediately while the status stays
        ``loading``; revalidation moves it to ``authenticated`` or, on any
        failure, clears everything and moves to ``anonymous``.
        """
        token, identity = self.store.load()
        if not token or identity is None:
            if token:
                # an adoption that never finished; the token was never verified
                logger.warning("Discarding persisted token without an identity")
                self.store.clear()
            self._set_state(SessionState(status=SessionStatus.ANONYMOUS))
            return

        self._set_state(SessionState(status=SessionStatus.LOADING, token=token, identity=identity))
        logger.info("Restored session for %s, revalidating", identity.email)
        self._revalidation = asyncio.create_task(self._revalidate(token))

    async def _revalidate(self, token: str) -> None:
        try:
            identity = await self._fetch_identity()
        except PortalError as e:
            if token != self._state.token:
                return
            logger.warning("Stored session rejected (%s), signing out", e.__class__.__name__)
            self.logout()
            return
        if token != self._state.token:
            # superseded by a logout or a newer adopt_token
            return
        current = self._state.identity
        if current is not None and current.role is not identity.role:
            logger.warning("Role changed for %s, signing out", identity.email)
            self.logout()
            return
        self.store.save(token, identity)
        self._set_state(SessionState(status=SessionStatus.AUTHENTICATED, token=token, identity=identity))

    async def _fetch_identity(self) -> Identity:
        try:
            payload = await self.client.get(IDENTITY_PATH)
            return Identity.from_auth_payload(payload or {})
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise AuthenticationFailure("Identity response was not understood") from e

    # -- login --------------------------------------------------------

    async def login(self, email: str, password: str) -> LoginResult:
        """Exchange credentials for a token and identity.

        Identical credentials submitted while a login is still pending share
        that one request. Session state is not touched; pass the result to
        ``adopt_token``.
        """
        credentials = Credentials(email=email, password=password)
        key = _login_key(credentials)
        task = self._inflight_logins.get(key)
        if task is None:
            task = asyncio.ensure_future(self._login(credentials))
            self._inflight_logins[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight_logins.pop(k, None))
        else:
            logger.debug("Coalescing duplicate login for %s", credentials.email)
        return await asyncio.shield(task)

    async def _login(self, credentials: Credentials) -> LoginResult:
        await self.client.seed_csrf()
        try:
            data = await self.client.post(LOGIN_PATH, json=credentials.model_dump())
        except ValidationFailure as e:
            if not {"email", "password"} & set(e.fields):
                raise AuthenticationFailure(e.detail, status=e.status, fields=e.fields) from e
            raise

        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise AuthenticationFailure("Login response did not include a token")
        try:
            identity = Identity.from_auth_payload(data)
        except (KeyError, ValueError) as e:
            raise AuthenticationFailure("Login response did not include a usable profile") from e
        logger.info("Login succeeded for %s", identity.email)
        return LoginResult(token=token, identity=identity)

    async def adopt_token(self, token: str, identity: Identity | None = None) -> SessionState:
        """Make ``token`` the current session.

        With a preloaded identity the session is ready at once; otherwise the
        identity is fetched first and a failure ends in ``anonymous``.
        """
        if self._revalidation is not None and not self._revalidation.done():
            self._revalidation.cancel()

        if identity is not None:
            self.store.save(token, identity)
            self._set_state(SessionState(status=SessionStatus.AUTHENTICATED, token=token, identity=identity))
            logger.info("Session adopted for %s", identity.email)
            return self._state

        self.store.save(token, None)
        self._set_state(SessionState(status=SessionStatus.LOADING, token=token))
        await self.refresh_identity()
        return self._state

    async def sign_in(self, email: str, password: str) -> SessionState:
        result = await self.login(email, password)
        return await self.adopt_token(result.token, result.identity)

    async def refresh_identity(self) -> Identity | None:
        """Re-fetch the identity for the current token. Failure means logout."""
        token = self._state.token
        if not token:
            return None
        try:
            identity = await self._fetch_identity()
        except PortalError as e:
            if token != self._state.token:
                # a newer session replaced this one while the request was out
                return self._state.identity
            logger.warning("Identity refresh failed (%s), signing out", e.__class__.__name__)
            self.logout()
            return None

        if token != self._state.token:
            return self._state.identity
        previous = self._state.identity
        if previous is not None and previous.role is not identity.role:
            logger.warning("Role changed for %s, signing out", identity.email)
            self.logout()
            return None
        self.store.save(token, identity)
        self._set_state(SessionState(status=SessionStatus.AUTHENTICATED, token=token, identity=identity))
        return identity

    async def update_notification_setting(self, enabled: bool) -> Identity:
        state = self._state
        if not state.authenticated:
            raise AuthenticationFailure("Sign in to change your preferences")
        await self.client.patch(SETTINGS_PATH, json={"recibir_notificaciones": enabled})
        identity = state.identity.model_copy(update={"notifications": enabled})
        if state.token == self._state.token:
            self.store.save(state.token, identity)
            self._set_state(state.model_copy(update={"identity": identity}))
        return identity

    # -- own profile -----------------------------------------------------

    def _require_identity(self) -> SessionState:
        state = self._state
        if not state.authenticated:
            raise AuthenticationFailure("Sign in to see your profile")
        return state

    async def profile(self) -> Profile:
        self._require_identity()
        payload = await self.client.get(PROFILE_PATH)
        try:
            return Profile.from_payload(payload)
        except (KeyError, ValueError, TypeError) as e:
            raise NetworkFailure("Profile response was not understood") from e

    async def update_profile(self, changes: dict) -> Profile:
        """Send only the changed profile fields, then refresh the session identity.

        ``changes`` uses the portal field names (``first_name``, ``phone``, ...).
        The role is not editable here.
        """
        state = self._require_identity()
        unknown = set(changes) - set(PROFILE_FIELDS)
        if unknown:
            raise ValidationFailure(fields={k: "This field cannot be changed" for k in sorted(unknown)})
        if not changes:
            raise ValidationFailure("Nothing to update")
        body = {}
        for key, value in changes.items():
            if key == "sex" and value:
                try:
                    value = Sex(value).value
                except ValueError:
                    raise ValidationFailure(fields={"sex": "Use M or F"}) from None
            elif key == "sex":
                value = None
            body[PROFILE_FIELDS[key]] = value

        payload = await self.client.patch(PROFILE_PATH, json=body)
        try:
            updated = Profile.from_payload(payload)
        except (KeyError, ValueError, TypeError) as e:
            raise NetworkFailure("Profile response was not understood") from e

        current = state.identity
        identity = current.model_copy(
            update={
                "display_name": updated.display_name or current.display_name,
                "email": updated.email or current.email,
                "notifications": current.notifications if updated.notifications is None else updated.notifications,
            }
        )
        if state.token == self._state.token:
            self.store.save(state.token, identity)
            self._set_state(state.model_copy(update={"identity": identity}))
        logger.info("Profile updated for %s (%s)", identity.email, ", ".join(sorted(changes)))
        return updated

    def logout(self) -> None:
        if self._revalidation is not None and not self._revalidation.done():
            if self._revalidation is not asyncio.current_task():
                self._revalidation.cancel()
        had_session = self._state.token is not None
        self.store.clear()
        self._set_state(SessionState(status=SessionStatus.ANONYMOUS))
        if had_session:
            logger.info("Signed out")


def build_session(
    store: TokenStore | None = None, *, base_url: str | None = None, **client_kwargs
) -> SessionManager:
    """Wire a session manager to a fresh API client sharing ``store``."""
    store = store if store is not None else TokenStore()
    client = ApiClient(store, base_url=base_url or config.API_BASE, **client_kwargs)
    return SessionManager(client)
