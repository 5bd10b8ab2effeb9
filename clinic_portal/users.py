"""Administrator view of portal users: search and role assignment."""
from __future__ import annotations
import logging
from .client import ApiClient, results_of
from .errors import AuthenticationFailure, PermissionDenied
from .models import Identity, Role, UserRecord, UserType
from .session import SessionManager

logger = logging.getLogger(__name__)

USERS_PATH = "/usuarios/"
USER_TYPES_PATH = "/tipos-usuario/"
ADMIN_TYPE_ID = 1


class UserDirectory:
    def __init__(self, client: ApiClient, session: SessionManager):
        self.client = client
        self.session = session

    def _admin(self) -> Identity:
        if not self.session.authenticated:
            raise AuthenticationFailure("Sign in to manage users")
        actor = self.session.identity
        if actor.role is not Role.ADMINISTRATOR:
            raise PermissionDenied("Only administrators can manage users")
        return actor

    async def search(self, query: str = "") -> list[UserRecord]:
        self._admin()
        params = {"search": query} if query else None
        return [UserRecord.from_payload(item) for item in results_of(await self.client.get(USERS_PATH, params=params))]

    async def user_types(self) -> list[UserType]:
        self._admin()
        return [
            UserType(id=item["identificacion"], name=item["rol"], description=item.get("descripcion"))
            for item in results_of(await self.client.get(USER_TYPES_PATH))
        ]

    async def change_role(self, user_code: int, type_id: int) -> bool:
        """Assign ``type_id`` to a user. Returns True when that ended our own session.

        A role is fixed for the life of a session, so changing your own role
        signs you out and the new role applies from the next login.
        """
        actor = self._admin()
        await self.client.patch(f"{USERS_PATH}{user_code}/", json={"idtipousuario": type_id})
        logger.info("User %s moved to type %s by %s", user_code, type_id, actor.email)
        if user_code == actor.id and type_id != ADMIN_TYPE_ID and self.session.identity is actor:
            logger.warning("Own role changed, signing out")
            self.session.logout()
            return True
        return False
