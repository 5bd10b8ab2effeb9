"""Protected route gate.

Decides whether navigation into an authenticated page may proceed. While the
session is still ``loading`` the gate refuses to decide, so a restored
session is never bounced to the login page before revalidation finishes.
"""
from __future__ import annotations
from collections.abc import Iterable
from enum import Enum
from .models import Role, SessionState, SessionStatus

LOGIN_PATH = "/login"


class GateDecision(str, Enum):
    WAIT = "wait"
    ALLOW = "allow"
    REDIRECT_TO_LOGIN = "redirect_to_login"
    FORBIDDEN = "forbidden"


def decide(state: SessionState, roles: Iterable[Role] | None = None) -> GateDecision:
    if state.status is SessionStatus.LOADING:
        return GateDecision.WAIT
    if state.status is SessionStatus.ANONYMOUS or not state.authenticated:
        return GateDecision.REDIRECT_TO_LOGIN
    if roles is not None and state.identity.role not in set(roles):
        return GateDecision.FORBIDDEN
    return GateDecision.ALLOW
