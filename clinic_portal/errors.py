"""Error taxonomy shared by the session manager and the appointment engine.

Every remote failure is translated into one of these before it leaves the
API client, so callers never see raw ``httpx`` exceptions.
"""
from __future__ import annotations
from typing import Any
import httpx


class PortalError(Exception):
    """Base class. Carries whatever structure the server gave us."""

    retryable = False

    def __init__(
        self,
        detail: str | None = None,
        *,
        status: int | None = None,
        fields: dict[str, str] | None = None,
    ):
        self.detail = detail
        self.status = status
        self.fields = dict(fields or {})
        super().__init__(self.message)

    @property
    def message(self) -> str:
        """Human-readable text, preferring field-level detail when present."""
        parts = []
        if self.detail:
            parts.append(self.detail)
        parts.extend(f"{k}: {v}" for k, v in self.fields.items())
        return "; ".join(parts) or self.default_message

    default_message = "Request failed"

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "fields": self.fields}


class AuthenticationFailure(PortalError):
    default_message = "Invalid credentials or expired session"


class PermissionDenied(PortalError):
    default_message = "You are not allowed to perform this action"


class Conflict(PortalError):
    default_message = "The request conflicts with the current state"


class ValidationFailure(PortalError):
    default_message = "Some fields are missing or invalid"


class NotFound(PortalError):
    default_message = "Not found"


class NetworkFailure(PortalError):
    """Transport error, timeout or server-side failure. Nothing was committed."""

    retryable = True
    default_message = "Could not reach the clinic service, please retry"


_STATUS_MAP: dict[int, type[PortalError]] = {
    400: ValidationFailure,
    401: AuthenticationFailure,
    403: PermissionDenied,
    404: NotFound,
    409: Conflict,
    422: ValidationFailure,
}


def parse_error_body(body: Any) -> tuple[str | None, dict[str, str]]:
    """Split a DRF-style error body into ``(detail, fields)``."""
    if isinstance(body, str):
        return body or None, {}
    if isinstance(body, list):
        return " ".join(str(v) for v in body) or None, {}
    if not isinstance(body, dict):
        return None, {}

    detail = body.get("detail") if isinstance(body.get("detail"), str) else None
    fields: dict[str, str] = {}
    for key, value in body.items():
        if key == "detail":
            continue
        if isinstance(value, list):
            fields[key] = " ".join(str(v) for v in value)
        elif isinstance(value, str):
            fields[key] = value
    return detail, fields


def error_from_response(response: httpx.Response) -> PortalError:
    try:
        body = response.json()
    except ValueError:
        body = response.text
    detail, fields = parse_error_body(body)

    if response.status_code >= 500:
        cls: type[PortalError] = NetworkFailure
    else:
        cls = _STATUS_MAP.get(response.status_code, PortalError)
    return cls(detail, status=response.status_code, fields=fields)
