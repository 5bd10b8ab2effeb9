"""Async client for the clinic backend.

One ``ApiClient`` owns one ``httpx.AsyncClient`` (and therefore one cookie
jar). Two headers are attached at request time:

* the anti-forgery header, copied from the CSRF cookie, on mutating requests;
* ``Authorization`` once the token store holds a token.
"""
from __future__ import annotations
import asyncio
import logging
from typing import Any
import httpx
from . import config
from .errors import NetworkFailure, error_from_response
from .token_store import TokenStore

logger = logging.getLogger(__name__)

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
CSRF_SEED_PATH = "/auth/csrf/"


class ApiClient:
    def __init__(
        self,
        token_store: TokenStore | None = None,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        http2: bool | None = None,
        auth_scheme: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token_store = token_store if token_store is not None else TokenStore()
        self.base_url = (base_url or config.API_BASE).rstrip("/")
        self.auth_scheme = auth_scheme or config.AUTH_SCHEME
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else config.API_TIMEOUT,
            http2=config.API_HTTP2 if http2 is None else http2,
            headers={"Accept": "application/json"},
            event_hooks={"request": [self._attach_headers]},
            transport=transport,
        )
        self._csrf_lock = asyncio.Lock()
        self._csrf_seeded = False

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    @property
    def csrf_token(self) -> str | None:
        return self._http.cookies.get(config.CSRF_COOKIE)

    async def _attach_headers(self, request: httpx.Request) -> None:
        if request.method in MUTATING_METHODS:
            csrf = self.csrf_token
            if csrf:
                request.headers[config.CSRF_HEADER] = csrf
        token = self.token_store.token
        if token and "Authorization" not in request.headers:
            request.headers["Authorization"] = f"{self.auth_scheme} {token}"

    async def seed_csrf(self) -> None:
        """Ask the backend to set the CSRF cookie."""
        async with self._csrf_lock:
            await self._send("GET", CSRF_SEED_PATH)
            self._csrf_seeded = True

    async def _ensure_csrf(self) -> None:
        if self._csrf_seeded or self.csrf_token:
            return
        async with self._csrf_lock:
            if self._csrf_seeded or self.csrf_token:
                return
            await self._send("GET", CSRF_SEED_PATH)
            self._csrf_seeded = True

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.debug("%s %s timed out", method, path)
            raise NetworkFailure(f"Request to {path} timed out") from e
        except httpx.TransportError as e:
            logger.debug("%s %s failed: %s", method, path, e)
            raise NetworkFailure(f"Could not reach {path}") from e

        if resp.is_error:
            logger.debug("%s %s -> %s", method, path, resp.status_code)
            raise error_from_response(resp)
        return resp

    async def request(self, method: str, path: str, **kwargs) -> Any:
        """Send a request and return the decoded JSON body (``None`` when empty)."""
        method = method.upper()
        if method in MUTATING_METHODS:
            await self._ensure_csrf()
        resp = await self._send(method, path, **kwargs)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            # proxies and captive portals answer 200 with an HTML page
            logger.debug("%s %s returned a non-JSON body", method, path)
            raise NetworkFailure(f"Unexpected response from {path}") from e

    async def get(self, path: str, params: dict | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Any = None) -> Any:
        return await self.request("POST", path, json=json)

    async def patch(self, path: str, json: Any = None) -> Any:
        return await self.request("PATCH", path, json=json)

    async def put(self, path: str, json: Any = None) -> Any:
        return await self.request("PUT", path, json=json)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)


def results_of(payload: Any) -> list:
    """Accept either a plain array or a paginated ``{"results": [...]}`` body."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        return payload.get("results") or []
    return []
