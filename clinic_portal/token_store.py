"""Persistence of the auth token and last-known identity across restarts.

The pair is always written whole. A reader never observes a token from one
session next to the identity of another.
"""
from __future__ import annotations
import json
import logging
import os
import tempfile
from pathlib import Path
from pydantic import ValidationError
from . import config
from .models import Identity

logger = logging.getLogger(__name__)

TOKEN_KEY = "auth_token"
IDENTITY_KEY = "user_data"


class TokenStore:
    """In-memory store. Also the base for the file-backed one."""

    def __init__(self):
        self._token: str | None = None
        self._identity: Identity | None = None

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def identity(self) -> Identity | None:
        return self._identity

    def load(self) -> tuple[str | None, Identity | None]:
        return self._token, self._identity

    def save(self, token: str, identity: Identity | None) -> None:
        self._token, self._identity = token, identity

    def clear(self) -> None:
        self._token, self._identity = None, None


class FileTokenStore(TokenStore):
    """JSON file under fixed keys, replaced atomically on every write."""

    def __init__(self, path: str | Path | None = None):
        super().__init__()
        self.path = Path(path) if path is not None else config.TOKEN_STORE_PATH
        self._read()

    def _read(self) -> None:
        try:
            raw = json.loads(self.path.read_text())
        except FileNotFoundError:
            return
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable token store %s (%s)", self.path, e)
            return

        token = raw.get(TOKEN_KEY) if isinstance(raw, dict) else None
        identity = None
        if token and raw.get(IDENTITY_KEY):
            try:
                identity = Identity.model_validate(raw[IDENTITY_KEY])
            except ValidationError:
                logger.warning("Stored identity in %s is malformed, dropping it", self.path)
        self._token, self._identity = token or None, identity

    def load(self) -> tuple[str | None, Identity | None]:
        self._read()
        return self._token, self._identity

    def _write(self, payload: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".session-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def save(self, token: str, identity: Identity | None) -> None:
        payload = {
            TOKEN_KEY: token,
            IDENTITY_KEY: identity.model_dump(mode="json") if identity else None,
        }
        self._write(payload)
        super().save(token, identity)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
        super().clear()
