"""Environment configuration for the clinic portal client."""
from __future__ import annotations
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

API_BASE = os.getenv("CLINIC_API_BASE", "http://127.0.0.1:8001/api").rstrip("/")
API_TIMEOUT = float(os.getenv("CLINIC_API_TIMEOUT", "15"))
API_HTTP2 = os.getenv("CLINIC_API_HTTP2", "0") == "1"

# the backend uses DRF token authentication ("Token <key>")
AUTH_SCHEME = os.getenv("CLINIC_AUTH_SCHEME", "Token")

CSRF_COOKIE = os.getenv("CLINIC_CSRF_COOKIE", "csrftoken")
CSRF_HEADER = os.getenv("CLINIC_CSRF_HEADER", "X-CSRFToken")

TOKEN_STORE_PATH = Path(
    os.getenv("CLINIC_TOKEN_STORE", str(Path.home() / ".clinic_portal" / "session.json"))
).expanduser()

LOG_LEVEL = os.getenv("CLINIC_LOG_LEVEL", "INFO")

CANCEL_REASON_MAX = int(os.getenv("CLINIC_CANCEL_REASON_MAX", "255"))
