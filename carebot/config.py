"""Centralized configuration for the CareBot WhatsApp webhook.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/carebot/<VARIABLE_NAME>``.

Per-tenant messaging credentials are *not* configured here: they live on the
organization documents in the store and are loaded by the tenant resolver.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))

_REPO_ROOT = Path(__file__).resolve().parent.parent


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/carebot/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = _optional_env(name)
    if value:
        return value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /carebot/{name} (AWS)."
    )


def _optional_env(name: str, default: str = "") -> str:
    """Like ``_require_env`` but falls back to *default* instead of raising."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    return default


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")

# Knowledge summaries and symptom classification run on the cheaper model
FAST_MODEL_NAME: str = os.getenv("FAST_MODEL_NAME", "claude-haiku-4-5")
LLM_TIMEOUT_SECONDS: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))

# ── WhatsApp / Graph API ────────────────────────────────────────────
GRAPH_API_BASE_URL: str = os.getenv("GRAPH_API_BASE_URL", "https://graph.facebook.com/v21.0")
HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))

# Empty => any token is accepted during webhook verification
WHATSAPP_VERIFY_TOKEN: str = _optional_env("WHATSAPP_VERIFY_TOKEN")
APPOINTMENT_FLOW_ID: str = os.getenv("APPOINTMENT_FLOW_ID", "")

# ── Tenancy ─────────────────────────────────────────────────────────
DEFAULT_TENANT_ID: str = os.getenv("DEFAULT_TENANT_ID", "Test")
# 0 disables expiry (entries live until an explicit refresh)
TENANT_CACHE_TTL_SECONDS: float = float(os.getenv("TENANT_CACHE_TTL_SECONDS", "600"))
KNOWLEDGE_DIR: Path = Path(os.getenv("KNOWLEDGE_DIR", str(_REPO_ROOT / "knowledge")))

# ── Admin ───────────────────────────────────────────────────────────
# Empty => every admin call is rejected
ADMIN_SECRET: str = _optional_env("ADMIN_SECRET")

# ── Media ───────────────────────────────────────────────────────────
MEDIA_BUCKET: str = os.getenv("MEDIA_BUCKET", "")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))

# JSON fixtures ({collection: [documents]}) loaded into the in-memory store at start-up
SEED_FILE: str = os.getenv("SEED_FILE", "")

# ── CORS (admin dashboard) ──────────────────────────────────────────
CORS_ORIGINS: list[str] = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]
