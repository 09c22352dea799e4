"""Centralized configuration for the Konsul conversational engine.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/konsul/<VARIABLE_NAME>``.

Provider credentials are *not* required at import time.  They are resolved
lazily through :func:`get_secret` so that a missing key surfaces as a
configuration-error reply for the affected agent instead of crashing the
whole process.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 - lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/konsul/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def get_secret(name: str) -> str | None:
    """Return a secret from env-var or SSM, or ``None`` when unset.

    Placeholder values copied from ``.env.example`` (``your_...``) count as
    unset.
    """
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    return None


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


# ── LLM providers ───────────────────────────────────────────────────
# Env var holding the API key for each provider family.
PROVIDER_KEY_ENV: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}

# Known-good family used when every variant of the requested model fails.
FALLBACK_MODEL_NAME: str = os.getenv("FALLBACK_MODEL_NAME", "gpt-4o-mini")
LLM_TIMEOUT_SECONDS: float = _env_float("LLM_TIMEOUT_SECONDS", 30.0)
LLM_MAX_TOKENS: int = _env_int("LLM_MAX_TOKENS", 1000)
MAX_TOOL_ITERATIONS: int = _env_int("MAX_TOOL_ITERATIONS", 3)
HISTORY_LIMIT: int = _env_int("HISTORY_LIMIT", 20)

# ── Retrieval ───────────────────────────────────────────────────────
HYDE_MODEL_NAME: str = os.getenv("HYDE_MODEL_NAME", "gpt-4o-mini")
HYDE_TIMEOUT_SECONDS: float = _env_float("HYDE_TIMEOUT_SECONDS", 15.0)
EMBEDDING_MODEL_NAME: str = os.getenv("EMBEDDING_MODEL_NAME", "text-embedding-3-small")
EMBEDDING_TIMEOUT_SECONDS: float = _env_float("EMBEDDING_TIMEOUT_SECONDS", 15.0)
RERANK_MODEL_NAME: str = os.getenv("RERANK_MODEL_NAME", "rerank-multilingual-v3.0")
RERANK_TIMEOUT_SECONDS: float = _env_float("RERANK_TIMEOUT_SECONDS", 10.0)
COHERE_BASE_URL: str = "https://api.cohere.com"
RETRIEVAL_CANDIDATES: int = _env_int("RETRIEVAL_CANDIDATES", 20)
RETRIEVAL_LIMIT: int = _env_int("RETRIEVAL_LIMIT", 5)

# ── Calendar / business integrations ────────────────────────────────
CALENDLY_BASE_URL: str = "https://api.calendly.com"
INTEGRATION_TIMEOUT_SECONDS: float = _env_float("INTEGRATION_TIMEOUT_SECONDS", 15.0)

# ── Escalation / notifications ──────────────────────────────────────
STRICT_ESCALATION: bool = os.getenv("STRICT_ESCALATION", "false").lower() == "true"
APP_URL: str = os.getenv("APP_URL", "https://app.konsul.com")
RESEND_BASE_URL: str = "https://api.resend.com"
RESEND_FROM_EMAIL: str = os.getenv("RESEND_FROM_EMAIL", "onboarding@resend.dev")
NOTIFICATION_TIMEOUT_SECONDS: float = _env_float("NOTIFICATION_TIMEOUT_SECONDS", 10.0)

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = _env_int("SERVER_PORT", 8000)
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
# JSON seed for the in-memory store used by the server and the CLI.
SEED_FILE: str | None = os.getenv("KONSUL_SEED_FILE")
