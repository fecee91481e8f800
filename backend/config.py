"""
Runtime configuration for the task engine.

Values are read from environment variables once, at import time. Invalid
values fall back to safe defaults with a logged warning instead of failing
startup.
"""

import logging
import os
import secrets
from pathlib import Path

logger = logging.getLogger(__name__)


def _int_from_env(name: str, default: int, minimum: int, maximum: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"⚠️  Invalid {name} value in environment. Using default of {default}.")
        return default
    if value < minimum or value > maximum:
        logger.warning(
            f"⚠️  {name}={value} is outside safe range ({minimum}-{maximum}). "
            f"Using default of {default}."
        )
        return default
    return value


def _bool_from_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./task_core.db")

# Attachment files are stored (by the excluded upload layer) under this directory
UPLOAD_DIR = Path(os.environ.get("UPLOAD_DIR", "./uploads"))

MAX_BULK_TASKS = _int_from_env("MAX_BULK_TASKS", 500, 1, 10000)

# Guards parent-chain walks against corrupted data
MAX_HIERARCHY_DEPTH = _int_from_env("MAX_HIERARCHY_DEPTH", 1000, 1, 100000)

OPERATION_TIMEOUT_SECONDS = _int_from_env("OPERATION_TIMEOUT_SECONDS", 30, 1, 3600)

# When enabled, bulk assign/delete check every task in the batch in addition
# to the ADMIN / TEAM_LEADER capability check.
BULK_PER_TASK_AUTHORIZATION = _bool_from_env("BULK_PER_TASK_AUTHORIZATION", True)

# Verification side of the bearer tokens minted by the identity service
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development").lower()

JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY")
if not JWT_SECRET_KEY:
    if ENVIRONMENT in ("production", "staging"):
        raise ValueError(f"JWT_SECRET_KEY is required when ENVIRONMENT={ENVIRONMENT}")
    JWT_SECRET_KEY = "dev-insecure-key-" + secrets.token_urlsafe(32)
    logger.warning("⚠️  JWT_SECRET_KEY not set. Tokens are verified against a temporary development key.")

JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256").upper()
if JWT_ALGORITHM not in ("HS256", "HS384", "HS512"):
    logger.warning(f"⚠️  Unsupported JWT_ALGORITHM={JWT_ALGORITHM}. Using HS256.")
    JWT_ALGORITHM = "HS256"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
if LOG_LEVEL not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
    logger.warning(f"⚠️  Unsupported LOG_LEVEL={LOG_LEVEL}. Using INFO.")
    LOG_LEVEL = "INFO"
