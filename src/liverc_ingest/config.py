"""
Configuration module for the LiveRC ingestion pipeline.
Loads environment variables and defines the politeness and retry policy
applied to every request against LiveRC.
"""

import logging
import os

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)

# --- ENV LOADING ---
_env_found = load_dotenv(find_dotenv())
if not _env_found:
    logger.info("ℹ️  No .env file found. Using environment variables from system/Docker.")


def get_env_required(key: str, default: str | None = None) -> str:
    """
    Get required environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set

    Returns:
        Environment variable value

    Raises:
        EnvironmentError: If required variable is missing and no default provided
    """
    value = os.getenv(key, default)
    if value is None:
        logger.error(f"❌ Required environment variable '{key}' is not set!")
        raise EnvironmentError(f"Required environment variable '{key}' is not set")
    return value


def get_env_flag(key: str, default: bool = False) -> bool:
    """Read a boolean flag. Accepts '1', 'true', 'yes' and 'on' (any case)."""
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


# --- 1. LIVERC ENDPOINTS ---
LIVERC_BASE_ORIGIN: str = os.getenv("LIVERC_BASE_ORIGIN", "https://live.liverc.com/")
REQUEST_TIMEOUT: int = int(os.getenv("LIVERC_TIMEOUT", "30"))

USER_AGENT: str = os.getenv(
    "LIVERC_USER_AGENT",
    "MyRaceEngineer.LiveRcClient/0.1 (+https://myraceengineer.example)",
)

HTML_ACCEPT: str = "text/html,application/xhtml+xml"
JSON_ACCEPT: str = "application/json"

DEFAULT_HEADERS: dict[str, str] = {
    "User-Agent": USER_AGENT,
    "Accept": HTML_ACCEPT,
}

# --- 2. POLITENESS & RETRY POLICY ---
# LiveRC is an unaffiliated site: every request waits for this gap.
MIN_REQUEST_INTERVAL_MS: int = int(os.getenv("LIVERC_MIN_INTERVAL_MS", "1000"))
API_RATE_PER_MIN: int = int(os.getenv("LIVERC_RATE_LIMIT_PER_MIN", "60"))

RETRY_MAX_ATTEMPTS: int = int(os.getenv("LIVERC_MAX_RETRIES", "3"))
RETRY_INITIAL_DELAY_MS: int = int(os.getenv("LIVERC_RETRY_INITIAL_MS", "750"))
RETRY_MAX_DELAY_MS: int = int(os.getenv("LIVERC_RETRY_MAX_MS", "5000"))
RETRY_JITTER_RATIO: float = float(os.getenv("LIVERC_RETRY_JITTER", "0.35"))

# --- 3. JOB RUNNER ---
JOB_POLL_INTERVAL_MS: int = int(os.getenv("LIVERC_JOB_POLL_MS", "1000"))
JOB_PROCESSING_DELAY_MS: int = int(os.getenv("LIVERC_JOB_DELAY_MS", "250"))

# --- 4. IMPORT PLANNING ---
INCLUDE_EXISTING_EVENTS: bool = get_env_flag("LIVERC_INCLUDE_EXISTING_EVENTS")
MAX_EVENTS_PER_PLAN: int = int(os.getenv("LIVERC_MAX_EVENTS_PER_PLAN", "12"))
MAX_TOTAL_ESTIMATED_LAPS: int = int(os.getenv("LIVERC_MAX_TOTAL_ESTIMATED_LAPS", "10000"))

# --- 5. RAW PAYLOAD ARCHIVE (MinIO) ---
ARCHIVE_ENABLED: bool = get_env_flag("LIVERC_ARCHIVE_ENABLED")
MINIO_ENDPOINT: str = os.getenv(
    "MINIO_ENDPOINT", os.getenv("MINIO_ENDPOINT_EXTERNAL", "http://localhost:9000")
)
MINIO_ACCESS_KEY: str = os.getenv("MINIO_ACCESS_KEY", "")
MINIO_SECRET_KEY: str = os.getenv("MINIO_SECRET_KEY", "")
MINIO_BUCKET_RAW: str = os.getenv("BUCKET_RAW", "liverc-raw")
MINIO_REGION: str = os.getenv("MINIO_REGION", "us-east-1")


# --- 6. CONFIGURATION VALIDATION ---
def validate_configuration() -> bool:
    """
    Validate that the politeness, retry and archive settings are usable.

    Returns:
        True if validation passes

    Raises:
        EnvironmentError: If validation fails
    """
    errors = []

    if not LIVERC_BASE_ORIGIN.startswith(("https://", "http://")):
        errors.append("LIVERC_BASE_ORIGIN must be an absolute http(s) URL")

    if MIN_REQUEST_INTERVAL_MS <= 0:
        errors.append("LIVERC_MIN_INTERVAL_MS must be positive")

    if RETRY_MAX_ATTEMPTS < 0:
        errors.append("LIVERC_MAX_RETRIES must not be negative")

    if RETRY_INITIAL_DELAY_MS <= 0 or RETRY_MAX_DELAY_MS < RETRY_INITIAL_DELAY_MS:
        errors.append("LIVERC_RETRY_INITIAL_MS / LIVERC_RETRY_MAX_MS are inconsistent")

    if not 0 <= RETRY_JITTER_RATIO <= 1:
        errors.append("LIVERC_RETRY_JITTER must be between 0 and 1")

    if JOB_POLL_INTERVAL_MS <= 0:
        errors.append("LIVERC_JOB_POLL_MS must be positive")

    if ARCHIVE_ENABLED:
        if not MINIO_ACCESS_KEY:
            errors.append("MINIO_ACCESS_KEY is not set")
        if not MINIO_SECRET_KEY:
            errors.append("MINIO_SECRET_KEY is not set")

    if errors:
        logger.error("❌ Configuration validation failed:")
        for error in errors:
            logger.error(f"   - {error}")
        raise EnvironmentError("Configuration validation failed: " + "; ".join(errors))

    logger.info("✅ Configuration validation passed")
    return True
