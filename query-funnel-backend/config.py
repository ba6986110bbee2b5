"""
Query Funnel Configuration
==========================

Loads runtime settings from the environment (and an optional .env file)
and configures logging for the service.

USAGE:
    from config import get_settings, configure_logging
    settings = get_settings()
    configure_logging(settings.log_level)

Startup validation (validate_settings) reports problems as a list of
messages instead of raising, so the caller decides whether to fail fast.
"""

import os
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Modules whose loggers belong to this service (INFO by default);
# everything else stays at WARNING to keep library noise down.
APP_LOGGERS = [
    "__main__",
    "main",
    "config",
    "sql_safety",
    "subquestion_validator",
    "response_parsing",
    "intent_patterns",
    "intent_cache",
    "intent_classifier",
    "model_router",
    "llm_providers",
    "provider_factory",
    "sql_composer",
    "context_cache",
    "audit_log",
    "query_funnel",
]


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"[CONFIG] Invalid integer for {name}={value!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"[CONFIG] Invalid number for {name}={value!r}, using {default}")
        return default


@dataclass
class FunnelSettings:
    """
    Runtime settings for the query funnel service.

    Attributes:
        anthropic_api_key: Key for the Anthropic Messages API
        google_api_key: Key for the Gemini API (used when no Vertex project is set)
        google_project_id: Vertex AI project for Gemini
        google_location: Vertex AI region for Gemini
        openwebui_base_url: Base URL of a local OpenWebUI instance
        openwebui_api_key: Optional bearer token for OpenWebUI
        groq_api_key: Key for the Groq API
        default_model_id: Model used when the caller does not pick one
        auto_failover: Whether the provider factory may fall back to another provider
        provider_health_max_age_seconds: Age after which a provider health record is re-checked (0 = every read)
        intent_confidence_threshold: Pattern confidence required to skip the AI call
        intent_ai_timeout_ms: Deadline for the AI classification call
        intent_pattern_cache_ttl_seconds: TTL of pattern-derived cache entries
        intent_ai_cache_ttl_seconds: TTL of AI-derived cache entries
        intent_cache_sweep_seconds: Interval of the background expiry sweep
        sql_row_limit: Row cap inserted into unbounded SELECTs
        audit_database_url: SQLAlchemy URL for classification audit rows (None = log only)
        log_level: Level for the service's own loggers
    """
    anthropic_api_key: Optional[str] = None
    google_api_key: Optional[str] = None
    google_project_id: Optional[str] = None
    google_location: str = "us-central1"
    openwebui_base_url: str = "http://localhost:8080"
    openwebui_api_key: Optional[str] = None
    openwebui_timeout_seconds: int = 120
    groq_api_key: Optional[str] = None
    default_model_id: str = "claude-3-5-sonnet-latest"
    auto_failover: bool = True
    provider_health_max_age_seconds: int = 30
    intent_confidence_threshold: float = 0.85
    intent_ai_timeout_ms: int = 60000
    intent_pattern_cache_ttl_seconds: int = 3600
    intent_ai_cache_ttl_seconds: int = 3600
    intent_cache_sweep_seconds: int = 600
    sql_row_limit: int = 1000
    audit_database_url: Optional[str] = None
    log_level: str = "INFO"
    provider_priorities: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "FunnelSettings":
        """Build settings from environment variables (.env is loaded first)."""
        load_dotenv()

        priorities = {}
        for provider_type in ("anthropic", "google", "openwebui", "groq"):
            raw = os.getenv(f"{provider_type.upper()}_PRIORITY")
            if raw:
                priorities[provider_type] = _env_int(f"{provider_type.upper()}_PRIORITY", 100)

        return cls(
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            google_api_key=os.getenv("GOOGLE_API_KEY"),
            google_project_id=os.getenv("GOOGLE_CLOUD_PROJECT"),
            google_location=os.getenv("GOOGLE_CLOUD_LOCATION", "us-central1"),
            openwebui_base_url=os.getenv("OPENWEBUI_BASE_URL", "http://localhost:8080").rstrip("/"),
            openwebui_api_key=os.getenv("OPENWEBUI_API_KEY"),
            openwebui_timeout_seconds=_env_int("OPENWEBUI_TIMEOUT_SECONDS", 120),
            groq_api_key=os.getenv("GROQ_API_KEY"),
            default_model_id=os.getenv("DEFAULT_AI_MODEL_ID", "claude-3-5-sonnet-latest"),
            auto_failover=_env_bool("AUTO_FAILOVER", True),
            provider_health_max_age_seconds=_env_int("PROVIDER_HEALTH_MAX_AGE_SECONDS", 30),
            intent_confidence_threshold=_env_float("INTENT_CONFIDENCE_THRESHOLD", 0.85),
            intent_ai_timeout_ms=_env_int("INTENT_AI_TIMEOUT_MS", 60000),
            intent_pattern_cache_ttl_seconds=_env_int("INTENT_PATTERN_CACHE_TTL_SECONDS", 3600),
            intent_ai_cache_ttl_seconds=_env_int("INTENT_AI_CACHE_TTL_SECONDS", 3600),
            intent_cache_sweep_seconds=_env_int("INTENT_CACHE_SWEEP_SECONDS", 600),
            sql_row_limit=_env_int("SQL_ROW_LIMIT", 1000),
            audit_database_url=os.getenv("AUDIT_DATABASE_URL") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            provider_priorities=priorities,
        )

    def configured_provider_types(self) -> List[str]:
        """Provider types that have enough configuration to be constructed."""
        configured = []
        if self.anthropic_api_key:
            configured.append("anthropic")
        if self.google_api_key or self.google_project_id:
            configured.append("google")
        if self.openwebui_base_url:
            configured.append("openwebui")
        if self.groq_api_key:
            configured.append("groq")
        return configured


@lru_cache(maxsize=1)
def get_settings() -> FunnelSettings:
    """Get (or create) the process-wide settings."""
    return FunnelSettings.from_env()


def configure_logging(level: str = "INFO") -> None:
    """
    Configure logging: WARNING for libraries, `level` for our modules.
    """
    logging.basicConfig(level=logging.WARNING, format=LOG_FORMAT)

    app_level = getattr(logging, level.upper(), logging.INFO)
    for name in APP_LOGGERS:
        logging.getLogger(name).setLevel(app_level)


def validate_settings(settings: FunnelSettings) -> List[str]:
    """
    Check settings for problems that would break startup or degrade service.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []

    if not 0.0 <= settings.intent_confidence_threshold <= 1.0:
        errors.append(
            f"INTENT_CONFIDENCE_THRESHOLD must be between 0 and 1 "
            f"(got {settings.intent_confidence_threshold})"
        )

    if settings.intent_ai_timeout_ms <= 0:
        errors.append(f"INTENT_AI_TIMEOUT_MS must be positive (got {settings.intent_ai_timeout_ms})")

    if settings.sql_row_limit <= 0:
        errors.append(f"SQL_ROW_LIMIT must be positive (got {settings.sql_row_limit})")

    if settings.provider_health_max_age_seconds < 0:
        errors.append(
            f"PROVIDER_HEALTH_MAX_AGE_SECONDS must not be negative "
            f"(got {settings.provider_health_max_age_seconds})"
        )

    for name in ("intent_pattern_cache_ttl_seconds", "intent_ai_cache_ttl_seconds", "intent_cache_sweep_seconds"):
        if getattr(settings, name) <= 0:
            errors.append(f"{name.upper()} must be positive (got {getattr(settings, name)})")

    if settings.groq_api_key and not settings.groq_api_key.startswith("gsk_"):
        errors.append("GROQ_API_KEY has an unexpected format (Groq API keys start with 'gsk_')")

    return errors
