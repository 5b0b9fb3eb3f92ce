"""Runtime settings loaded from the environment.

A ``.env`` file at the repository root is loaded first when present, so local
development can keep Temporal credentials and encryption keys out of the shell.

Usage:
    from core.config import get_settings

    settings = get_settings()
    timeout = settings.http_default_timeout_ms
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from core.errors import ConfigurationError


env_path = Path(__file__).resolve().parents[1] / ".env"
if env_path.exists():
    load_dotenv(env_path)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Process-wide settings.

    Attributes:
        log_level: Logging level name (INFO, DEBUG, ...)
        log_json: Emit JSON log lines instead of human-readable ones
        http_default_timeout_ms: Request timeout when an endpoint declares none
        request_log_capacity: Ring buffer size of the connector request log
        webhook_event_capacity: Ring buffer size of received webhook events
        oauth_expiry_skew_seconds: Cached tokens closer to expiry are refreshed
        token_encryption_key: Base64 AES-256 key; enables encrypted token cache
        temporal_endpoint: Temporal frontend host:port
        temporal_namespace: Temporal namespace
        temporal_api_key: Temporal Cloud API key
        temporal_task_queue: Task queue polled by the P2P worker
        p2p_step_timeout_ms: Step timeout when the step config declares none
        p2p_default_max_attempts: Step attempts when no retry policy is set
    """
    log_level: str = "INFO"
    log_json: bool = False
    http_default_timeout_ms: int = 30000
    request_log_capacity: int = 1000
    webhook_event_capacity: int = 1000
    oauth_expiry_skew_seconds: int = 60
    token_encryption_key: Optional[str] = None
    temporal_endpoint: Optional[str] = None
    temporal_namespace: str = "default"
    temporal_api_key: Optional[str] = None
    temporal_task_queue: str = "p2p-flows"
    p2p_step_timeout_ms: int = 30000
    p2p_default_max_attempts: int = 3

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_json=_env_bool("LOG_JSON", False),
            http_default_timeout_ms=_env_int("HTTP_DEFAULT_TIMEOUT_MS", 30000),
            request_log_capacity=_env_int("REQUEST_LOG_CAPACITY", 1000),
            webhook_event_capacity=_env_int("WEBHOOK_EVENT_CAPACITY", 1000),
            oauth_expiry_skew_seconds=_env_int("OAUTH_EXPIRY_SKEW_SECONDS", 60),
            token_encryption_key=os.getenv("TOKEN_ENCRYPTION_KEY") or None,
            temporal_endpoint=os.getenv("TEMPORAL_ENDPOINT") or None,
            temporal_namespace=os.getenv("TEMPORAL_NAMESPACE", "default"),
            temporal_api_key=os.getenv("TEMPORAL_API_KEY") or None,
            temporal_task_queue=os.getenv("TEMPORAL_TASK_QUEUE", "p2p-flows"),
            p2p_step_timeout_ms=_env_int("P2P_STEP_TIMEOUT_MS", 30000),
            p2p_default_max_attempts=_env_int("P2P_DEFAULT_MAX_ATTEMPTS", 3),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the cached settings, reading the environment on first use."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Forget cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
