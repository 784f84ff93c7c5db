"""
Runtime Configuration for Parley.

Provides an immutable RuntimeConfig built once from environment variables
and passed explicitly into components. Overrides produce a new value
instead of mutating shared state, so tests can inject their own config.

Usage:
    from config import get_config
    config = get_config()
    limiter = RateLimiter(config.rate_limit_per_minute, config.rate_limit_per_hour)

    strict = config.with_overrides(rate_limit_per_minute=10)
"""

import os
import logging
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional, Tuple

from errors import ParleyError, ErrorCode

logger = logging.getLogger(__name__)


def _env_bool(key: str, default: str = "false") -> bool:
    return os.environ.get(key, default).strip().lower() in ("1", "true", "yes", "on")


def _env_list(key: str, default: str = "") -> Tuple[str, ...]:
    """Comma-separated env value as a tuple, blanks dropped."""
    raw = os.environ.get(key, default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _first_env(*keys: str, default: str) -> str:
    """Return the first non-empty environment value from keys, else default."""
    for key in keys:
        value = os.environ.get(key, "").strip()
        if value:
            return value
    return default


def _optional_int(key: str) -> Optional[int]:
    raw = os.environ.get(key, "").strip()
    return int(raw) if raw else None


@dataclass(frozen=True)
class RuntimeConfig:
    """
    Process-wide configuration.

    All values have defaults from environment variables. Instances are
    frozen; use with_overrides() to derive a variant.
    """

    # Admission control
    rate_limit_per_minute: int = field(default_factory=lambda: int(os.environ.get("RATE_LIMIT_PER_MINUTE", "60")))
    rate_limit_per_hour: int = field(default_factory=lambda: int(os.environ.get("RATE_LIMIT_PER_HOUR", "500")))
    # Stricter ceilings for callers that do not bring their own API key (unset = same as above)
    rate_limit_per_minute_keyless: Optional[int] = field(
        default_factory=lambda: _optional_int("RATE_LIMIT_PER_MINUTE_KEYLESS")
    )
    rate_limit_per_hour_keyless: Optional[int] = field(
        default_factory=lambda: _optional_int("RATE_LIMIT_PER_HOUR_KEYLESS")
    )
    rate_limit_max_identities: int = field(
        default_factory=lambda: int(os.environ.get("RATE_LIMIT_MAX_IDENTITIES", "100000"))
    )
    rate_limit_idle_ttl_s: float = field(
        default_factory=lambda: float(os.environ.get("RATE_LIMIT_IDLE_TTL", "86400"))
    )
    rate_limit_sweep_interval_s: float = field(
        default_factory=lambda: float(os.environ.get("RATE_LIMIT_SWEEP_INTERVAL", "300"))
    )
    trust_proxy: bool = field(default_factory=lambda: _env_bool("TRUST_PROXY"))

    # Tool catalog (empty = every registered tool)
    enabled_tools: Tuple[str, ...] = field(default_factory=lambda: _env_list("ENABLED_TOOLS"))
    tool_timeout_s: float = field(default_factory=lambda: float(os.environ.get("TOOL_TIMEOUT", "20")))
    max_tool_rounds: int = field(default_factory=lambda: int(os.environ.get("MAX_TOOL_ROUNDS", "5")))
    max_tool_calls_per_round: int = field(
        default_factory=lambda: int(os.environ.get("MAX_TOOL_CALLS_PER_ROUND", "5"))
    )
    max_tool_result_chars: int = field(
        default_factory=lambda: int(os.environ.get("MAX_TOOL_RESULT_CHARS", "10000"))
    )

    # LLM server (OpenAI-compatible)
    llm_base_url: str = field(
        default_factory=lambda: _first_env("LLM_BASE_URL", "OPENAI_BASE_URL", default="http://localhost:8081/v1")
    )
    llm_api_key: str = field(
        default_factory=lambda: _first_env("LLM_API_KEY", "OPENAI_API_KEY", default="not-needed")
    )
    model_chat: str = field(default_factory=lambda: _first_env("LLM_CHAT_MODEL", default="gpt-4o-mini"))
    temperature: float = field(default_factory=lambda: float(os.environ.get("LLM_TEMPERATURE", "0.7")))
    max_output_tokens: int = field(default_factory=lambda: int(os.environ.get("LLM_MAX_OUTPUT_TOKENS", "4096")))
    llm_timeout_s: float = field(default_factory=lambda: float(os.environ.get("LLM_TIMEOUT", "60")))
    llm_retry_max: int = field(default_factory=lambda: int(os.environ.get("LLM_RETRY_MAX", "2")))
    llm_circuit_threshold: int = field(default_factory=lambda: int(os.environ.get("LLM_CIRCUIT_THRESHOLD", "5")))
    llm_circuit_cooldown_s: float = field(
        default_factory=lambda: float(os.environ.get("LLM_CIRCUIT_COOLDOWN", "30"))
    )
    max_response_chars: int = field(default_factory=lambda: int(os.environ.get("MAX_RESPONSE_CHARS", "50000")))

    # Semantic memory service
    memory_url: str = field(
        default_factory=lambda: _first_env("SEMANTIC_MEMORY_URL", "VECTOR_DB_URL", default="http://localhost:8090")
    )
    memory_timeout_s: float = field(default_factory=lambda: float(os.environ.get("MEMORY_TIMEOUT", "5")))
    memory_search_limit: int = field(default_factory=lambda: int(os.environ.get("MEMORY_SEARCH_LIMIT", "5")))

    # Chat store
    database_url: str = field(default_factory=lambda: os.environ.get("DATABASE_URL", "").strip())

    # Web search
    searxng_url: str = field(default_factory=lambda: os.environ.get("SEARXNG_URL", "http://localhost:8080"))
    searxng_timeout_s: float = field(default_factory=lambda: float(os.environ.get("SEARXNG_TIMEOUT", "10")))
    searxng_max_results: int = field(default_factory=lambda: int(os.environ.get("SEARXNG_MAX_RESULTS", "5")))

    # Message limits
    max_message_length: int = field(default_factory=lambda: int(os.environ.get("MAX_MESSAGE_LENGTH", "4000")))
    max_history_messages: int = field(default_factory=lambda: int(os.environ.get("MAX_HISTORY_MESSAGES", "30")))
    max_attachment_bytes: int = field(
        default_factory=lambda: int(os.environ.get("MAX_ATTACHMENT_BYTES", str(10 * 1024 * 1024)))
    )
    max_attachment_text_chars: int = field(
        default_factory=lambda: int(os.environ.get("MAX_ATTACHMENT_TEXT_CHARS", "8000"))
    )

    # Streaming / lifecycle
    relay_queue_size: int = field(default_factory=lambda: int(os.environ.get("RELAY_QUEUE_SIZE", "256")))
    shutdown_grace_s: float = field(default_factory=lambda: float(os.environ.get("SHUTDOWN_GRACE_SECONDS", "30")))
    memory_unhealthy_percent: float = field(
        default_factory=lambda: float(os.environ.get("MEMORY_UNHEALTHY_PERCENT", "90"))
    )

    # HTTP
    cors_origins: Tuple[str, ...] = field(
        default_factory=lambda: _env_list("CORS_ORIGINS", "http://localhost:3000")
    )
    log_level: str = field(default_factory=lambda: os.environ.get("LOG_LEVEL", "INFO").upper())

    # Validation ranges for numeric config values
    _VALIDATION_RANGES = {
        "rate_limit_per_minute": (1, 100000),
        "rate_limit_per_hour": (1, 1000000),
        "rate_limit_max_identities": (1, 10000000),
        "max_tool_rounds": (1, 9),
        "max_tool_calls_per_round": (1, 50),
        "temperature": (0.0, 2.0),
        "llm_timeout_s": (1.0, 600.0),
        "tool_timeout_s": (0.1, 300.0),
        "memory_timeout_s": (0.1, 60.0),
        "shutdown_grace_s": (0.0, 600.0),
        "relay_queue_size": (1, 100000),
        "memory_unhealthy_percent": (1.0, 100.0),
    }

    def __post_init__(self):
        for name, (low, high) in self._VALIDATION_RANGES.items():
            value = getattr(self, name)
            if not low <= value <= high:
                raise ParleyError(
                    f"Invalid configuration value for {name}: {value}",
                    details=f"Expected a value between {low} and {high}",
                    code=ErrorCode.INTERNAL_CONFIG_ERROR,
                )
        if self.rate_limit_per_hour < self.rate_limit_per_minute:
            logger.warning(
                f"rate_limit_per_hour ({self.rate_limit_per_hour}) is below "
                f"rate_limit_per_minute ({self.rate_limit_per_minute})"
            )

    @property
    def database_enabled(self) -> bool:
        return bool(self.database_url)

    def limits_for(self, has_own_key: bool) -> Tuple[int, int]:
        """(per_minute, per_hour) ceilings for a caller."""
        if has_own_key:
            return self.rate_limit_per_minute, self.rate_limit_per_hour
        return (
            self.rate_limit_per_minute_keyless or self.rate_limit_per_minute,
            self.rate_limit_per_hour_keyless or self.rate_limit_per_hour,
        )

    def is_tool_enabled(self, name: str) -> bool:
        return not self.enabled_tools or name in self.enabled_tools

    def get_llm_params(self) -> Dict[str, Any]:
        """Get LLM parameters for OpenAI API calls."""
        return {
            "temperature": self.temperature,
            "max_tokens": self.max_output_tokens,
        }

    def with_overrides(self, **kwargs) -> "RuntimeConfig":
        """Return a copy with the given fields replaced. Unknown keys raise."""
        known = {f.name for f in fields(self)}
        unknown = set(kwargs) - known
        if unknown:
            raise ParleyError(
                f"Unknown configuration keys: {', '.join(sorted(unknown))}",
                code=ErrorCode.INTERNAL_CONFIG_ERROR,
            )
        return replace(self, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Export config as dict, credentials masked."""
        result = {}
        for field_info in fields(self):
            value = getattr(self, field_info.name)
            if field_info.name in ("llm_api_key", "database_url") and value:
                value = "***"
            result[field_info.name] = value
        return result


_config: Optional[RuntimeConfig] = None


def load_config() -> RuntimeConfig:
    """Build a fresh config from the current environment and make it the default."""
    global _config
    _config = RuntimeConfig()
    return _config


def get_config() -> RuntimeConfig:
    """Get the process-wide config, building it on first use."""
    if _config is None:
        return load_config()
    return _config
