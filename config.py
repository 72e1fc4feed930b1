"""
Relay configuration - environment-driven settings.

Each recognized option has a dotted name (e.g. `cache.ttl.seconds`). The
environment variable is the dotted name upper-cased with `.` and `-` turned
into `_` (CACHE_TTL_SECONDS). A `.env` file in the working directory is
loaded first via python-dotenv.
"""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from models import ProviderTag

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off"}

# Conventional variable names accepted when the dotted form is not set.
_KEY_ALIASES = {
    ProviderTag.OPENAI: ("OPENAI_API_KEY",),
    ProviderTag.GEMINI: ("GEMINI_API_KEY",),
    ProviderTag.MISTRAL: ("MISTRAL_API_KEY",),
    ProviderTag.CLAUDE: ("ANTHROPIC_API_KEY", "CLAUDE_API_KEY"),
}


def env_name(key: str) -> str:
    """`rate-limit.burst` -> `RATE_LIMIT_BURST`."""
    return key.upper().replace(".", "_").replace("-", "_")


class _EnvReader:
    """Typed lookups against one environment mapping."""

    def __init__(self, environ: Mapping[str, str]):
        self.environ = environ

    def raw(self, key: str) -> Optional[str]:
        value = self.environ.get(env_name(key))
        if value is None or value.strip() == "":
            return None
        return value.strip()

    def string(self, key: str, default: str) -> str:
        value = self.raw(key)
        return default if value is None else value

    def integer(self, key: str, default: int) -> int:
        value = self.raw(key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError as e:
            raise ValueError(f"{env_name(key)} must be an integer, got {value!r}") from e

    def number(self, key: str, default: float) -> float:
        value = self.raw(key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError as e:
            raise ValueError(f"{env_name(key)} must be a number, got {value!r}") from e

    def boolean(self, key: str, default: bool) -> bool:
        value = self.raw(key)
        if value is None:
            return default
        lowered = value.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValueError(f"{env_name(key)} must be a boolean, got {value!r}")

    def api_key(self, tag: ProviderTag) -> str:
        value = self.raw(f"api.{tag}.key")
        if value is not None:
            return value
        for alias in _KEY_ALIASES[tag]:
            aliased = self.environ.get(alias, "").strip()
            if aliased:
                return aliased
        return ""


@dataclass(frozen=True)
class Settings:
    """All runtime options, with the documented defaults."""

    openai_api_key: str = ""
    gemini_api_key: str = ""
    mistral_api_key: str = ""
    claude_api_key: str = ""

    cache_enabled: bool = True
    cache_ttl_seconds: int = 300
    cache_max_items: int = 1000

    rate_limit_requests_per_minute: int = 60
    rate_limit_burst: int = 10

    retry_max_attempts: int = 3
    retry_initial_backoff_ms: int = 1000
    retry_max_backoff_ms: int = 30000
    retry_backoff_multiplier: float = 2.0
    retry_jitter: float = 0.1

    router_availability_ttl: int = 300

    log_level: str = "INFO"
    shutdown_timeout_seconds: int = 10

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from the process environment (or an explicit mapping).

        Raises ValueError on malformed numbers or booleans so a bad deploy
        fails at startup rather than on the first request.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        env = _EnvReader(environ)
        settings = cls(
            openai_api_key=env.api_key(ProviderTag.OPENAI),
            gemini_api_key=env.api_key(ProviderTag.GEMINI),
            mistral_api_key=env.api_key(ProviderTag.MISTRAL),
            claude_api_key=env.api_key(ProviderTag.CLAUDE),
            cache_enabled=env.boolean("cache.enabled", cls.cache_enabled),
            cache_ttl_seconds=env.integer("cache.ttl.seconds", cls.cache_ttl_seconds),
            cache_max_items=env.integer("cache.max-items", cls.cache_max_items),
            rate_limit_requests_per_minute=env.integer(
                "rate-limit.requests-per-minute", cls.rate_limit_requests_per_minute
            ),
            rate_limit_burst=env.integer("rate-limit.burst", cls.rate_limit_burst),
            retry_max_attempts=env.integer("retry.max-attempts", cls.retry_max_attempts),
            retry_initial_backoff_ms=env.integer("retry.initial-backoff-ms", cls.retry_initial_backoff_ms),
            retry_max_backoff_ms=env.integer("retry.max-backoff-ms", cls.retry_max_backoff_ms),
            retry_backoff_multiplier=env.number("retry.backoff-multiplier", cls.retry_backoff_multiplier),
            retry_jitter=env.number("retry.jitter", cls.retry_jitter),
            router_availability_ttl=env.integer("router.availability.ttl", cls.router_availability_ttl),
            log_level=env.string("log.level", cls.log_level).upper(),
            shutdown_timeout_seconds=env.integer("shutdown.timeout.seconds", cls.shutdown_timeout_seconds),
        )

        configured = [str(tag) for tag in ProviderTag if settings.api_key_for(tag)]
        logger.info(f"Settings loaded: providers with keys={configured or 'none'}")
        return settings

    def api_key_for(self, tag: ProviderTag) -> str:
        return {
            ProviderTag.OPENAI: self.openai_api_key,
            ProviderTag.GEMINI: self.gemini_api_key,
            ProviderTag.MISTRAL: self.mistral_api_key,
            ProviderTag.CLAUDE: self.claude_api_key,
        }[tag]
