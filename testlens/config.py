"""
Runtime settings for testlens.

Settings come from environment variables; CLI options override them.
"""

import os
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, TypeVar

from .models import DetectionConfig
from .store import DEFAULT_HISTORY_LIMIT, DEFAULT_QUERY_LIMIT


ENV_PREFIX = "TESTLENS_"

T = TypeVar("T")


class ConfigError(Exception):
    """Raised when an environment value cannot be parsed."""
    pass


def _read(
    environ: Mapping[str, str],
    name: str,
    convert: Callable[[str], T],
    default: T,
) -> T:
    raw = environ.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = convert(raw.strip())
    except ValueError:
        raise ConfigError(f"Invalid value for {ENV_PREFIX}{name}: {raw!r}") from None
    if value < 0:
        raise ConfigError(f"{ENV_PREFIX}{name} must not be negative, got {raw!r}")
    return value


@dataclass
class Settings:
    """Configuration for stores, queries and detection thresholds."""
    database_url: Optional[str] = None
    history_limit: int = DEFAULT_HISTORY_LIMIT
    query_limit: int = DEFAULT_QUERY_LIMIT
    detection: DetectionConfig = field(default_factory=DetectionConfig)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Reads TESTLENS_DATABASE_URL (falling back to DATABASE_URL),
        TESTLENS_HISTORY_LIMIT, TESTLENS_QUERY_LIMIT, TESTLENS_MIN_RUNS,
        TESTLENS_SLOW_THRESHOLD_MS, TESTLENS_FLAKY_THRESHOLD and
        TESTLENS_FAILURE_THRESHOLD. Unset variables keep their defaults.

        Raises:
            ConfigError: If a value is not a valid number
        """
        env = os.environ if environ is None else environ
        defaults = DetectionConfig()

        detection = DetectionConfig(
            min_runs=_read(env, "MIN_RUNS", int, defaults.min_runs),
            slow_threshold_ms=_read(
                env, "SLOW_THRESHOLD_MS", float, defaults.slow_threshold_ms
            ),
            flaky_threshold=_read(
                env, "FLAKY_THRESHOLD", float, defaults.flaky_threshold
            ),
            failure_threshold=_read(
                env, "FAILURE_THRESHOLD", float, defaults.failure_threshold
            ),
        )

        return cls(
            database_url=env.get(ENV_PREFIX + "DATABASE_URL") or env.get("DATABASE_URL") or None,
            history_limit=_read(env, "HISTORY_LIMIT", int, DEFAULT_HISTORY_LIMIT),
            query_limit=_read(env, "QUERY_LIMIT", int, DEFAULT_QUERY_LIMIT),
            detection=detection,
        )
