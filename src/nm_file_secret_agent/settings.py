"""Runtime settings read from environment variables."""

import os
from dataclasses import dataclass

from .config import ConfigError

ENV_PREFIX = "NM_FILE_SECRET_AGENT_"

DEFAULT_IDENTITY = "nm-file-secret-agent"
VALID_BUSES = ("system", "session")


def _env(name: str) -> str | None:
    value = os.environ.get(f"{ENV_PREFIX}{name}")
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _env_seconds(name: str, default: float) -> float:
    """Read a positive number of seconds from the environment.

    Raises:
        ConfigError: If the variable is set but not a positive number
    """
    raw = _env(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{ENV_PREFIX}{name} must be a number of seconds, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{ENV_PREFIX}{name} must be positive, got {raw!r}")
    return value


@dataclass(frozen=True)
class AgentSettings:
    """Knobs that are not part of the rule file."""

    identity: str = DEFAULT_IDENTITY
    bus: str = "system"
    backoff_initial: float = 1.0
    backoff_max: float = 30.0
    call_timeout: float = 5.0
    poll_interval: float = 1.0

    @classmethod
    def from_env(cls) -> "AgentSettings":
        """Build settings from NM_FILE_SECRET_AGENT_* environment variables.

        Environment Variables:
            NM_FILE_SECRET_AGENT_IDENTITY: Agent identifier sent to NetworkManager
            NM_FILE_SECRET_AGENT_BUS: "system" (default) or "session"
            NM_FILE_SECRET_AGENT_BACKOFF_INITIAL: First registration retry delay (default: 1)
            NM_FILE_SECRET_AGENT_BACKOFF_MAX: Upper bound for the retry delay (default: 30)
            NM_FILE_SECRET_AGENT_CALL_TIMEOUT: Timeout for D-Bus calls (default: 5)
            NM_FILE_SECRET_AGENT_POLL_INTERVAL: How often the main loop checks for shutdown (default: 1)

        Raises:
            ConfigError: If a variable holds an invalid value
        """
        bus = (_env("BUS") or "system").lower()
        if bus not in VALID_BUSES:
            raise ConfigError(f"{ENV_PREFIX}BUS must be one of {', '.join(VALID_BUSES)}, got {bus!r}")

        backoff_initial = _env_seconds("BACKOFF_INITIAL", 1.0)
        backoff_max = _env_seconds("BACKOFF_MAX", 30.0)
        if backoff_max < backoff_initial:
            raise ConfigError(
                f"{ENV_PREFIX}BACKOFF_MAX ({backoff_max}) must not be smaller than "
                f"{ENV_PREFIX}BACKOFF_INITIAL ({backoff_initial})"
            )

        return cls(
            identity=_env("IDENTITY") or DEFAULT_IDENTITY,
            bus=bus,
            backoff_initial=backoff_initial,
            backoff_max=backoff_max,
            call_timeout=_env_seconds("CALL_TIMEOUT", 5.0),
            poll_interval=_env_seconds("POLL_INTERVAL", 1.0),
        )
