"""
Client configuration.

Durations are in seconds. ClientConfig.from_env() reads MCPFLEET_* variables
so deployments can tune the client without code changes.
"""

import os
from dataclasses import dataclass, fields, replace
from typing import Mapping, Optional

from .errors import ConfigurationError


ENV_PREFIX = "MCPFLEET_"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class WorkerOptions:
    """Per-worker overrides. None means use the client default."""

    timeout: Optional[float] = None
    max_reconnect_attempts: Optional[int] = None
    auto_reconnect: Optional[bool] = None

    def __post_init__(self):
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigurationError(f"timeout must be positive, got {self.timeout}")
        if self.max_reconnect_attempts is not None and self.max_reconnect_attempts < 0:
            raise ConfigurationError(
                f"max_reconnect_attempts must be >= 0, got {self.max_reconnect_attempts}"
            )


@dataclass(frozen=True)
class ClientConfig:
    """
    Client-wide settings.

    - timeout: per-request timeout
    - auto_reconnect: respawn workers whose process exits
    - max_reconnect_attempts: consecutive reconnects before giving up
    - reconnect_delay: base delay, multiplied by the attempt number
    - startup_delay: grace period between spawn and handshake
    - health_check_interval: seconds between liveness probes (0 disables)
    - health_probe_method: cheap method used as the liveness probe
    - shutdown_grace: wait after terminate() before kill()
    - max_line_bytes: longest protocol line accepted from a worker
    - debug: use the pretty log handler when no handler is given
    """

    timeout: float = 10.0
    auto_reconnect: bool = False
    max_reconnect_attempts: int = 3
    reconnect_delay: float = 1.0
    startup_delay: float = 1.0
    health_check_interval: float = 30.0
    health_probe_method: str = "tools/list"
    shutdown_grace: float = 2.0
    max_line_bytes: int = 16 * 1024 * 1024
    debug: bool = False

    def __post_init__(self):
        if self.health_check_interval is None:
            object.__setattr__(self, "health_check_interval", 0.0)
        if self.timeout <= 0:
            raise ConfigurationError(f"timeout must be positive, got {self.timeout}")
        if self.max_reconnect_attempts < 0:
            raise ConfigurationError(
                f"max_reconnect_attempts must be >= 0, got {self.max_reconnect_attempts}"
            )
        for name in ("reconnect_delay", "startup_delay", "health_check_interval", "shutdown_grace"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be >= 0, got {getattr(self, name)}")
        if self.max_line_bytes <= 0:
            raise ConfigurationError(
                f"max_line_bytes must be positive, got {self.max_line_bytes}"
            )
        if not self.health_probe_method:
            raise ConfigurationError("health_probe_method must not be empty")

    def with_overrides(self, **overrides) -> "ClientConfig":
        """Return a copy with the given fields replaced."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigurationError(f"Unknown config option(s): {', '.join(sorted(unknown))}")
        return replace(self, **overrides)

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, prefix: str = ENV_PREFIX
    ) -> "ClientConfig":
        """Build a config from environment variables, falling back to defaults."""
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = environ.get(prefix + f.name.upper())
            if raw is None:
                continue
            values[f.name] = _parse_value(f.name, f.type, raw)
        return cls(**values)


def _parse_value(name: str, type_, raw: str):
    """Convert an environment string to the field's declared type."""
    text = raw.strip()
    try:
        if type_ in (bool, "bool"):
            lowered = text.lower()
            if lowered in _TRUE_VALUES:
                return True
            if lowered in _FALSE_VALUES:
                return False
            raise ValueError(f"not a boolean: {raw!r}")
        if type_ in (int, "int"):
            return int(text)
        if type_ in (float, "float"):
            return float(text)
        return text
    except ValueError as e:
        raise ConfigurationError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {e}")
