"""Runtime configuration for tachobridge."""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path
from typing import Any

from tachobridge._constants import CONFIG_DIR_PARTS, CONFIG_FILE_NAME, DEFAULT_KEEPALIVE_SECONDS


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def default_config_path() -> Path:
    """Per-user location of the configuration document (``~/Documents/tba``)."""
    return Path.home().joinpath(*CONFIG_DIR_PARTS, CONFIG_FILE_NAME)


@dataclasses.dataclass(frozen=True)
class BridgeConfig:
    """Bridge runtime configuration.

    This is the process-level tuning of the bridge. The user-editable server
    settings (broker host, application ident, theme) live in the persisted
    configuration document instead, see :mod:`tachobridge.storage`.

    Parameters
    ----------
    config_path : Path or None
        Location of the configuration document. ``None`` resolves to
        ``~/Documents/tba/config.json``.
    keepalive : int
        MQTT keepalive in seconds. The broker considers the session dead
        after 1.5x this interval without traffic.
    connect_timeout : float
        Seconds to wait for the broker handshake before giving up.
    backoff_initial : float
        First reconnect delay in seconds. Doubles on each consecutive failure.
    backoff_max : float
        Upper bound for the reconnect delay.
    tls_enabled : bool
        Encrypt the broker session. Disabling is only meant for local brokers.
    tls_insecure : bool
        Skip broker certificate hostname verification.
    reader_wait_timeout : float
        Upper bound of one blocking wait for a reader change. Keeps watchers
        responsive to restart and shutdown.
    poll_interval : float or None
        When set, readers are polled at this interval instead of using the
        native status-change notification.
    discovery_interval : float
        Seconds between reader list refreshes.
    device_retry_budget : int
        Consecutive reader I/O failures tolerated before the reader is
        reported as ``ERROR``.
    device_retry_delay : float
        Pause between reader I/O retries.
    """

    config_path: Path | None = None
    keepalive: int = DEFAULT_KEEPALIVE_SECONDS
    connect_timeout: float = 15.0
    backoff_initial: float = 1.0
    backoff_max: float = 120.0
    tls_enabled: bool = True
    tls_insecure: bool = False
    reader_wait_timeout: float = 1.0
    poll_interval: float | None = None
    discovery_interval: float = 2.0
    device_retry_budget: int = 3
    device_retry_delay: float = 1.0

    @property
    def resolved_config_path(self) -> Path:
        return self.config_path if self.config_path is not None else default_config_path()

    def backoff_delay(self, attempt: int) -> float:
        """Reconnect delay for the given zero-based consecutive failure count."""
        if attempt <= 0:
            return self.backoff_initial
        return min(self.backoff_max, self.backoff_initial * (2 ** min(attempt, 32)))

    @classmethod
    def from_env(cls, **overrides: Any) -> BridgeConfig:
        """Create configuration from ``TBA_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ
        config_kwargs: dict[str, Any] = {}

        path_env = env.get("TBA_CONFIG_PATH")
        if path_env:
            config_kwargs["config_path"] = Path(path_env).expanduser()

        _ENV_FLOAT_MAP = {
            "TBA_CONNECT_TIMEOUT": "connect_timeout",
            "TBA_BACKOFF_INITIAL": "backoff_initial",
            "TBA_BACKOFF_MAX": "backoff_max",
            "TBA_READER_WAIT_TIMEOUT": "reader_wait_timeout",
            "TBA_POLL_INTERVAL": "poll_interval",
            "TBA_DISCOVERY_INTERVAL": "discovery_interval",
            "TBA_DEVICE_RETRY_DELAY": "device_retry_delay",
        }
        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = float(val)

        _ENV_INT_MAP = {
            "TBA_KEEPALIVE": "keepalive",
            "TBA_DEVICE_RETRY_BUDGET": "device_retry_budget",
        }
        for env_key, field_name in _ENV_INT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = int(val)

        if "tls_enabled" not in overrides:
            config_kwargs["tls_enabled"] = _env_bool(env.get("TBA_TLS_ENABLED"), True)
        if "tls_insecure" not in overrides:
            config_kwargs["tls_insecure"] = _env_bool(env.get("TBA_TLS_INSECURE"), False)

        config_kwargs.update(overrides)
        return cls(**config_kwargs)
