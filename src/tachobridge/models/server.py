"""Server settings: broker host, application ident and UI theme."""

from __future__ import annotations

import time

from pydantic import field_validator

from tachobridge._constants import APP_IDENT_RE, DEFAULT_BROKER_PORT
from tachobridge.exceptions import BridgeValidationError
from tachobridge.models._base import BridgeBaseModel, BridgeEnum


class Theme(BridgeEnum):
    AUTO = "Auto"
    DARK = "Dark"
    LIGHT = "Light"


def generate_ident() -> str:
    """New application ident: ``TBA`` followed by 13 digits of the microsecond clock."""
    micros = time.time_ns() // 1000
    return f"TBA{micros % 10**13:013d}"


def is_valid_ident(value: str) -> bool:
    return APP_IDENT_RE.fullmatch(value) is not None


def parse_broker_host(raw_host: str) -> tuple[str, int]:
    """Split ``host[:port]`` (optionally with a scheme or path) into host and port."""
    value = raw_host.strip()
    if not value:
        raise ValueError("Broker host is empty")

    if "://" in value:
        value = value.split("://", 1)[1]
    if "/" in value:
        value = value.split("/", 1)[0]

    host, _, maybe_port = value.rpartition(":")
    if host and maybe_port.isdigit():
        port = int(maybe_port)
        if not 0 < port < 65536:
            raise ValueError(f"Invalid broker port: {port}")
        return host, port
    if host:
        raise ValueError(f"Invalid broker port: {maybe_port!r}")
    return value, DEFAULT_BROKER_PORT


class ServerConfig(BridgeBaseModel):
    """User-editable server settings, persisted with the card registry."""

    host: str = ""
    ident: str = ""
    theme: Theme = Theme.AUTO

    @field_validator("host", "ident", mode="before")
    @classmethod
    def _strip(cls, value: object) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("theme", mode="before")
    @classmethod
    def _coerce_theme(cls, value: object) -> Theme:
        return Theme(value) if value is not None else Theme.AUTO

    @property
    def has_broker(self) -> bool:
        return bool(self.host)


def check_server_settings(host: str, ident: str) -> None:
    """Validate user-supplied server settings.

    An empty host is accepted (bridging disabled). Raises
    :class:`BridgeValidationError` on a malformed host or ident.
    """
    if host.strip():
        try:
            parse_broker_host(host)
        except ValueError as exc:
            raise BridgeValidationError(str(exc), field="host", value=host) from exc
    if not is_valid_ident(ident.strip()):
        raise BridgeValidationError(
            "ident must be 'TBA' followed by 13 digits",
            field="ident",
            value=ident,
        )
