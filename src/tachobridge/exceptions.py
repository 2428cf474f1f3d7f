"""Custom exception hierarchy for tachobridge."""

from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all tachobridge errors."""


class BridgeConfigError(BridgeError):
    """Invalid or missing runtime configuration."""


class BridgeValidationError(BridgeError):
    """A command argument failed validation (e.g. malformed card number).

    Returned synchronously to the initiating command; nothing was changed.
    """

    def __init__(self, message: str, *, field: str = "", value: str = "") -> None:
        self.field = field
        self.value = value
        super().__init__(message)


class BridgeDuplicateError(BridgeError):
    """Card number already claimed by a different card.

    Returned synchronously to the initiating command; the registry is unchanged.
    """

    def __init__(self, message: str, *, card_number: str = "", identity: str = "") -> None:
        self.card_number = card_number
        self.identity = identity
        super().__init__(message)


class BridgeDeviceError(BridgeError):
    """Reader or card I/O failure.

    Retried by the owning reader watcher and only ever surfaced as a reader
    status tag, never as a command failure.
    """

    def __init__(self, message: str, *, reader: str = "") -> None:
        self.reader = reader
        super().__init__(message)


class BridgeConnectivityError(BridgeError):
    """Broker unreachable, TLS/handshake failure or session loss.

    Drives the cloud bridge into its reconnecting state.
    """

    def __init__(self, message: str, *, endpoint: str = "") -> None:
        self.endpoint = endpoint
        super().__init__(message)


class BridgePersistenceError(BridgeError):
    """The configuration document location is missing or inaccessible.

    Once raised the store is read-only: no further mutation can be durably
    acknowledged, so every later mutating command fails with this error.
    """

    def __init__(self, message: str, *, path: str = "") -> None:
        self.path = path
        super().__init__(message)


class BridgeProtocolError(BridgeError):
    """Malformed inbound broker message (logged and dropped)."""

    def __init__(self, message: str, *, topic: str = "") -> None:
        self.topic = topic
        super().__init__(message)
