"""Capability interface between the reader watchers and a smart card stack.

The watchers only ever talk to these protocols, so the PC/SC implementation
in :mod:`tachobridge.reader.pcsc` can be swapped for fakes in tests.
All methods are blocking and are called from the default executor.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class ChangeSet:
    """Slot state reported by :meth:`ChangeSource.wait_for_change`.

    ``unavailable`` means the reader itself could not be queried (unplugged,
    driver error); ``present`` and ``atr`` are meaningless in that case.
    """

    present: bool
    atr: str | None = None
    unavailable: bool = False


class ChangeSource(Protocol):
    """One open reader slot."""

    def wait_for_change(self, timeout: float) -> ChangeSet | None:
        """Block until the slot state changes or *timeout* seconds pass.

        The first call on a freshly opened source returns the current state
        right away. Returns ``None`` on timeout and raises
        :class:`~tachobridge.exceptions.BridgeDeviceError` on I/O failure.
        """
        ...

    def read_identity(self) -> str:
        """Canonical identity (uppercase chip serial hex) of the inserted card."""
        ...

    def transmit(self, apdu: bytes) -> bytes:
        """Send one APDU; returns response data followed by SW1 SW2."""
        ...

    def reset(self) -> None:
        """Reset the inserted card, ending any exchange in progress."""
        ...

    def close(self) -> None: ...


class ReaderBackend(Protocol):
    def list_readers(self) -> list[str]: ...

    def open(self, name: str) -> ChangeSource: ...
