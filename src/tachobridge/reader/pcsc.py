"""PC/SC reader backend on top of pyscard."""

from __future__ import annotations

import logging
import time

from smartcard import scard
from smartcard.CardConnection import CardConnection
from smartcard.Exceptions import NoCardException, SmartcardException
from smartcard.System import readers

from tachobridge._constants import APDU_READ_EF_ICC, APDU_SELECT_EF_ICC, EF_ICC_SERIAL_SLICE, SW_SUCCESS
from tachobridge.exceptions import BridgeDeviceError
from tachobridge.reader.backend import ChangeSet

_logger = logging.getLogger(__name__)


def _find_reader(name: str):
    try:
        available = readers()
    except SmartcardException as exc:
        raise BridgeDeviceError(f"Cannot list readers: {exc}", reader=name) from exc
    for reader in available:
        if str(reader) == name:
            return reader
    raise BridgeDeviceError("Reader not found", reader=name)


class _PcscSource:
    """Card connection handling shared by both change sources."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._connection: CardConnection | None = None

    def _connect(self) -> CardConnection:
        if self._connection is not None:
            return self._connection
        connection = _find_reader(self.name).createConnection()
        try:
            connection.connect()
        except NoCardException as exc:
            raise BridgeDeviceError("No card in reader", reader=self.name) from exc
        except SmartcardException as exc:
            raise BridgeDeviceError(f"Cannot connect to card: {exc}", reader=self.name) from exc
        self._connection = connection
        return connection

    def _disconnect(self) -> None:
        connection = self._connection
        self._connection = None
        if connection is None:
            return
        try:
            connection.disconnect()
        except SmartcardException:
            _logger.debug("Disconnect failed on %s", self.name, exc_info=True)

    def _exchange(self, apdu: bytes) -> tuple[bytes, int, int]:
        connection = self._connect()
        try:
            data, sw1, sw2 = connection.transmit(list(apdu))
        except SmartcardException as exc:
            self._disconnect()
            raise BridgeDeviceError(f"APDU exchange failed: {exc}", reader=self.name) from exc
        return bytes(data), sw1, sw2

    def transmit(self, apdu: bytes) -> bytes:
        data, sw1, sw2 = self._exchange(apdu)
        return data + bytes((sw1, sw2))

    def read_identity(self) -> str:
        # Fresh session: a relay exchange may have left another file selected.
        self._disconnect()
        _data, sw1, sw2 = self._exchange(APDU_SELECT_EF_ICC)
        if (sw1, sw2) != SW_SUCCESS:
            raise BridgeDeviceError(f"SELECT EF_ICC failed: SW={sw1:02X}{sw2:02X}", reader=self.name)
        data, sw1, sw2 = self._exchange(APDU_READ_EF_ICC)
        if (sw1, sw2) != SW_SUCCESS:
            raise BridgeDeviceError(f"READ BINARY EF_ICC failed: SW={sw1:02X}{sw2:02X}", reader=self.name)
        serial = data[EF_ICC_SERIAL_SLICE]
        if len(serial) != EF_ICC_SERIAL_SLICE.stop - EF_ICC_SERIAL_SLICE.start:
            raise BridgeDeviceError(f"EF_ICC too short ({len(data)} bytes)", reader=self.name)
        return serial.hex().upper()

    def reset(self) -> None:
        # pyscard unpowers the card on disconnect.
        self._disconnect()
        self._connect()

    def close(self) -> None:
        self._disconnect()


class StatusChangeSource(_PcscSource):
    """Blocks in ``SCardGetStatusChange`` until the slot changes."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        hresult, context = scard.SCardEstablishContext(scard.SCARD_SCOPE_USER)
        if hresult != scard.SCARD_S_SUCCESS:
            raise BridgeDeviceError(
                f"Cannot establish PC/SC context: {scard.SCardGetErrorMessage(hresult)}",
                reader=name,
            )
        self._context = context
        self._current_state = scard.SCARD_STATE_UNAWARE

    def wait_for_change(self, timeout: float) -> ChangeSet | None:
        if self._context is None:
            raise BridgeDeviceError("Source closed", reader=self.name)
        hresult, states = scard.SCardGetStatusChange(
            self._context,
            int(timeout * 1000),
            [(self.name, self._current_state)],
        )
        if hresult in (scard.SCARD_E_TIMEOUT, scard.SCARD_E_CANCELLED):
            return None
        if hresult != scard.SCARD_S_SUCCESS:
            raise BridgeDeviceError(
                f"SCardGetStatusChange failed: {scard.SCardGetErrorMessage(hresult)}",
                reader=self.name,
            )

        _reader, event_state, atr = states[0]
        self._current_state = event_state & ~scard.SCARD_STATE_CHANGED
        if event_state & (scard.SCARD_STATE_UNKNOWN | scard.SCARD_STATE_UNAVAILABLE):
            return ChangeSet(present=False, unavailable=True)
        present = bool(event_state & scard.SCARD_STATE_PRESENT) and not event_state & scard.SCARD_STATE_MUTE
        if not present:
            self._disconnect()
            return ChangeSet(present=False)
        return ChangeSet(present=True, atr=bytes(atr).hex().upper() or None)

    def close(self) -> None:
        super().close()
        context = self._context
        self._context = None
        if context is None:
            return
        scard.SCardCancel(context)
        scard.SCardReleaseContext(context)


class PollingChangeSource(_PcscSource):
    """Probes the slot every ``interval`` seconds for readers without status-change support."""

    def __init__(self, name: str, interval: float) -> None:
        super().__init__(name)
        self._interval = interval
        self._last: ChangeSet | None = None

    def _probe(self) -> ChangeSet:
        # Short-lived probe connection; SCARD_LEAVE_CARD keeps the card powered
        # for the main connection.
        probe = _find_reader(self.name).createConnection()
        try:
            probe.connect(disposition=scard.SCARD_LEAVE_CARD)
        except NoCardException:
            self._disconnect()
            return ChangeSet(present=False)
        except SmartcardException as exc:
            raise BridgeDeviceError(f"Cannot probe reader: {exc}", reader=self.name) from exc
        try:
            atr = bytes(probe.getATR()).hex().upper()
        finally:
            try:
                probe.disconnect()
            except SmartcardException:
                _logger.debug("Probe disconnect failed on %s", self.name, exc_info=True)
        return ChangeSet(present=True, atr=atr or None)

    def wait_for_change(self, timeout: float) -> ChangeSet | None:
        deadline = time.monotonic() + timeout
        while True:
            current = self._probe()
            if current != self._last:
                self._last = current
                return current
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self._interval, remaining))


class PcscBackend:
    """:class:`~tachobridge.reader.backend.ReaderBackend` over the system PC/SC service."""

    def __init__(self, *, poll_interval: float | None = None) -> None:
        self._poll_interval = poll_interval

    def list_readers(self) -> list[str]:
        try:
            return [str(reader) for reader in readers()]
        except SmartcardException as exc:
            raise BridgeDeviceError(f"Cannot list readers: {exc}") from exc

    def open(self, name: str) -> StatusChangeSource | PollingChangeSource:
        if self._poll_interval is not None:
            _logger.debug("Opening %s in polling mode (interval=%ss)", name, self._poll_interval)
            return PollingChangeSource(name, self._poll_interval)
        return StatusChangeSource(name)
