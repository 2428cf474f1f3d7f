from __future__ import annotations

import pytest

from tachobridge.exceptions import BridgeDeviceError
from tachobridge.models import ReaderObservation, ReaderStatus
from tachobridge.reader.monitor import ReaderMonitor

from tests.fakes import FakeReaderBackend, fast_config, until


def _statuses(observations: list[ReaderObservation], reader: str) -> list[ReaderStatus]:
    return [o.status for o in observations if o.reader_name == reader]


@pytest.mark.asyncio
async def test_insert_and_remove_emit_one_observation_each() -> None:
    backend = FakeReaderBackend("Slot1")
    observations: list[ReaderObservation] = []
    monitor = ReaderMonitor(backend, fast_config(), observations.append)
    await monitor.start()
    try:
        await until(lambda: len(observations) == 1)
        assert observations[0].status is ReaderStatus.NO_CARD

        backend.sources["Slot1"].insert("0a0b0c0d")
        await until(lambda: len(observations) == 2)
        present = observations[1]
        assert present.status is ReaderStatus.CARD_PRESENT
        assert present.identity == "0A0B0C0D"
        assert present.atr is not None

        backend.sources["Slot1"].remove()
        await until(lambda: len(observations) == 3)
        assert observations[2].status is ReaderStatus.NO_CARD
        assert observations[2].identity is None
    finally:
        await monitor.stop()
    assert backend.sources["Slot1"].closed


@pytest.mark.asyncio
async def test_failing_reader_does_not_affect_the_other() -> None:
    backend = FakeReaderBackend("R1", "R2")
    observations: list[ReaderObservation] = []
    monitor = ReaderMonitor(backend, fast_config(device_retry_budget=2), observations.append)
    await monitor.start()
    try:
        await until(lambda: len(_statuses(observations, "R1")) == 1 and len(_statuses(observations, "R2")) == 1)

        backend.sources["R1"].broken = True
        await until(lambda: ReaderStatus.ERROR in _statuses(observations, "R1"))
        watcher = monitor.watcher("R1")
        assert watcher is not None and watcher.failures > 2

        backend.sources["R2"].insert("ID-2")
        await until(lambda: ReaderStatus.CARD_PRESENT in _statuses(observations, "R2"))
        assert _statuses(observations, "R2") == [ReaderStatus.NO_CARD, ReaderStatus.CARD_PRESENT]

        # R1 keeps retrying and recovers on its own.
        backend.sources["R1"].broken = False
        await until(lambda: _statuses(observations, "R1")[-1] is ReaderStatus.NO_CARD)
        assert _statuses(observations, "R1").count(ReaderStatus.ERROR) == 1
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_restart_reopens_one_reader_and_reports_again() -> None:
    backend = FakeReaderBackend("R1", "R2")
    observations: list[ReaderObservation] = []
    monitor = ReaderMonitor(backend, fast_config(), observations.append)
    await monitor.start()
    try:
        await until(lambda: len(observations) == 2)

        assert monitor.restart("R1") == ["R1"]
        await until(lambda: len(_statuses(observations, "R1")) == 2)

        assert backend.opens == {"R1": 2, "R2": 1}
        assert _statuses(observations, "R2") == [ReaderStatus.NO_CARD]
        assert monitor.restart("missing") == []
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_discovery_tracks_plugged_and_unplugged_readers() -> None:
    backend = FakeReaderBackend("Slot1")
    observations: list[ReaderObservation] = []
    monitor = ReaderMonitor(backend, fast_config(), observations.append)
    await monitor.start()
    try:
        await until(lambda: len(observations) == 1)

        backend.add("Slot2")
        await until(lambda: monitor.readers == ["Slot1", "Slot2"])

        backend.unplug("Slot1")
        await until(lambda: monitor.readers == ["Slot2"])
        await until(lambda: _statuses(observations, "Slot1")[-1] is ReaderStatus.UNKNOWN)
        assert backend.sources["Slot1"].closed
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_transmit_goes_to_the_named_reader() -> None:
    backend = FakeReaderBackend("Slot1")
    observations: list[ReaderObservation] = []
    monitor = ReaderMonitor(backend, fast_config(), observations.append)
    await monitor.start()
    try:
        backend.sources["Slot1"].insert("ID-1")
        await until(lambda: any(o.status is ReaderStatus.CARD_PRESENT for o in observations))

        reply = await monitor.transmit("Slot1", bytes.fromhex("00A4020C020002"))
        assert reply == bytes.fromhex("9000")
        assert backend.sources["Slot1"].apdus == [bytes.fromhex("00A4020C020002")]

        await monitor.reset_card("Slot1")
        assert backend.sources["Slot1"].resets == 1

        with pytest.raises(BridgeDeviceError):
            await monitor.transmit("Nope", b"\x00")
    finally:
        await monitor.stop()
