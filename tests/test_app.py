from __future__ import annotations

import asyncio
import json
import threading
import time
from pathlib import Path
from typing import Any

import pytest

from tachobridge.app import BridgeApp
from tachobridge.cloud import SessionState
from tachobridge.dispatcher import NotificationChannel
from tachobridge.exceptions import BridgeDuplicateError, BridgePersistenceError, BridgeValidationError
from tachobridge.models import (
    CardConfigUpdated,
    CardsSync,
    ConfigSync,
    ManualSyncCards,
    Notice,
    NoticeKind,
    ReaderStatus,
    Reconnect,
    RemoveCard,
    UpdateCard,
    UpdateServer,
)

from tests.fakes import FakeBroker, FakeReaderBackend, fast_config, until

_IDENT = "TBA0000000000001"


def _seed(tmp_path: Path, host: str = "broker.example", cards: dict[str, object] | None = None) -> None:
    body = {"serverHost": host, "appIdent": _IDENT, "theme": "Auto", "cards": cards or {}}
    (tmp_path / "config.json").write_text(json.dumps(body), encoding="utf-8")


def _syncs(channel: NotificationChannel) -> list[CardsSync]:
    return [n for n in channel.drain() if isinstance(n, CardsSync)]


def _app(tmp_path: Path, backend: FakeReaderBackend, broker: FakeBroker, **overrides: object) -> BridgeApp:
    return BridgeApp(fast_config(tmp_path, **overrides), backend=backend, runtime_factory=broker)


@pytest.mark.asyncio
async def test_inserted_unbound_card_is_reported_then_bound(tmp_path: Path) -> None:
    _seed(tmp_path)
    backend = FakeReaderBackend("Slot1")
    broker = FakeBroker()

    async with _app(tmp_path, backend, broker) as app:
        channel = app.subscribe()
        await until(lambda: app.bridge.connected and "Slot1" in app.readers and app.readers["Slot1"].online)
        channel.drain()

        backend.sources["Slot1"].insert("ID-123")
        await until(lambda: app.readers["Slot1"].has_card)
        (sync,) = _syncs(channel)
        assert sync == CardsSync(
            reader_name="Slot1",
            identity="ID-123",
            status=ReaderStatus.CARD_PRESENT,
            card_number="",
            online=True,
            authenticating=False,
        )

        card = await app.submit(UpdateCard(identity="ID-123", card_number="AAAA111122223333"))
        on_disk = json.loads((tmp_path / "config.json").read_text(encoding="utf-8"))
        assert on_disk["cards"]["AAAA111122223333"]["identity"] == "ID-123"
        assert app.registry.get("AAAA111122223333") == card

        pending = channel.drain()
        assert CardConfigUpdated(card_number="AAAA111122223333", record=card) in pending
        (bound,) = [n for n in pending if isinstance(n, CardsSync)]
        assert bound.card_number == "AAAA111122223333"

        await until(lambda: broker.last("readers/Slot1") is not None
                    and broker.last("readers/Slot1").json()["cardNumber"] == "AAAA111122223333")
        assert broker.last("/cards").json()["AAAA111122223333"]["identity"] == "ID-123"


@pytest.mark.asyncio
async def test_duplicate_card_number_is_rejected_without_notification(tmp_path: Path) -> None:
    _seed(tmp_path, cards={"AAAA111122223333": {"identity": "ID-123", "updatedAt": 1.0}})
    backend = FakeReaderBackend("Slot1")
    broker = FakeBroker()

    async with _app(tmp_path, backend, broker) as app:
        channel = app.subscribe(replay=False)

        with pytest.raises(BridgeDuplicateError):
            await app.submit(UpdateCard(identity="ID-999", card_number="AAAA111122223333"))
        with pytest.raises(BridgeValidationError):
            await app.submit({"command": "updateCard", "identity": "ID-1", "cardNumber": "short"})

        assert app.registry.get("AAAA111122223333").identity == "ID-123"
        assert not [n for n in channel.drain() if not isinstance(n, CardsSync)]


@pytest.mark.asyncio
async def test_startup_announces_stored_cards_and_settings(tmp_path: Path) -> None:
    _seed(tmp_path, host="", cards={"AAAA111122223333": {"identity": "ID-1", "updatedAt": 1.0}})

    async with _app(tmp_path, FakeReaderBackend(), FakeBroker()) as app:
        initial = app.subscribe().drain()

        assert ConfigSync(host="", ident=_IDENT, theme="Auto") in initial
        assert [n.card_number for n in initial if isinstance(n, CardConfigUpdated)] == ["AAAA111122223333"]
        assert app.bridge.state is SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_inaccessible_storage_is_reported_once(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    backend = FakeReaderBackend("Slot1")
    broker = FakeBroker()
    app = BridgeApp(fast_config(config_path=blocker / "config.json"), backend=backend, runtime_factory=broker)

    async with app:
        channel = app.subscribe()
        assert app.read_only

        with pytest.raises(BridgePersistenceError):
            await app.submit(UpdateCard(identity="ID-1", card_number="AAAA111122223333"))
        with pytest.raises(BridgePersistenceError):
            await app.submit(RemoveCard(card_number="AAAA111122223333"))

        backend.sources["Slot1"].insert("ID-1")
        await until(lambda: "Slot1" in app.readers and app.readers["Slot1"].has_card)

        notices = [n for n in channel.drain() if isinstance(n, Notice)]
        assert len(notices) == 1
        assert notices[0].kind is NoticeKind.ACCESS
        assert broker.starts == 0


@pytest.mark.asyncio
async def test_update_server_persists_and_reconnects(tmp_path: Path) -> None:
    _seed(tmp_path)
    broker = FakeBroker()

    async with _app(tmp_path, FakeReaderBackend(), broker) as app:
        await until(lambda: app.bridge.connected)
        channel = app.subscribe(replay=False)

        with pytest.raises(BridgeValidationError):
            await app.submit(UpdateServer(host="broker.example", ident="nope"))

        await app.submit(UpdateServer(host="other.example:1883", ident="TBA0000000000002", theme="Dark"))
        await until(lambda: broker.starts == 2 and app.bridge.connected)

        on_disk = json.loads((tmp_path / "config.json").read_text(encoding="utf-8"))
        assert (on_disk["serverHost"], on_disk["appIdent"], on_disk["theme"]) == (
            "other.example:1883",
            "TBA0000000000002",
            "Dark",
        )
        assert ConfigSync(host="other.example:1883", ident="TBA0000000000002", theme="Dark") in channel.drain()
        bootstrap = broker.current.bootstrap
        assert bootstrap is not None and (bootstrap.host, bootstrap.port) == ("other.example", 1883)


@pytest.mark.asyncio
async def test_manual_sync_redelivers_reader_state(tmp_path: Path) -> None:
    _seed(tmp_path, host="")
    backend = FakeReaderBackend("Slot1")

    async with _app(tmp_path, backend, FakeBroker()) as app:
        await until(lambda: "Slot1" in app.readers)
        channel = app.subscribe(replay=False)

        synced = await app.submit(ManualSyncCards(restart=True))

        assert synced == ["Slot1"]
        assert [n.reader_name for n in _syncs(channel)] == ["Slot1"]
        await until(lambda: backend.opens["Slot1"] == 2)


@pytest.mark.asyncio
async def test_broker_commands_reach_the_registry(tmp_path: Path) -> None:
    _seed(tmp_path)
    broker = FakeBroker()

    async with _app(tmp_path, FakeReaderBackend(), broker) as app:
        await until(lambda: app.bridge.connected)

        broker.deliver("commands", {"command": "updateCard", "identity": "ID-5", "cardNumber": "EEEE555566667777"})
        await until(lambda: "EEEE555566667777" in app.registry)

        broker.deliver("commands", {"command": "updateCard", "identity": "ID-6", "cardNumber": "EEEE555566667777"})
        broker.deliver("commands", {"command": "cardRejected", "cardNumber": "EEEE555566667777"})
        broker.deliver("commands", {"command": "versionNotice", "version": "2.0.0"})
        await until(lambda: app.dispatcher.last("notice:version") is not None)

        assert app.registry.get("EEEE555566667777").identity == "ID-5"
        duplicate = app.dispatcher.last("notice:duplicate")
        assert isinstance(duplicate, Notice) and "EEEE555566667777" in duplicate.message


@pytest.mark.asyncio
async def test_apdu_relay(tmp_path: Path) -> None:
    _seed(tmp_path, cards={"AAAA111122223333": {"identity": "ID-1", "updatedAt": 1.0}})
    backend = FakeReaderBackend("Slot1")
    broker = FakeBroker()

    async with _app(tmp_path, backend, broker) as app:
        await until(lambda: app.bridge.connected and "Slot1" in app.readers)
        source = backend.sources["Slot1"]
        source.insert("ID-1", atr="3B00")
        source.reply = bytes.fromhex("01029000")
        await until(lambda: app.readers["Slot1"].has_card)

        def _response() -> object:
            item = broker.last("auth/AAAA111122223333/response")
            return item.json() if item is not None else None

        broker.deliver("auth/AAAA111122223333/request", {"payload": ""})
        await until(lambda: _response() == {"payload": "3B00"})
        assert not app.readers["Slot1"].authenticating
        assert source.resets == 0

        broker.deliver("auth/AAAA111122223333/request", {"payload": "00b0000019"})
        await until(lambda: _response() == {"payload": "01029000"})
        assert source.apdus[-1] == bytes.fromhex("00B0000019")
        assert app.readers["Slot1"].authenticating

        # A new ATR request interrupts the exchange in progress.
        broker.deliver("auth/AAAA111122223333/request", {"payload": ""})
        await until(lambda: _response() == {"payload": "3B00"})
        assert source.resets == 1
        assert not app.readers["Slot1"].authenticating

        broker.deliver("auth/AAAA111122223333/request", {"finish": True})
        await until(lambda: _response() == {"payload": ""})
        assert source.resets == 2
        assert not app.readers["Slot1"].authenticating

        broker.deliver("auth/ZZZZ999999999999/request", {"payload": "00"})
        await until(lambda: broker.last("auth/ZZZZ999999999999/response") is not None)
        assert broker.last("auth/ZZZZ999999999999/response").json() == {"payload": ""}


@pytest.mark.asyncio
async def test_stop_lets_an_in_flight_commit_finish(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _seed(tmp_path)
    app = _app(tmp_path, FakeReaderBackend(), FakeBroker())
    await app.start()

    writing = threading.Event()
    write = app.store.write

    def _slow_write(document: Any) -> None:
        writing.set()
        time.sleep(0.3)
        write(document)

    monkeypatch.setattr(app.store, "write", _slow_write)
    submitted = asyncio.create_task(app.submit(UpdateCard(identity="ID-1", card_number="AAAA111122223333")))
    await until(writing.is_set)

    await app.stop()
    card = await asyncio.wait_for(submitted, 1.0)

    on_disk = json.loads((tmp_path / "config.json").read_text(encoding="utf-8"))
    assert on_disk["cards"]["AAAA111122223333"]["identity"] == "ID-1"
    assert app.registry.get("AAAA111122223333") == card


@pytest.mark.asyncio
async def test_unplugged_reader_is_not_republished(tmp_path: Path) -> None:
    _seed(tmp_path)
    backend = FakeReaderBackend("Slot1")
    broker = FakeBroker()

    async with _app(tmp_path, backend, broker) as app:
        await until(lambda: app.bridge.connected and "readers/Slot1" in app.bridge.latest)

        backend.unplug("Slot1")
        await until(lambda: "Slot1" not in app.readers)
        assert "readers/Slot1" not in app.bridge.latest

        await app.submit(Reconnect())
        await until(lambda: broker.starts == 2 and app.bridge.connected)
        await asyncio.sleep(0.05)
        assert not [t for t in broker.topics(session=2) if t.endswith("readers/Slot1")]
