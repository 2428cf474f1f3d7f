from __future__ import annotations

import json
from pathlib import Path

import pytest

from tachobridge.exceptions import BridgePersistenceError
from tachobridge.models import ServerConfig, SmartCard, Theme
from tachobridge.models.server import is_valid_ident
from tachobridge.storage import ConfigDocument, ConfigStore, parse_document

_IDENT = "TBA0000000000001"


def _write(path: Path, body: object) -> None:
    path.write_text(json.dumps(body), encoding="utf-8")


def test_missing_file_is_first_run(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path / "tba" / "config.json")
    stored = store.read()

    assert stored.created is True
    assert stored.cards == []
    assert is_valid_ident(stored.server.ident)
    assert (tmp_path / "tba").is_dir()


@pytest.mark.asyncio
async def test_commit_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    store = ConfigStore(path, app_version="1.2.3")
    server = ServerConfig(host="broker.example:8883", ident=_IDENT, theme=Theme.DARK)
    card = SmartCard(card_number="AAAA111122223333", identity="ID-1", name="Truck 7", updated_at=100.0)

    await store.commit(server=server, cards={card.card_number: card})

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["version"] == "1.2.3"
    assert raw["serverHost"] == "broker.example:8883"
    assert raw["appIdent"] == _IDENT
    assert raw["theme"] == "Dark"
    assert raw["cards"] == {
        "AAAA111122223333": {"identity": "ID-1", "name": "Truck 7", "expire": None, "updatedAt": 100.0}
    }

    reread = ConfigStore(path).read()
    assert reread.server == server
    assert reread.cards == [card]
    assert reread.migrations == []


@pytest.mark.asyncio
async def test_commit_keeps_the_other_part(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path / "config.json")
    server = ServerConfig(host="", ident=_IDENT)
    card = SmartCard(card_number="AAAA111122223333", identity="ID-1", updated_at=1.0)
    await store.commit(server=server, cards={card.card_number: card})

    document = await store.commit(server=server.model_copy(update={"host": "broker.example"}))
    assert document.server_host == "broker.example"
    assert list(document.cards) == ["AAAA111122223333"]


@pytest.mark.asyncio
async def test_commit_needs_full_document_first(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path / "config.json")
    with pytest.raises(BridgePersistenceError):
        await store.commit(server=ServerConfig(ident=_IDENT))


def test_atomic_write_leaves_no_temp_files(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path / "config.json")
    document = ConfigDocument.build(ServerConfig(ident=_IDENT), {}, version="1")
    store.write(document)
    store.write(document)
    assert sorted(p.name for p in tmp_path.iterdir()) == ["config.json"]


def test_failed_write_keeps_previous_document(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "config.json"
    store = ConfigStore(path)
    first = ConfigDocument.build(ServerConfig(ident=_IDENT), {}, version="1")
    store.write(first)
    before = path.read_text(encoding="utf-8")

    def _boom(*_args: object, **_kwargs: object) -> None:
        raise OSError(28, "No space left on device")

    monkeypatch.setattr("tachobridge.storage.os.replace", _boom)
    with pytest.raises(BridgePersistenceError):
        store.write(ConfigDocument.build(ServerConfig(host="changed", ident=_IDENT), {}, version="1"))

    assert path.read_text(encoding="utf-8") == before
    assert sorted(p.name for p in tmp_path.iterdir()) == ["config.json"]
    assert store.document == first
    assert not store.accessible


def test_inaccessible_location_is_sticky(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    store = ConfigStore(blocker / "config.json")

    with pytest.raises(BridgePersistenceError) as exc_info:
        store.read()
    assert exc_info.value.path == str(blocker / "config.json")
    assert store.accessible is False

    with pytest.raises(BridgePersistenceError):
        store.write(ConfigDocument.build(ServerConfig(ident=_IDENT), {}, version="1"))


def test_corrupt_document_is_moved_aside(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")

    stored = ConfigStore(path).read()

    assert stored.created is True
    assert not path.exists()
    assert [p.name.startswith("config.json.corrupt-") for p in tmp_path.iterdir()] == [True]


def test_legacy_nested_layout_is_migrated() -> None:
    stored = parse_document(
        json.dumps(
            {
                "name": "Tacho Bridge Application",
                "ident": _IDENT,
                "server": {"host": "old.example:8883"},
                "appearance": {"dark_theme": "Light"},
                "cards": {
                    "aaaa 1111 2222 3333": {"iccid": "01:02:03:04", "expire": 1700000000},
                },
            }
        )
    )

    assert stored.server == ServerConfig(host="old.example:8883", ident=_IDENT, theme=Theme.LIGHT)
    (card,) = stored.cards
    assert card.card_number == "AAAA111122223333"
    assert card.identity == "01020304"
    assert card.expire == 1700000000
    assert any("iccid" in note for note in stored.migrations)


def test_oldest_atr_mapping_becomes_unbound_record() -> None:
    stored = parse_document(json.dumps({"appIdent": _IDENT, "cards": {"3B9F96C00A3F": "BBBB222233334444"}}))
    (card,) = stored.cards
    assert card.card_number == "BBBB222233334444"
    assert card.identity == ""


def test_invalid_ident_is_regenerated() -> None:
    stored = parse_document(json.dumps({"appIdent": "nope"}))
    assert is_valid_ident(stored.server.ident)
    assert stored.server.ident != "nope"


def test_duplicate_keys_are_all_kept_as_candidates() -> None:
    text = (
        '{"appIdent": "TBA0000000000001", "cards": {'
        '"AAAA111122223333": {"identity": "OLD", "updatedAt": 1.0},'
        '"AAAA111122223333": {"identity": "NEW", "updatedAt": 2.0},'
        '"not-a-card-number": {"identity": "X"}}}'
    )
    stored = parse_document(text)

    assert [c.identity for c in stored.cards] == ["OLD", "NEW"]
    assert any("dropped invalid" in note for note in stored.migrations)
