"""Durable configuration document: server settings plus the card registry.

The whole document is written as one unit. Writes go to a temporary file in
the target directory which is fsynced and then promoted with
:func:`os.replace`, so a crash mid-write leaves the previous valid document in
place.

Reading tolerates the older layouts written by previous application versions
(nested ``server``/``appearance`` sections, ``iccid`` card entries and the
original ``ATR -> card number`` mapping). Card candidates are returned as read,
duplicates included; collapsing them is the registry's load-time job.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any

from pydantic import Field, ValidationError, field_serializer, field_validator

from tachobridge._constants import APP_DESCRIPTION, APP_NAME
from tachobridge.exceptions import BridgePersistenceError
from tachobridge.models._base import BridgeBaseModel
from tachobridge.models.card import SmartCard, normalize_identity, validate_card_number
from tachobridge.models.server import ServerConfig, Theme, generate_ident, is_valid_ident

_logger = logging.getLogger(__name__)


def _package_version() -> str:
    try:
        return version("tachobridge")
    except PackageNotFoundError:
        return "0+local"


class ConfigDocument(BridgeBaseModel):
    """On-disk layout of the configuration document."""

    name: str = APP_NAME
    version: str = ""
    description: str = APP_DESCRIPTION
    server_host: str = ""
    app_ident: str = ""
    theme: Theme = Theme.AUTO
    cards: dict[str, SmartCard] = Field(default_factory=dict)

    @field_validator("cards", mode="before")
    @classmethod
    def _inject_card_numbers(cls, value: Any) -> Any:
        if not isinstance(value, Mapping):
            return value
        cards: dict[str, Any] = {}
        for key, entry in value.items():
            if isinstance(entry, Mapping):
                cards[key] = {**entry, "cardNumber": key}
            else:
                cards[key] = entry
        return cards

    @field_serializer("cards")
    def _serialize_cards(self, cards: dict[str, SmartCard]) -> dict[str, Any]:
        return {number: card.to_record() for number, card in sorted(cards.items())}

    @property
    def server(self) -> ServerConfig:
        return ServerConfig(host=self.server_host, ident=self.app_ident, theme=self.theme)

    @classmethod
    def build(cls, server: ServerConfig, cards: Mapping[str, SmartCard], *, version: str) -> ConfigDocument:
        return cls(
            version=version,
            server_host=server.host,
            app_ident=server.ident,
            theme=server.theme,
            cards=dict(cards),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_wire(), indent=2, ensure_ascii=False) + "\n"


@dataclass(frozen=True)
class StoredDocument:
    """Result of reading the document, before deduplication."""

    server: ServerConfig
    cards: list[SmartCard]
    migrations: list[str] = field(default_factory=list)
    created: bool = False


class _Pairs(dict[str, Any]):
    """JSON object that remembers every key/value pair, repeated keys included."""

    pairs: list[tuple[str, Any]]


def _pairs_hook(pairs: list[tuple[str, Any]]) -> _Pairs:
    obj = _Pairs(pairs)
    obj.pairs = list(pairs)
    return obj


def _iter_pairs(value: Any) -> list[tuple[str, Any]]:
    if isinstance(value, _Pairs):
        return value.pairs
    if isinstance(value, Mapping):
        return list(value.items())
    return []


def _coerce_timestamp(value: Any) -> float:
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return 0.0
    return ts if ts > 0 else 0.0


def _read_server(raw: Mapping[str, Any], migrations: list[str]) -> ServerConfig:
    host = raw.get("serverHost")
    ident = raw.get("appIdent")
    theme = raw.get("theme")

    legacy_server = raw.get("server")
    if host is None and isinstance(legacy_server, Mapping):
        host = legacy_server.get("host")
        migrations.append("server.host -> serverHost")
    if ident is None and "ident" in raw:
        ident = raw.get("ident")
        migrations.append("ident -> appIdent")
    legacy_appearance = raw.get("appearance")
    if theme is None and isinstance(legacy_appearance, Mapping):
        theme = legacy_appearance.get("dark_theme", legacy_appearance.get("darkTheme"))
        migrations.append("appearance.dark_theme -> theme")

    ident_text = "" if ident is None else str(ident).strip()
    if not is_valid_ident(ident_text):
        ident_text = generate_ident()
        migrations.append(f"generated appIdent {ident_text}")

    return ServerConfig(host=host or "", ident=ident_text, theme=theme or Theme.AUTO)


def _read_cards(raw: Mapping[str, Any], migrations: list[str]) -> list[SmartCard]:
    candidates: list[SmartCard] = []
    for position, (key, entry) in enumerate(_iter_pairs(raw.get("cards"))):
        if isinstance(entry, str):
            # Oldest layout: ATR hex -> card number. The ATR is not a card
            # identity, so the number is kept unbound.
            card_number = "".join(entry.split()).upper()
            body: Mapping[str, Any] = {}
            migrations.append(f"card {card_number}: ATR mapping -> unbound record")
        else:
            card_number = "".join(str(key).split()).upper()
            body = entry if isinstance(entry, Mapping) else {}
            if card_number != key:
                migrations.append(f"card key {key!r} -> {card_number}")

        check = validate_card_number(card_number)
        if not check.valid:
            _logger.warning("Dropping card entry %r: %s", key, check.reason)
            migrations.append(f"dropped invalid card number {key!r}")
            continue

        identity = body.get("identity")
        if identity is None and "iccid" in body:
            identity = body.get("iccid")
            migrations.append(f"card {card_number}: iccid -> identity")

        try:
            card = SmartCard(
                card_number=card_number,
                identity=normalize_identity(identity),
                name=body.get("name") or "",
                expire=body.get("expire"),
                # Unstamped legacy records: later entries count as newer.
                updated_at=_coerce_timestamp(body.get("updatedAt")) or position * 1e-6,
            )
        except ValidationError:
            _logger.warning("Dropping unreadable card entry %r", key, exc_info=True)
            migrations.append(f"dropped unreadable card entry {key!r}")
            continue
        candidates.append(card)
    return candidates


def parse_document(text: str) -> StoredDocument:
    """Parse document text of any known layout into server settings and card candidates."""
    raw = json.loads(text, object_pairs_hook=_pairs_hook)
    if not isinstance(raw, Mapping):
        raise ValueError("configuration document is not a JSON object")
    migrations: list[str] = []
    server = _read_server(raw, migrations)
    cards = _read_cards(raw, migrations)
    return StoredDocument(server=server, cards=cards, migrations=migrations)


def _atomic_write(path: Path, text: str) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


class ConfigStore:
    """Single-writer owner of the configuration document.

    :attr:`document` is always the last document successfully written.
    After any access failure the store turns read-only and every
    :meth:`commit` raises :class:`BridgePersistenceError`.
    """

    def __init__(self, path: Path, *, app_version: str | None = None) -> None:
        self._path = path
        self._version = app_version if app_version is not None else _package_version()
        self._document: ConfigDocument | None = None
        self._access_error: BridgePersistenceError | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def accessible(self) -> bool:
        return self._access_error is None

    @property
    def access_error(self) -> BridgePersistenceError | None:
        return self._access_error

    @property
    def document(self) -> ConfigDocument | None:
        return self._document

    def _fail(self, message: str, exc: BaseException) -> BridgePersistenceError:
        error = BridgePersistenceError(f"{message}: {exc}", path=str(self._path))
        self._access_error = error
        _logger.error("Configuration storage inaccessible at %s: %s", self._path, exc)
        return error

    def read(self) -> StoredDocument:
        """Read and migrate the document; a missing file yields a fresh default."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            if not self._path.exists():
                _logger.info("Config file %s not found, generating default config", self._path)
                return StoredDocument(
                    server=ServerConfig(ident=generate_ident()),
                    cards=[],
                    created=True,
                )
            text = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise self._fail("Cannot access configuration document", exc) from exc

        try:
            stored = parse_document(text)
        except ValueError:
            backup = self._path.with_name(f"{self._path.name}.corrupt-{int(time.time())}")
            _logger.error("Config file %s is unreadable, moving it to %s", self._path, backup, exc_info=True)
            try:
                os.replace(self._path, backup)
            except OSError as exc:
                raise self._fail("Cannot move aside unreadable configuration document", exc) from exc
            return StoredDocument(server=ServerConfig(ident=generate_ident()), cards=[], created=True)

        for note in stored.migrations:
            _logger.info("Config migration: %s", note)
        return stored

    async def load(self) -> StoredDocument:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.read)

    def write(self, document: ConfigDocument) -> None:
        """Atomically replace the on-disk document."""
        if self._access_error is not None:
            raise self._access_error
        try:
            _atomic_write(self._path, document.to_json())
        except OSError as exc:
            raise self._fail("Cannot write configuration document", exc) from exc
        self._document = document
        _logger.debug("Configuration saved to %s (%d cards)", self._path, len(document.cards))

    async def commit(
        self,
        *,
        server: ServerConfig | None = None,
        cards: Mapping[str, SmartCard] | None = None,
    ) -> ConfigDocument:
        """Persist a new server config and/or card map, keeping the other part.

        Returns once the document is durable. Raises
        :class:`BridgePersistenceError` if it could not be written.
        """
        if self._access_error is not None:
            raise self._access_error
        current = self._document
        if current is None:
            if server is None or cards is None:
                raise BridgePersistenceError("No configuration loaded yet", path=str(self._path))
            current = ConfigDocument.build(server, cards, version=self._version)
        document = ConfigDocument.build(
            server if server is not None else current.server,
            cards if cards is not None else current.cards,
            version=self._version,
        )
        loop = asyncio.get_running_loop()
        await asyncio.shield(loop.run_in_executor(None, self.write, document))
        return document
