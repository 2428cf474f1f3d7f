"""Card registry: the in-memory source of truth for company cards.

Every mutation runs validate -> persist -> broadcast while holding the writer
lock, so concurrent readers only ever see fully committed states and a local
and a remote command touching the same card number are applied one after the
other (the later commit wins).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import Any

from tachobridge.exceptions import BridgeDuplicateError, BridgeValidationError
from tachobridge.models.card import SmartCard, normalize_identity, validate_card_number
from tachobridge.models.server import ServerConfig
from tachobridge.storage import ConfigStore, StoredDocument

_logger = logging.getLogger(__name__)

CommitListener = Callable[[str, SmartCard | None], None]


def _newer(candidate: SmartCard, incumbent: SmartCard) -> bool:
    # Ties go to the candidate: it was read later.
    return candidate.updated_at >= incumbent.updated_at


def deduplicate_cards(candidates: Iterable[SmartCard]) -> tuple[dict[str, SmartCard], list[str]]:
    """Collapse duplicate card numbers and shared identities, newest record wins.

    This is the one-time migration pass run when the registry is loaded.
    Returns the clean card map and a description of every collapse.
    """
    collapsed: list[str] = []

    by_number: dict[str, SmartCard] = {}
    for card in candidates:
        incumbent = by_number.get(card.card_number)
        if incumbent is None:
            by_number[card.card_number] = card
            continue
        keep, drop = (card, incumbent) if _newer(card, incumbent) else (incumbent, card)
        by_number[card.card_number] = keep
        note = f"card number {keep.card_number}: kept identity {keep.identity!r}, dropped {drop.identity!r}"
        collapsed.append(note)
        _logger.warning("Collapsed duplicate %s", note)

    by_identity: dict[str, SmartCard] = {}
    for card in list(by_number.values()):
        if not card.identity:
            continue
        incumbent = by_identity.get(card.identity)
        if incumbent is None:
            by_identity[card.identity] = card
            continue
        keep, drop = (card, incumbent) if _newer(card, incumbent) else (incumbent, card)
        by_identity[card.identity] = keep
        del by_number[drop.card_number]
        note = f"identity {keep.identity}: kept card number {keep.card_number}, dropped {drop.card_number}"
        collapsed.append(note)
        _logger.warning("Collapsed duplicate %s", note)

    return by_number, collapsed


class CardRegistry:
    """Validated, deduplicated mapping of card numbers to :class:`SmartCard` records."""

    def __init__(self, store: ConfigStore, *, lock: asyncio.Lock | None = None) -> None:
        self._store = store
        self._lock = lock or asyncio.Lock()
        self._cards: dict[str, SmartCard] = {}
        self._listeners: list[CommitListener] = []

    @property
    def lock(self) -> asyncio.Lock:
        """Writer lock shared with server-config updates."""
        return self._lock

    @property
    def cards(self) -> dict[str, SmartCard]:
        return dict(self._cards)

    def __len__(self) -> int:
        return len(self._cards)

    def __contains__(self, card_number: object) -> bool:
        return card_number in self._cards

    def add_listener(self, listener: CommitListener) -> None:
        """Call *listener(card_number, record_or_None)* after every commit."""
        self._listeners.append(listener)

    def get(self, card_number: str) -> SmartCard | None:
        return self._cards.get(card_number)

    def resolve_by_identity(self, identity: str | None) -> SmartCard | None:
        """The card bound to *identity*, if any."""
        key = normalize_identity(identity)
        if not key:
            return None
        for card in self._cards.values():
            if card.identity == key:
                return card
        return None

    def snapshot(self) -> dict[str, Any]:
        """Wire form of the whole registry (card number -> record)."""
        return {number: card.to_record() for number, card in sorted(self._cards.items())}

    async def load(self, stored: StoredDocument, server: ServerConfig) -> list[str]:
        """Adopt the cards read from storage and write back the clean document.

        The in-memory registry is populated even if the write-back fails, in
        which case :class:`BridgePersistenceError` propagates and the store is
        left read-only.
        """
        cards, collapsed = deduplicate_cards(stored.cards)
        async with self._lock:
            self._cards = cards
            _logger.info("Card registry loaded: %d cards (%d collapsed)", len(cards), len(collapsed))
            await self._store.commit(server=server, cards=cards)
        return collapsed

    def _ensure_writable(self) -> None:
        error = self._store.access_error
        if error is not None:
            raise error

    async def upsert(
        self,
        card_number: str,
        identity: str | None,
        name: str | None = None,
        *,
        expire: int | None = None,
    ) -> SmartCard:
        """Create or update the record for *card_number*.

        A record that is not yet bound to a physical card is completed in
        place. If *identity* is currently registered under another card
        number, that record is renumbered.

        Raises
        ------
        BridgeValidationError
            *card_number* is not 16 uppercase letters/digits.
        BridgeDuplicateError
            *card_number* already belongs to a card with another identity.
        BridgePersistenceError
            The document could not be written; nothing changed.
        """
        check = validate_card_number(card_number)
        if not check.valid:
            raise BridgeValidationError(check.reason, field="card_number", value=check.value)
        identity_key = normalize_identity(identity)

        async with self._lock:
            self._ensure_writable()
            existing = self._cards.get(card_number)
            if existing is not None and existing.identity and existing.identity != identity_key:
                raise BridgeDuplicateError(
                    f"Card number {card_number} is already assigned to another card",
                    card_number=card_number,
                    identity=existing.identity,
                )

            cards = dict(self._cards)
            renumbered: SmartCard | None = None
            if identity_key:
                previous = self.resolve_by_identity(identity_key)
                if previous is not None and previous.card_number != card_number:
                    renumbered = cards.pop(previous.card_number)

            base = existing or renumbered
            card = SmartCard(
                card_number=card_number,
                identity=identity_key,
                name=name if name is not None else (base.name if base else ""),
                expire=expire if expire is not None else (base.expire if base else None),
            )
            cards[card_number] = card

            await self._store.commit(cards=cards)
            self._cards = cards

            if renumbered is not None:
                _logger.info("Card %s renumbered to %s", renumbered.card_number, card_number)
                self._notify(renumbered.card_number, None)
            _logger.info("Card %s saved (identity=%s)", card_number, identity_key or "<unbound>")
            self._notify(card_number, card)
            return card

    async def remove(self, card_number: str) -> bool:
        """Remove *card_number*. Removing an absent card is a no-op returning ``False``."""
        async with self._lock:
            self._ensure_writable()
            if card_number not in self._cards:
                _logger.debug("Card %s not in registry, nothing to remove", card_number)
                return False
            cards = dict(self._cards)
            del cards[card_number]
            await self._store.commit(cards=cards)
            self._cards = cards
            _logger.info("Card %s removed", card_number)
            self._notify(card_number, None)
            return True

    def _notify(self, card_number: str, card: SmartCard | None) -> None:
        for listener in self._listeners:
            try:
                listener(card_number, card)
            except Exception:
                _logger.exception("Registry listener failed for card %s", card_number)
