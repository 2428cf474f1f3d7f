from __future__ import annotations

import asyncio

import pytest

from tachobridge.dispatcher import EventDispatcher
from tachobridge.exceptions import BridgeValidationError
from tachobridge.models import CardsSync, ConfigSync, Notice, NoticeKind, ReaderStatus, RemoveCard, Theme


def _sync(status: ReaderStatus, identity: str | None = None) -> CardsSync:
    return CardsSync(reader_name="Slot1", identity=identity, status=status, online=True, authenticating=False)


@pytest.mark.asyncio
async def test_repeated_value_is_delivered_once() -> None:
    dispatcher = EventDispatcher()
    channel = dispatcher.subscribe()

    assert dispatcher.emit(_sync(ReaderStatus.NO_CARD)) is True
    assert dispatcher.emit(_sync(ReaderStatus.NO_CARD)) is False
    assert dispatcher.emit(_sync(ReaderStatus.NO_CARD), force=True) is True

    assert len(channel) == 1
    assert channel.get_nowait() == _sync(ReaderStatus.NO_CARD)
    with pytest.raises(asyncio.QueueEmpty):
        channel.get_nowait()


@pytest.mark.asyncio
async def test_unread_updates_coalesce_per_entity() -> None:
    dispatcher = EventDispatcher()
    channel = dispatcher.subscribe()

    dispatcher.emit(_sync(ReaderStatus.NO_CARD))
    dispatcher.emit(ConfigSync(host="", ident="TBA0000000000001", theme=Theme.AUTO))
    dispatcher.emit(_sync(ReaderStatus.CARD_PRESENT, "ID-1"))

    drained = channel.drain()
    assert [n.type for n in drained] == ["configSync", "cardsSync"]
    assert drained[1].status is ReaderStatus.CARD_PRESENT


@pytest.mark.asyncio
async def test_late_subscriber_gets_current_state() -> None:
    dispatcher = EventDispatcher()
    dispatcher.emit(Notice(kind=NoticeKind.ACCESS, message="read-only"))

    assert [n.entity_key for n in dispatcher.subscribe().drain()] == ["notice:access"]
    assert dispatcher.subscribe(replay=False).drain() == []


@pytest.mark.asyncio
async def test_channel_iteration_ends_on_close() -> None:
    dispatcher = EventDispatcher()
    channel = dispatcher.subscribe()
    received: list[str] = []

    async def _consume() -> None:
        async for notification in channel:
            received.append(notification.type)

    consumer = asyncio.create_task(_consume())
    dispatcher.emit(_sync(ReaderStatus.NO_CARD))
    await asyncio.sleep(0)
    dispatcher.close()
    await asyncio.wait_for(consumer, 1.0)

    assert received == ["cardsSync"]


@pytest.mark.asyncio
async def test_submit_waits_for_command_task() -> None:
    dispatcher = EventDispatcher()

    async def _service() -> None:
        pending = await dispatcher.next_command()
        assert isinstance(pending.command, RemoveCard)
        pending.resolve(True)
        dispatcher.command_done()

    service = asyncio.create_task(_service())
    result = await dispatcher.submit({"command": "removeCard", "cardNumber": "AAAA111122223333"})
    await service

    assert result is True


@pytest.mark.asyncio
async def test_submit_rejects_unknown_command() -> None:
    dispatcher = EventDispatcher()
    with pytest.raises(BridgeValidationError):
        await dispatcher.submit({"command": "cardRejected", "cardNumber": "AAAA111122223333"})
