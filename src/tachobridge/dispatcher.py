"""Event dispatcher: the single boundary towards the presentation layer.

Commands enter through :meth:`EventDispatcher.submit` and are serviced one at
a time by the coordinator's command task. Notifications leave through
:class:`NotificationChannel` objects returned by
:meth:`EventDispatcher.subscribe`.

Delivery rules:

- a notification equal to the last one delivered for the same entity is
  dropped, so each committed change produces exactly one notification;
- a channel holds at most one unread notification per entity; a newer one
  replaces it (last writer wins).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import TypeAdapter, ValidationError

from tachobridge.exceptions import BridgeValidationError
from tachobridge.models.commands import BrokerCommand, Command
from tachobridge.models.notifications import Notification

_logger = logging.getLogger(__name__)

_COMMAND_ADAPTER: TypeAdapter[Command] = TypeAdapter(Command)

CommandOrigin = Literal["local", "broker"]


class ChannelClosedError(Exception):
    """Raised by :meth:`NotificationChannel.get` once the channel is closed and empty."""


@dataclass(slots=True)
class PendingCommand:
    """A command waiting for the command task, with the future its caller awaits."""

    command: BrokerCommand
    future: asyncio.Future[Any]
    origin: CommandOrigin = "local"

    def resolve(self, result: Any) -> None:
        if not self.future.done():
            self.future.set_result(result)

    def fail(self, exc: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(exc)
        if self.origin == "broker":
            # Nobody awaits broker futures; mark the exception as retrieved.
            self.future.exception()


class NotificationChannel:
    """Per-subscriber notification queue that coalesces by entity."""

    def __init__(self) -> None:
        self._pending: dict[str, Notification] = {}
        self._ready = asyncio.Event()
        self._closed = False

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, notification: Notification) -> None:
        if self._closed:
            return
        key = notification.entity_key
        self._pending.pop(key, None)
        self._pending[key] = notification
        self._ready.set()

    def get_nowait(self) -> Notification:
        if not self._pending:
            raise asyncio.QueueEmpty
        key = next(iter(self._pending))
        notification = self._pending.pop(key)
        if not self._pending:
            self._ready.clear()
        return notification

    async def get(self) -> Notification:
        while not self._pending:
            if self._closed:
                raise ChannelClosedError("notification channel closed")
            self._ready.clear()
            await self._ready.wait()
        return self.get_nowait()

    def drain(self) -> list[Notification]:
        """All unread notifications, oldest entity first."""
        items = list(self._pending.values())
        self._pending.clear()
        self._ready.clear()
        return items

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    def __aiter__(self) -> NotificationChannel:
        return self

    async def __anext__(self) -> Notification:
        try:
            return await self.get()
        except ChannelClosedError:
            raise StopAsyncIteration from None


class EventDispatcher:
    """Typed command intake and notification fan-out."""

    def __init__(self) -> None:
        self._commands: asyncio.Queue[PendingCommand] = asyncio.Queue()
        self._channels: list[NotificationChannel] = []
        self._delivered: dict[str, Notification] = {}

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _enqueue(self, command: BrokerCommand, origin: CommandOrigin) -> asyncio.Future[Any]:
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._commands.put_nowait(PendingCommand(command=command, future=future, origin=origin))
        _logger.debug("Command queued origin=%s command=%s", origin, command.command)
        return future

    async def submit(self, command: Command | Mapping[str, Any]) -> Any:
        """Queue a local command and wait for its outcome.

        Raises the command's synchronous error (validation, duplicate or
        persistence); a mapping is validated into a command first.
        """
        parsed: BrokerCommand
        if isinstance(command, Mapping):
            try:
                parsed = _COMMAND_ADAPTER.validate_python(command)
            except ValidationError as exc:
                raise BridgeValidationError(f"Invalid command: {exc}", field="command") from exc
        else:
            parsed = command
        return await self._enqueue(parsed, "local")

    def submit_nowait(self, command: BrokerCommand, *, origin: CommandOrigin = "broker") -> asyncio.Future[Any]:
        """Queue a command without waiting (used for broker commands)."""
        return self._enqueue(command, origin)

    async def next_command(self) -> PendingCommand:
        return await self._commands.get()

    def command_done(self) -> None:
        self._commands.task_done()

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def subscribe(self, *, replay: bool = True) -> NotificationChannel:
        """New notification channel.

        With ``replay`` the channel starts with the last value delivered for
        every entity, so a late subscriber sees the current state.
        """
        channel = NotificationChannel()
        if replay:
            for notification in self._delivered.values():
                channel.put(notification)
        self._channels.append(channel)
        return channel

    def unsubscribe(self, channel: NotificationChannel) -> None:
        channel.close()
        self._channels = [c for c in self._channels if c is not channel]

    def last(self, entity_key: str) -> Notification | None:
        return self._delivered.get(entity_key)

    def forget(self, entity_key: str) -> None:
        self._delivered.pop(entity_key, None)

    def emit(self, notification: Notification, *, force: bool = False) -> bool:
        """Deliver *notification* unless it repeats the last one for its entity.

        ``force`` re-delivers an unchanged value (explicit resync requests).
        Returns whether the notification was delivered.
        """
        key = notification.entity_key
        if not force and self._delivered.get(key) == notification:
            return False
        self._delivered[key] = notification
        for channel in self._channels:
            channel.put(notification)
        _logger.debug("Notification %s %s", notification.type, key)
        return True

    def close(self) -> None:
        for channel in self._channels:
            channel.close()
        self._channels.clear()
        while not self._commands.empty():
            pending = self._commands.get_nowait()
            pending.future.cancel()
