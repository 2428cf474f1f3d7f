"""Coordinator: owns the application state and wires the components together.

``BridgeApp`` is the only writer of the reader states and the server
settings. Reader observations and commands are each serviced by a single
task, so the state never sees two writers at once.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from typing import Any

from tachobridge._constants import TOPIC_AUTH, TOPIC_CARDS, TOPIC_READERS
from tachobridge.cloud import CloudBridge, RuntimeFactory, SessionState
from tachobridge.config import BridgeConfig
from tachobridge.dispatcher import EventDispatcher, NotificationChannel, PendingCommand
from tachobridge.exceptions import BridgeDeviceError, BridgeError, BridgePersistenceError
from tachobridge.models.card import SmartCard
from tachobridge.models.commands import (
    AuthRequest,
    AuthResponse,
    BrokerCommand,
    CardRejected,
    Command,
    ManualSyncCards,
    Reconnect,
    RemoveCard,
    UpdateCard,
    UpdateServer,
    VersionNotice,
)
from tachobridge.models.notifications import CardConfigUpdated, CardsSync, ConfigSync, Notice, NoticeKind
from tachobridge.models.reader import ReaderObservation, ReaderState, ReaderStatus
from tachobridge.models.server import ServerConfig, check_server_settings
from tachobridge.reader.backend import ReaderBackend
from tachobridge.reader.monitor import ReaderMonitor
from tachobridge.registry import CardRegistry
from tachobridge.storage import ConfigStore

_logger = logging.getLogger(__name__)


def _topic_segment(name: str) -> str:
    return "".join("_" if ch in "/+#" else ch for ch in name)


def _default_backend(config: BridgeConfig) -> ReaderBackend:
    from tachobridge.reader.pcsc import PcscBackend

    return PcscBackend(poll_interval=config.poll_interval)


class BridgeApp:
    """Tacho bridge application.

    Usage::

        async with BridgeApp(BridgeConfig.from_env()) as app:
            channel = app.subscribe()
            await app.submit(UpdateCard(identity="...", card_number="..."))
    """

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        backend: ReaderBackend | None = None,
        runtime_factory: RuntimeFactory | None = None,
        store: ConfigStore | None = None,
    ) -> None:
        self._config = config or BridgeConfig.from_env()
        self._store = store or ConfigStore(self._config.resolved_config_path)
        self._backend = backend
        self._dispatcher = EventDispatcher()
        self._registry = CardRegistry(self._store)
        self._registry.add_listener(self._on_card_committed)
        bridge_kwargs: dict[str, Any] = {}
        if runtime_factory is not None:
            bridge_kwargs["runtime_factory"] = runtime_factory
        self._bridge = CloudBridge(
            self._config,
            on_command=self._on_broker_command,
            on_auth_request=self._on_auth_request,
            on_state=self._on_session_state,
            **bridge_kwargs,
        )
        self._monitor: ReaderMonitor | None = None

        self._server = ServerConfig()
        self._readers: dict[str, ReaderState] = {}
        self._observations: asyncio.Queue[ReaderObservation] = asyncio.Queue()
        self._auth_locks: dict[str, asyncio.Lock] = {}
        self._auth_tasks: set[asyncio.Task[None]] = set()
        self._tasks: list[asyncio.Task[None]] = []
        self._current: PendingCommand | None = None
        self._started = False

    async def __aenter__(self) -> BridgeApp:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def config(self) -> BridgeConfig:
        return self._config

    @property
    def dispatcher(self) -> EventDispatcher:
        return self._dispatcher

    @property
    def registry(self) -> CardRegistry:
        return self._registry

    @property
    def store(self) -> ConfigStore:
        return self._store

    @property
    def bridge(self) -> CloudBridge:
        return self._bridge

    @property
    def monitor(self) -> ReaderMonitor | None:
        return self._monitor

    @property
    def server(self) -> ServerConfig:
        return self._server

    @property
    def readers(self) -> dict[str, ReaderState]:
        return dict(self._readers)

    @property
    def read_only(self) -> bool:
        return not self._store.accessible

    def subscribe(self, *, replay: bool = True) -> NotificationChannel:
        return self._dispatcher.subscribe(replay=replay)

    async def submit(self, command: Command | Mapping[str, Any]) -> Any:
        return await self._dispatcher.submit(command)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self._started = True

        try:
            stored = await self._store.load()
        except BridgePersistenceError as exc:
            self._report_access(exc)
            stored = None

        if stored is not None:
            self._server = stored.server
            try:
                await self._registry.load(stored, stored.server)
            except BridgePersistenceError as exc:
                self._report_access(exc)

        for card_number, card in sorted(self._registry.cards.items()):
            self._dispatcher.emit(CardConfigUpdated(card_number=card_number, record=card))
        self._emit_config()

        self._tasks.append(asyncio.create_task(self._command_loop(), name="bridge-commands"))
        self._tasks.append(asyncio.create_task(self._observation_loop(), name="bridge-observations"))

        backend = self._backend or _default_backend(self._config)
        self._monitor = ReaderMonitor(backend, self._config, self._observations.put_nowait)
        await self._monitor.start()

        if self._store.accessible:
            self._bridge.publish(TOPIC_CARDS, self._registry.snapshot(), retain=True)
            self._bridge.start(self._server)
        else:
            _logger.warning("Configuration storage is read-only, broker bridge not started")
        _logger.info("Bridge started (ident=%s, %d cards)", self._server.ident, len(self._registry))

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        current = self._current
        if current is not None:
            # Let the command in flight finish persisting before tearing down.
            await asyncio.wait([current.future])
        await self._bridge.stop()
        if self._monitor is not None:
            await self._monitor.stop()
        tasks = [*self._tasks, *self._auth_tasks]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._dispatcher.close()
        _logger.info("Bridge stopped")

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _report_access(self, error: BridgePersistenceError) -> None:
        # The store keeps the first access error, so repeats dedupe.
        sticky = self._store.access_error or error
        self._dispatcher.emit(Notice(kind=NoticeKind.ACCESS, message=str(sticky)))

    def _emit_config(self, *, force: bool = False) -> None:
        server = self._server
        self._dispatcher.emit(ConfigSync(host=server.host, ident=server.ident, theme=server.theme), force=force)

    def _cards_sync(self, state: ReaderState) -> CardsSync:
        card = self._registry.resolve_by_identity(state.identity) if state.has_card else None
        return CardsSync(
            reader_name=state.name,
            identity=state.identity,
            status=state.status,
            card_number=card.card_number if card is not None else "",
            online=state.online,
            authenticating=state.authenticating,
        )

    def _emit_reader(self, state: ReaderState, *, force: bool = False) -> None:
        sync = self._cards_sync(state)
        if not self._dispatcher.emit(sync, force=force):
            return
        self._bridge.publish(f"{TOPIC_READERS}/{_topic_segment(state.name)}", sync.to_wire(exclude={"type"}))

    def _set_reader(self, state: ReaderState, *, force: bool = False) -> None:
        self._readers[state.name] = state
        self._emit_reader(state, force=force)

    # ------------------------------------------------------------------
    # Reader observations
    # ------------------------------------------------------------------

    async def _observation_loop(self) -> None:
        while True:
            observation = await self._observations.get()
            try:
                self._apply_observation(observation)
            except Exception:
                _logger.exception("Failed to apply observation for %s", observation.reader_name)

    def _apply_observation(self, observation: ReaderObservation) -> None:
        name = observation.reader_name
        current = self._readers.get(name) or ReaderState(name=name, online=self._bridge.connected)
        state = current.apply(observation)
        if observation.status == ReaderStatus.UNKNOWN:
            # Reader gone: announce once, then forget it.
            self._emit_reader(state)
            self._bridge.forget(f"{TOPIC_READERS}/{_topic_segment(name)}")
            self._readers.pop(name, None)
            self._auth_locks.pop(name, None)
            self._dispatcher.forget(f"reader:{name}")
            return
        self._set_reader(state)

    # ------------------------------------------------------------------
    # Registry and session listeners
    # ------------------------------------------------------------------

    def _on_card_committed(self, card_number: str, record: SmartCard | None) -> None:
        self._dispatcher.emit(CardConfigUpdated(card_number=card_number, record=record))
        self._bridge.publish(TOPIC_CARDS, self._registry.snapshot(), retain=True)
        for state in list(self._readers.values()):
            self._emit_reader(state)

    def _on_session_state(self, session: SessionState) -> None:
        online = session == SessionState.CONNECTED
        for state in list(self._readers.values()):
            if state.online != online:
                self._set_reader(state.model_copy(update={"online": online}))

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _on_broker_command(self, command: BrokerCommand) -> None:
        _logger.debug("Broker command %s", command.command)
        self._dispatcher.submit_nowait(command, origin="broker")

    async def _command_loop(self) -> None:
        while True:
            pending = await self._dispatcher.next_command()
            self._current = pending
            try:
                result = await self._handle_command(pending.command)
            except asyncio.CancelledError:
                pending.future.cancel()
                raise
            except BridgeError as exc:
                if isinstance(exc, BridgePersistenceError):
                    self._report_access(exc)
                _logger.warning("Command %s (%s) failed: %s", pending.command.command, pending.origin, exc)
                pending.fail(exc)
            except Exception as exc:
                _logger.exception("Command %s (%s) crashed", pending.command.command, pending.origin)
                pending.fail(exc)
            else:
                pending.resolve(result)
            finally:
                self._current = None
                self._dispatcher.command_done()

    async def _handle_command(self, command: BrokerCommand) -> Any:
        if isinstance(command, UpdateCard):
            return await self._registry.upsert(
                command.card_number,
                command.identity,
                command.name or None,
                expire=command.expire,
            )
        if isinstance(command, RemoveCard):
            return await self._registry.remove(command.card_number)
        if isinstance(command, UpdateServer):
            return await self._update_server(command)
        if isinstance(command, ManualSyncCards):
            return self._manual_sync(command)
        if isinstance(command, Reconnect):
            if self._store.accessible:
                self._bridge.reconnect()
            return None
        if isinstance(command, CardRejected):
            message = command.message or f"Card number {command.card_number} is already registered"
            self._dispatcher.emit(Notice(kind=NoticeKind.DUPLICATE, message=message), force=True)
            return None
        if isinstance(command, VersionNotice):
            message = command.message or f"Version {command.version} is available"
            self._dispatcher.emit(Notice(kind=NoticeKind.VERSION, message=message))
            return None
        raise TypeError(f"Unhandled command {command!r}")

    async def _update_server(self, command: UpdateServer) -> ServerConfig:
        check_server_settings(command.host, command.ident)
        server = ServerConfig(host=command.host, ident=command.ident, theme=command.theme)
        async with self._registry.lock:
            error = self._store.access_error
            if error is not None:
                raise error
            await self._store.commit(server=server)
            self._server = server
        _logger.info("Server settings saved (host=%s ident=%s)", server.host, server.ident)
        self._emit_config()
        self._bridge.publish(TOPIC_CARDS, self._registry.snapshot(), retain=True)
        self._bridge.configure(server)
        return server

    def _manual_sync(self, command: ManualSyncCards) -> list[str]:
        names = [command.reader_name] if command.reader_name else sorted(self._readers)
        synced: list[str] = []
        for name in names:
            state = self._readers.get(name)
            if state is None:
                continue
            self._emit_reader(state, force=True)
            synced.append(name)
        self._emit_config(force=True)
        if command.restart:
            if self._monitor is not None:
                self._monitor.restart(command.reader_name)
            if self._store.accessible:
                self._bridge.reconnect()
        return synced

    # ------------------------------------------------------------------
    # APDU relay
    # ------------------------------------------------------------------

    def _on_auth_request(self, card_number: str, request: AuthRequest) -> None:
        task = asyncio.create_task(self._relay(card_number, request), name=f"auth-relay:{card_number}")
        self._auth_tasks.add(task)
        task.add_done_callback(self._auth_tasks.discard)

    def _reader_for_card(self, card_number: str) -> ReaderState | None:
        card = self._registry.get(card_number)
        if card is None or not card.identity:
            return None
        for state in self._readers.values():
            if state.has_card and state.identity == card.identity:
                return state
        return None

    def _set_authenticating(self, name: str, value: bool) -> None:
        state = self._readers.get(name)
        if state is not None and state.authenticating != value:
            self._set_reader(state.model_copy(update={"authenticating": value}))

    async def _relay(self, card_number: str, request: AuthRequest) -> None:
        response = AuthResponse()
        state = self._reader_for_card(card_number)
        monitor = self._monitor
        if state is None or monitor is None:
            _logger.warning("Auth request for card %s but no reader holds it", card_number)
        else:
            lock = self._auth_locks.setdefault(state.name, asyncio.Lock())
            async with lock:
                response = await self._relay_on_reader(monitor, state, request)
        self._bridge.send(f"{TOPIC_AUTH}/{card_number}/response", response.to_wire())

    async def _relay_on_reader(
        self,
        monitor: ReaderMonitor,
        state: ReaderState,
        request: AuthRequest,
    ) -> AuthResponse:
        name = state.name
        try:
            if request.finish:
                await monitor.reset_card(name)
                self._set_authenticating(name, False)
                return AuthResponse()
            if not request.payload:
                current = self._readers.get(name, state)
                if current.authenticating:
                    await monitor.reset_card(name)
                # An ATR request alone does not start an authentication.
                self._set_authenticating(name, False)
                return AuthResponse(payload=current.atr or "")
            try:
                apdu = bytes.fromhex(request.payload)
            except ValueError:
                _logger.warning("Auth request for %s carries a non-hex payload", name)
                return AuthResponse()
            reply = await monitor.transmit(name, apdu)
            self._set_authenticating(name, True)
            return AuthResponse(payload=reply.hex().upper())
        except BridgeDeviceError as exc:
            _logger.warning("APDU relay on %s failed: %s", name, exc)
            self._set_authenticating(name, False)
            return AuthResponse()
