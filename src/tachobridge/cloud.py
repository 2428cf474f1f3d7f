"""Cloud Bridge: the single broker session of this application instance.

State machine::

    DISCONNECTED -> CONNECTING -> CONNECTED -> RECONNECTING -> CONNECTING ...

An explicit :meth:`CloudBridge.reconnect` (or a server settings change) closes
a live session, reports ``DISCONNECTED`` and goes straight to ``CONNECTING``.
Failures go through ``RECONNECTING`` and wait a capped exponential backoff.

Outbound messages are keyed by topic. Only the latest message per key is
kept while offline and the whole latest set is sent again on every connect.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import ValidationError

from tachobridge._constants import STATUS_OFFLINE, STATUS_ONLINE, TOPIC_AUTH, TOPIC_COMMANDS
from tachobridge._mqtt import BrokerBootstrap, BrokerMessage, BrokerRuntime, build_bootstrap
from tachobridge._redact import redact_for_log
from tachobridge.config import BridgeConfig
from tachobridge.exceptions import BridgeConfigError, BridgeConnectivityError, BridgeProtocolError
from tachobridge.models._base import BridgeEnum
from tachobridge.models.commands import BROKER_COMMAND_ADAPTER, AuthRequest, BrokerCommand
from tachobridge.models.server import ServerConfig

_logger = logging.getLogger(__name__)


class SessionState(BridgeEnum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"


class Runtime(Protocol):
    def start(self, bootstrap: BrokerBootstrap) -> None: ...

    def publish(self, topic: str, payload: str | bytes, *, qos: int = 1, retain: bool = False) -> None: ...

    def stop(self, farewell: tuple[str, str] | None = None, *, timeout: float = 2.0) -> None: ...


RuntimeFactory = Callable[..., Runtime]


@dataclass(frozen=True)
class Outbound:
    """One queued message; ``key`` is the topic relative to ``tba/<ident>``."""

    key: str
    payload: str
    retain: bool = False


def encode_payload(body: Any) -> str:
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False)


class CloudBridge:
    """Owns the broker session, its reconnect policy and the outbound queue."""

    def __init__(
        self,
        config: BridgeConfig,
        *,
        on_command: Callable[[BrokerCommand], None],
        on_auth_request: Callable[[str, AuthRequest], None],
        on_state: Callable[[SessionState], None] | None = None,
        runtime_factory: RuntimeFactory = BrokerRuntime,
    ) -> None:
        self._config = config
        self._on_command = on_command
        self._on_auth_request = on_auth_request
        self._on_state = on_state
        self._runtime_factory = runtime_factory

        self._server: ServerConfig | None = None
        self._state = SessionState.DISCONNECTED
        self._last_error: str | None = None
        self._attempt = 0

        self._latest: dict[str, Outbound] = {}
        self._pending: dict[str, Outbound] = {}

        self._runtime: Runtime | None = None
        self._bootstrap: BrokerBootstrap | None = None
        self._session_id = 0
        self._handshake: asyncio.Future[None] | None = None
        self._drop_reason: str | None = None
        self._reconnect_requested = False
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == SessionState.CONNECTED

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def server(self) -> ServerConfig | None:
        return self._server

    @property
    def latest(self) -> dict[str, Outbound]:
        return dict(self._latest)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, server: ServerConfig) -> None:
        self._server = server
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="cloud-bridge")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._set_state(SessionState.DISCONNECTED)

    def configure(self, server: ServerConfig) -> None:
        """Adopt new server settings and reconnect."""
        self._server = server
        self.reconnect()

    def reconnect(self) -> None:
        """Close the live session (if any) and connect again without backoff."""
        _logger.info("Broker reconnect requested")
        self._reconnect_requested = True
        self._wake.set()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def publish(self, key: str, body: Any, *, retain: bool = False) -> None:
        """Queue the latest state for *key*; sent now if connected, else on the next connect."""
        message = Outbound(key=key, payload=body if isinstance(body, str) else encode_payload(body), retain=retain)
        self._latest[key] = message
        self._pending.pop(key, None)
        self._pending[key] = message
        self._wake.set()

    def forget(self, key: str) -> None:
        """Stop resending *key* on future connects.

        A message for *key* still waiting on the live session is sent.
        """
        self._latest.pop(key, None)

    def send(self, key: str, body: Any) -> bool:
        """Send a one-off message now; dropped when not connected."""
        runtime = self._runtime
        if runtime is None or not self.connected or self._bootstrap is None:
            _logger.debug("Broker offline, dropping one-off message %s", key)
            return False
        payload = body if isinstance(body, str) else encode_payload(body)
        try:
            runtime.publish(f"{self._bootstrap.topic_prefix}/{key}", payload)
        except BridgeConnectivityError as exc:
            _logger.warning("One-off publish to %s failed: %s", key, exc)
            self._drop(str(exc))
            return False
        return True

    # ------------------------------------------------------------------
    # Runtime callbacks (run on the event loop)
    # ------------------------------------------------------------------

    def _handle_connect(self, session_id: int, ok: bool, reason: str) -> None:
        if session_id != self._session_id:
            return
        handshake = self._handshake
        if handshake is not None and not handshake.done():
            if ok:
                handshake.set_result(None)
            else:
                handshake.set_exception(BridgeConnectivityError(f"Broker refused connection: {reason}"))

    def _handle_disconnect(self, session_id: int, reason: str) -> None:
        if session_id != self._session_id:
            return
        handshake = self._handshake
        if handshake is not None and not handshake.done():
            handshake.set_exception(BridgeConnectivityError(f"Disconnected during handshake: {reason}"))
        self._drop(reason)

    def _handle_message(self, session_id: int, message: BrokerMessage) -> None:
        if session_id != self._session_id:
            return
        try:
            self._dispatch_message(message)
        except BridgeProtocolError as exc:
            _logger.warning("Dropping malformed broker message on %s: %s", exc.topic, exc)

    def _drop(self, reason: str) -> None:
        if self._drop_reason is None:
            self._drop_reason = reason
        self._wake.set()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _dispatch_message(self, message: BrokerMessage) -> None:
        bootstrap = self._bootstrap
        if bootstrap is None:
            return
        relative = message.topic.removeprefix(f"{bootstrap.topic_prefix}/")
        try:
            body = json.loads(message.payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise BridgeProtocolError(f"Payload is not JSON: {exc}", topic=message.topic) from exc
        _logger.debug("Broker message %s %s", relative, redact_for_log(body))

        if relative == TOPIC_COMMANDS:
            try:
                command = BROKER_COMMAND_ADAPTER.validate_python(body)
            except ValidationError as exc:
                raise BridgeProtocolError(f"Invalid command: {exc}", topic=message.topic) from exc
            self._on_command(command)
            return

        parts = relative.split("/")
        if len(parts) == 3 and parts[0] == TOPIC_AUTH and parts[2] == "request" and parts[1]:
            try:
                request = AuthRequest.model_validate(body)
            except ValidationError as exc:
                raise BridgeProtocolError(f"Invalid auth request: {exc}", topic=message.topic) from exc
            self._on_auth_request(parts[1], request)
            return

        raise BridgeProtocolError("Unexpected topic", topic=message.topic)

    # ------------------------------------------------------------------
    # Session loop
    # ------------------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        _logger.info("Broker session %s -> %s", self._state, state)
        self._state = state
        if self._on_state is not None:
            try:
                self._on_state(state)
            except Exception:
                _logger.exception("Session state listener failed")

    async def _wait_for_reconnect(self, timeout: float | None) -> bool:
        """Wait for an explicit reconnect; returns whether one was requested."""
        deadline = None if timeout is None else asyncio.get_running_loop().time() + timeout
        while not self._reconnect_requested:
            self._wake.clear()
            if deadline is None:
                await self._wake.wait()
                continue
            remaining = deadline - asyncio.get_running_loop().time()
            if remaining <= 0:
                return False
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wake.wait(), remaining)
        return True

    async def _run(self) -> None:
        while True:
            server = self._server
            if server is None or not server.has_broker:
                self._set_state(SessionState.DISCONNECTED)
                _logger.info("No broker host configured, staying disconnected")
                await self._wait_for_reconnect(None)

            self._reconnect_requested = False
            server = self._server
            if server is None or not server.has_broker:
                continue

            self._set_state(SessionState.CONNECTING)
            try:
                await self._session(server)
                continue
            except (BridgeConnectivityError, BridgeConfigError) as exc:
                self._last_error = str(exc)
                _logger.warning("Broker session failed: %s", exc)
            except Exception as exc:
                self._last_error = str(exc)
                _logger.exception("Unexpected broker session failure")

            self._set_state(SessionState.RECONNECTING)
            delay = self._config.backoff_delay(self._attempt)
            self._attempt += 1
            _logger.debug("Reconnecting in %.1fs (attempt %d)", delay, self._attempt)
            if await self._wait_for_reconnect(delay):
                self._attempt = 0

    async def _session(self, server: ServerConfig) -> None:
        """Run one broker session.

        Returns after an explicit reconnect request; raises on any failure.
        """
        loop = asyncio.get_running_loop()
        bootstrap = build_bootstrap(server, self._config)

        self._session_id += 1
        session_id = self._session_id
        self._handshake = loop.create_future()
        self._drop_reason = None
        self._bootstrap = bootstrap
        runtime = self._runtime_factory(
            loop=loop,
            on_connect=functools.partial(self._handle_connect, session_id),
            on_disconnect=functools.partial(self._handle_disconnect, session_id),
            on_message=functools.partial(self._handle_message, session_id),
        )

        farewell: tuple[str, str] | None = None
        try:
            await loop.run_in_executor(None, runtime.start, bootstrap)
            try:
                await asyncio.wait_for(self._handshake, self._config.connect_timeout)
            except TimeoutError as exc:
                raise BridgeConnectivityError("Broker handshake timed out", endpoint=bootstrap.endpoint) from exc

            self._runtime = runtime
            self._attempt = 0
            self._last_error = None
            self._set_state(SessionState.CONNECTED)
            runtime.publish(bootstrap.status_topic, STATUS_ONLINE, retain=True)
            self._pending = dict(self._latest)

            while True:
                # Nothing queued after a reconnect request goes out on this session.
                if self._reconnect_requested:
                    farewell = (bootstrap.status_topic, STATUS_OFFLINE)
                    return
                self._raise_if_dropped(bootstrap)
                self._flush(runtime, bootstrap)
                self._raise_if_dropped(bootstrap)
                self._wake.clear()
                if self._pending or self._drop_reason is not None or self._reconnect_requested:
                    continue
                await self._wake.wait()
        except asyncio.CancelledError:
            farewell = (bootstrap.status_topic, STATUS_OFFLINE)
            raise
        finally:
            self._runtime = None
            self._session_id += 1
            stop = functools.partial(runtime.stop, farewell)
            try:
                await asyncio.shield(loop.run_in_executor(None, stop))
            except Exception:
                _logger.debug("Broker runtime stop failed", exc_info=True)
            if farewell is not None:
                self._set_state(SessionState.DISCONNECTED)

    def _raise_if_dropped(self, bootstrap: BrokerBootstrap) -> None:
        if self._drop_reason is not None:
            raise BridgeConnectivityError(f"Connection lost: {self._drop_reason}", endpoint=bootstrap.endpoint)

    def _flush(self, runtime: Runtime, bootstrap: BrokerBootstrap) -> None:
        while self._pending and self._drop_reason is None:
            key = next(iter(self._pending))
            message = self._pending[key]
            try:
                runtime.publish(f"{bootstrap.topic_prefix}/{key}", message.payload, retain=message.retain)
            except BridgeConnectivityError as exc:
                self._drop(str(exc))
                return
            del self._pending[key]
