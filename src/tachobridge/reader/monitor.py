"""Reader discovery and per-reader change watchers.

Every reader gets its own :class:`ReaderWatcher` task and its own
:class:`~tachobridge.reader.backend.ChangeSource`, so a failing reader only
ever degrades itself. Blocking backend calls run in the default executor.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable

from tachobridge.config import BridgeConfig
from tachobridge.exceptions import BridgeDeviceError
from tachobridge.models.reader import ReaderObservation, ReaderStatus
from tachobridge.reader.backend import ChangeSet, ChangeSource, ReaderBackend

_logger = logging.getLogger(__name__)

ObservationCallback = Callable[[ReaderObservation], None]


class ReaderWatcher:
    """Long-running watcher for one reader slot."""

    def __init__(
        self,
        name: str,
        *,
        backend: ReaderBackend,
        config: BridgeConfig,
        on_observation: ObservationCallback,
    ) -> None:
        self.name = name
        self._backend = backend
        self._config = config
        self._on_observation = on_observation
        self._source: ChangeSource | None = None
        self._last: ReaderObservation | None = None
        self._failures = 0
        self._restart = asyncio.Event()
        self._io_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    @property
    def failures(self) -> int:
        """Consecutive I/O failures since the last good read."""
        return self._failures

    @property
    def last_observation(self) -> ReaderObservation | None:
        return self._last

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name=f"reader-watcher:{self.name}")
        return self._task

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._close_source()

    def restart(self) -> None:
        """Reopen the reader connection and report its state afresh."""
        _logger.debug("Restart requested for reader %s", self.name)
        self._restart.set()

    async def transmit(self, apdu: bytes) -> bytes:
        async with self._io_lock:
            source = self._require_source()
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, source.transmit, apdu)

    async def reset_card(self) -> None:
        async with self._io_lock:
            source = self._require_source()
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, source.reset)

    def _require_source(self) -> ChangeSource:
        if self._source is None:
            raise BridgeDeviceError("Reader is not open", reader=self.name)
        return self._source

    def _close_source(self) -> None:
        source = self._source
        self._source = None
        if source is None:
            return
        try:
            source.close()
        except Exception:
            _logger.debug("Closing reader %s failed", self.name, exc_info=True)

    def _publish(self, observation: ReaderObservation) -> None:
        if observation.same_state(self._last):
            return
        self._last = observation
        _logger.debug(
            "Reader %s -> %s identity=%s",
            observation.reader_name,
            observation.status,
            observation.identity,
        )
        self._on_observation(observation)

    async def _observe(self, source: ChangeSource, change: ChangeSet) -> ReaderObservation:
        if change.unavailable:
            raise BridgeDeviceError("Reader unavailable", reader=self.name)
        if not change.present:
            return ReaderObservation(reader_name=self.name, status=ReaderStatus.NO_CARD)
        loop = asyncio.get_running_loop()
        async with self._io_lock:
            identity = await loop.run_in_executor(None, source.read_identity)
        return ReaderObservation(
            reader_name=self.name,
            status=ReaderStatus.CARD_PRESENT,
            identity=identity,
            atr=change.atr,
        )

    def _handle_failure(self, exc: BaseException) -> None:
        self._failures += 1
        self._close_source()
        budget = self._config.device_retry_budget
        _logger.warning(
            "Reader %s I/O failure (%d/%d): %s",
            self.name,
            self._failures,
            budget,
            exc,
        )
        if self._failures > budget:
            self._publish(ReaderObservation(reader_name=self.name, status=ReaderStatus.ERROR))

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while True:
                if self._restart.is_set():
                    self._restart.clear()
                    self._close_source()
                    self._last = None
                    self._failures = 0
                try:
                    if self._source is None:
                        self._source = await loop.run_in_executor(None, self._backend.open, self.name)
                    source = self._source
                    change = await loop.run_in_executor(
                        None, source.wait_for_change, self._config.reader_wait_timeout
                    )
                    if change is None:
                        continue
                    observation = await self._observe(source, change)
                except BridgeDeviceError as exc:
                    self._handle_failure(exc)
                    await asyncio.sleep(self._config.device_retry_delay)
                    continue
                except Exception as exc:
                    _logger.exception("Unexpected error watching reader %s", self.name)
                    self._handle_failure(exc)
                    await asyncio.sleep(self._config.device_retry_delay)
                    continue
                self._failures = 0
                self._publish(observation)
        finally:
            self._close_source()


class ReaderMonitor:
    """Discovers readers and keeps one :class:`ReaderWatcher` per reader."""

    def __init__(
        self,
        backend: ReaderBackend,
        config: BridgeConfig,
        on_observation: ObservationCallback,
    ) -> None:
        self._backend = backend
        self._config = config
        self._on_observation = on_observation
        self._watchers: dict[str, ReaderWatcher] = {}
        self._task: asyncio.Task[None] | None = None
        self._discovery_failing = False

    @property
    def readers(self) -> list[str]:
        return sorted(self._watchers)

    def watcher(self, name: str) -> ReaderWatcher | None:
        return self._watchers.get(name)

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._discovery_loop(), name="reader-discovery")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        watchers = list(self._watchers.values())
        self._watchers.clear()
        await asyncio.gather(*(watcher.stop() for watcher in watchers))

    async def _discovery_loop(self) -> None:
        while True:
            await self.refresh()
            await asyncio.sleep(self._config.discovery_interval)

    async def refresh(self) -> None:
        """List readers once, starting and stopping watchers as needed."""
        loop = asyncio.get_running_loop()
        try:
            names = await loop.run_in_executor(None, self._backend.list_readers)
        except BridgeDeviceError as exc:
            if not self._discovery_failing:
                _logger.warning("Reader discovery failed: %s", exc)
            self._discovery_failing = True
            return
        if self._discovery_failing:
            _logger.info("Reader discovery recovered")
        self._discovery_failing = False

        current = set(names)
        for name in sorted(current - set(self._watchers)):
            _logger.info("Reader connected: %s", name)
            watcher = ReaderWatcher(
                name,
                backend=self._backend,
                config=self._config,
                on_observation=self._on_observation,
            )
            self._watchers[name] = watcher
            watcher.start()

        for name in sorted(set(self._watchers) - current):
            _logger.info("Reader disconnected: %s", name)
            watcher = self._watchers.pop(name)
            await watcher.stop()
            self._on_observation(ReaderObservation(reader_name=name, status=ReaderStatus.UNKNOWN))

    def restart(self, name: str | None = None) -> list[str]:
        """Restart one watcher, or all of them; returns the readers restarted."""
        if name is not None:
            watcher = self._watchers.get(name)
            if watcher is None:
                return []
            watcher.restart()
            return [name]
        for watcher in self._watchers.values():
            watcher.restart()
        return self.readers

    def _require(self, name: str) -> ReaderWatcher:
        watcher = self._watchers.get(name)
        if watcher is None:
            raise BridgeDeviceError("Unknown reader", reader=name)
        return watcher

    async def transmit(self, name: str, apdu: bytes) -> bytes:
        return await self._require(name).transmit(apdu)

    async def reset_card(self, name: str) -> None:
        await self._require(name).reset_card()
