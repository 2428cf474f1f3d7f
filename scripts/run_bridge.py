#!/usr/bin/env python3
"""Run the tacho bridge headless and print its notifications.

Usage
-----
::

    export TBA_CONFIG_PATH=~/Documents/tba/config.json   # optional
    python scripts/run_bridge.py

Options::

    --config PATH        Configuration document (default: ~/Documents/tba/config.json)
    --poll SECS          Poll readers at this interval instead of waiting for changes
    --insecure           Skip broker certificate hostname verification
    --json               Print notifications as JSON lines
    --verbose / -v       Enable debug logging
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from tachobridge import BridgeApp, BridgeConfig  # noqa: E402

_LOG = logging.getLogger("run_bridge")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the tacho bridge without a UI.")
    parser.add_argument("--config", type=Path, default=None, help="Path of the configuration document.")
    parser.add_argument("--poll", type=float, default=None, help="Reader poll interval in seconds.")
    parser.add_argument("--insecure", action="store_true", help="Skip broker hostname verification.")
    parser.add_argument("--json", action="store_true", help="Print notifications as JSON lines.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logs.")
    return parser.parse_args()


def _format(body: dict[str, Any]) -> str:
    kind = body.pop("type", "?")
    fields = " ".join(f"{key}={value}" for key, value in body.items())
    return f"[{kind}] {fields}"


async def _run(args: argparse.Namespace) -> int:
    overrides: dict[str, Any] = {}
    if args.config is not None:
        overrides["config_path"] = args.config.expanduser()
    if args.poll is not None:
        overrides["poll_interval"] = args.poll
    if args.insecure:
        overrides["tls_insecure"] = True
    config = BridgeConfig.from_env(**overrides)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    async with BridgeApp(config) as app:
        _LOG.info("Configuration: %s", app.store.path)
        channel = app.subscribe()

        async def _printer() -> None:
            async for notification in channel:
                body = notification.to_wire()
                print(json.dumps(body) if args.json else _format(body), flush=True)

        printer = asyncio.create_task(_printer())
        await stop.wait()
        printer.cancel()
    return 0


def main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
