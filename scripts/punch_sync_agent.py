"""CLI entrypoint hosting the offline punch sync worker."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from contextlib import suppress
from typing import Any

from aiohttp import ClientSession

from punch_sync import (
    ConnectivityMonitor,
    ConnectivityProbe,
    ControlChannel,
    QueueStore,
    SyncConfig,
    SyncConfigError,
    SyncWorker,
    load_config,
)
from punch_sync.const import CONF_BASE_URL, CONF_LOG_LEVEL, CONF_PROBE_INTERVAL, CONF_STORE_PATH

_LOGGER = logging.getLogger(__name__)

COMMANDS = ("run", "status", "sync", "clear")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the employee portal offline punch sync agent")
    parser.add_argument("command", nargs="?", default="run", choices=COMMANDS, help="Action to perform")
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--base-url", help="Portal base URL")
    parser.add_argument("--db", help="SQLite path for the offline queue")
    parser.add_argument("--interval", type=int, help="Connectivity probe interval in seconds")
    parser.add_argument("--log-level", help="Logging level")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> SyncConfig:
    overrides = {
        CONF_BASE_URL: args.base_url,
        CONF_STORE_PATH: args.db,
        CONF_PROBE_INTERVAL: args.interval,
        CONF_LOG_LEVEL: args.log_level,
    }
    if args.config:
        return load_config(args.config, overrides)
    return SyncConfig.from_options({key: value for key, value in overrides.items() if value is not None})


def open_store(config: SyncConfig) -> QueueStore:
    return QueueStore(
        config.store_path,
        max_items=config.max_queue_items,
        max_bytes=config.max_queue_bytes,
    )


def queue_status(store: QueueStore) -> dict[str, Any]:
    items = store.list_all()
    cached_at = store.portal_cache_updated_at()
    return {
        "pending": len(items),
        "storage_warning": store.storage_warning,
        "portal_cache_updated_at": cached_at.isoformat() if cached_at else None,
        "queue": [item.to_dict() for item in items],
    }


async def run_agent(config: SyncConfig, *, once: bool = False) -> dict[str, Any] | None:
    store = open_store(config)
    monitor = ConnectivityMonitor(online=False)
    channel = ControlChannel()
    async with ClientSession() as session:
        worker = SyncWorker(config, store, monitor, channel, session=session)
        probe = ConnectivityProbe(
            monitor,
            session,
            config.base_url,
            path=config.probe_path,
            timeout=config.request_timeout,
        )
        if once:
            # No listener is attached, so the probe does not start a drain of its own.
            if not await probe.probe_once():
                return {"refused": "offline", **probe.status()}
            result = await worker.async_process_queue()
            return result.to_dict() if result else {"refused": "busy"}

        await worker.async_start()
        probe_task = asyncio.create_task(probe.run_forever(interval_seconds=config.probe_interval))
        _LOGGER.info("Punch sync agent running against %s", config.base_url)
        try:
            await asyncio.Event().wait()
        finally:
            probe_task.cancel()
            with suppress(asyncio.CancelledError):
                await probe_task
            await worker.async_stop()
    return None


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = build_config(args)
    except SyncConfigError as err:
        print(f"error: {err}", file=sys.stderr)
        return 2
    logging.basicConfig(level=getattr(logging, config.log_level, logging.INFO))

    if args.command == "status":
        print(json.dumps(queue_status(open_store(config)), indent=2))
        return 0
    if args.command == "clear":
        cleared = open_store(config).clear()
        print(json.dumps({"cleared": cleared}))
        return 0
    if args.command == "sync":
        result = asyncio.run(run_agent(config, once=True))
        print(json.dumps(result, indent=2))
        return 1 if result and "refused" in result else 0

    try:
        asyncio.run(run_agent(config))
    except KeyboardInterrupt:  # pragma: no cover - manual interruption
        _LOGGER.info("Punch sync agent stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
