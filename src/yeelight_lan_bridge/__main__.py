"""Entrypoint for the Yeelight LAN bridge."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Any, Callable, Iterable, List, Optional

from .config import Config, load_config
from .discovery import DiscoveryService
from .logging import configure_logging, get_logger
from .metrics import start_metrics_server
from .models import DeviceRecord
from .registry import SessionRegistry, build_session
from .session import DeviceSession


async def _discovery_loop(
    stop_event: asyncio.Event, config: Config, registry: SessionRegistry
) -> None:
    logger = get_logger("yeelight.discovery")
    service = DiscoveryService(config, registry)
    await service.start()
    try:
        await service.run_search_loop(stop_event)
        await stop_event.wait()
    except asyncio.CancelledError:
        logger.info("Discovery loop cancelled")
        raise
    finally:
        await service.stop()
        logger.info("Discovery loop stopped")


def _session_factory(config: Config) -> Callable[[DeviceRecord], DeviceSession]:
    logger = get_logger("yeelight.session")

    def _build(record: DeviceRecord) -> DeviceSession:
        session = build_session(record, config)

        def _changed(name: str, value: Any) -> None:
            logger.info(
                "Property changed",
                extra={"device_id": session.identity, "property": name, "value": value},
            )

        session.add_property_listener(_changed)
        return session

    return _build


async def _run_async(config: Config) -> None:
    logger = get_logger("yeelight")
    stop_event = asyncio.Event()
    registry = SessionRegistry(config, session_factory=_session_factory(config))

    def _request_shutdown(sig: Optional[str] = None) -> None:
        if not stop_event.is_set():
            logger.warning("Shutdown requested", extra={"signal": sig})
            stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_shutdown, sig.name)

    if config.metrics_port is not None:
        start_metrics_server(config.metrics_port)
        logger.info("Metrics exporter started", extra={"port": config.metrics_port})

    tasks: List[asyncio.Task[None]] = [
        asyncio.create_task(_discovery_loop(stop_event, config, registry)),
    ]
    logger.info(
        "Bridge services started",
        extra={"known_devices": list(config.known_devices)},
    )

    try:
        await stop_event.wait()
    finally:
        await _shutdown_tasks(tasks, logger)
        registry.close()
        logger.info("Bridge shutdown complete")


async def _shutdown_tasks(
    tasks: Iterable[asyncio.Task[None]], logger: logging.Logger
) -> None:
    for task in tasks:
        task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await asyncio.gather(*tasks)


def run(cli_args: Optional[Iterable[str]] = None) -> None:
    """CLI entrypoint used by the console script."""

    config = load_config(cli_args)
    configure_logging(config)
    logger = get_logger("yeelight")
    logger.info("Loaded configuration", extra={"config": config.logging_dict()})
    try:
        asyncio.run(_run_async(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")


if __name__ == "__main__":
    run()
