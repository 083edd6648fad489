from __future__ import annotations

import asyncio
import logging
import signal

from mediaplayer.config import load_config
from mediaplayer.event_bus import HEALTH_TOPIC, EventBus
from mediaplayer.logging_setup import setup_logging
from mediaplayer.server import Server


async def monitor_health(events: EventBus, logger: logging.Logger) -> None:
    async for event in events.subscribe(HEALTH_TOPIC):
        name = event.get("event", "")
        if name.endswith("_failed"):
            logger.warning("Health event: %s", event)
        else:
            logger.debug("Health event: %s", event)


async def main_async() -> None:
    cfg = load_config()
    setup_logging(cfg.log_dir, cfg.log_level)
    logger = logging.getLogger("mediaplayer")
    logger.info("media-player starting up")

    events = EventBus()
    monitor = asyncio.create_task(monitor_health(events, logger), name="health-monitor")
    # Let the monitor subscribe before the first lifecycle event
    await asyncio.sleep(0)

    server = Server(cfg.api, events=events)
    try:
        await server.start()
    except OSError:
        logger.error("Could not start API on %s:%d", cfg.api.host, cfg.api.port)
        monitor.cancel()
        raise

    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows fallback
            pass

    try:
        await stop_event.wait()
    finally:
        await server.stop()
        monitor.cancel()
        try:
            await monitor
        except asyncio.CancelledError:
            pass
    logger.info("media-player shut down")


def main() -> None:
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
