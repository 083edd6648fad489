from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .api.server import ApiServer
from .config import ApiConfig
from .event_bus import HEALTH_TOPIC, EventBus
from .lifecycle import LifecycleState

logger = logging.getLogger(__name__)


class Server:
    """Owns at most one :class:`ApiServer` and restarts it on demand.

    Every ``start()`` builds a fresh ``ApiServer``; an instance is never
    restarted in place. Lifecycle calls are serialized per instance.
    """

    def __init__(
        self,
        config: Optional[ApiConfig] = None,
        events: Optional[EventBus] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._config = config or ApiConfig()
        self._events = events
        self._logger = log or logger
        self._api: Optional[ApiServer] = None
        self._state = LifecycleState.STOPPED
        self._lock = asyncio.Lock()

    @property
    def api(self) -> Optional[ApiServer]:
        return self._api

    @property
    def config(self) -> ApiConfig:
        return self._config

    @property
    def events(self) -> Optional[EventBus]:
        return self._events

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is LifecycleState.RUNNING

    def _publish(self, event: str, **details) -> None:
        if self._events is not None:
            self._events.publish_nowait(HEALTH_TOPIC, {"source": "server", "event": event, **details})

    async def _dispose_old_api(self, throw_on_error: bool = True) -> bool:
        try:
            old_api = self._api
            if old_api is not None:
                await old_api.stop()
                self._api = None
            return True
        except Exception:
            if throw_on_error:
                raise
            self._logger.warning("Ignoring failure while disposing old API server", exc_info=True)
            return False

    async def start(self) -> bool:
        async with self._lock:
            if self.is_running:
                return False

            self._state = LifecycleState.STARTING
            try:
                await self._dispose_old_api()

                new_api = ApiServer(self, self._config, events=self._events, log=self._logger.getChild("api"))
                await new_api.start()

                self._api = new_api
                self._state = LifecycleState.RUNNING
            except BaseException as exc:
                # Cancellation included; STARTING is never left behind
                self._state = LifecycleState.STOPPED
                await self._dispose_old_api(throw_on_error=False)
                self._logger.error("Server failed to start: %r", exc)
                self._publish("start_failed", error=repr(exc))
                raise

            self._logger.info("Server started")
            self._publish("started")
            return True

    async def stop(self) -> bool:
        async with self._lock:
            if not self.is_running:
                return False

            self._state = LifecycleState.STOPPING
            try:
                await self._dispose_old_api()
            except BaseException as exc:
                self._state = LifecycleState.RUNNING
                self._logger.error("Server failed to stop: %r", exc)
                self._publish("stop_failed", error=repr(exc))
                raise

            self._state = LifecycleState.STOPPED
            self._logger.info("Server stopped")
            self._publish("stopped")
            return True
