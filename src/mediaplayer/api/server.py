from __future__ import annotations

import asyncio
import inspect
import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Tuple, Union

from aiohttp import web  # type: ignore[reportMissingImports]

from ..config import ApiConfig
from ..event_bus import HEALTH_TOPIC, EventBus
from ..lifecycle import LifecycleState

if TYPE_CHECKING:
    from ..server import Server

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"
JSON_CHARSET = "utf-8"


class ApiResponse:
    """Response context handed to every safe request handler.

    Handlers call one of the ``send_*`` methods; the last call wins and the
    resulting :class:`aiohttp.web.Response` is what the client receives.
    """

    def __init__(self, request: web.Request) -> None:
        self._request = request
        self._response: Optional[web.Response] = None

    @property
    def request(self) -> web.Request:
        return self._request

    @property
    def response(self) -> Optional[web.Response]:
        return self._response

    @property
    def is_sent(self) -> bool:
        return self._response is not None

    def send_json_result(self, data: Any = None, code: int = 0, msg: Optional[str] = None) -> "ApiResponse":
        """Send ``{"code", "msg", "data"}`` as UTF-8 JSON. Chainable."""
        body = json.dumps({"code": code, "msg": msg, "data": data}).encode("utf-8")
        self._response = web.Response(
            body=body,
            status=200,
            content_type=JSON_CONTENT_TYPE,
            charset=JSON_CHARSET,
        )
        return self

    def send_status(self, status: int) -> "ApiResponse":
        self._response = web.Response(status=status)
        return self


ApiRequestHandler = Callable[[web.Request, ApiResponse], Union[Awaitable[Any], Any]]
SafeHandler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def utc_now_iso() -> str:
    # 2026-10-19T08:15:30.123Z
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def remote_endpoint(request: web.Request) -> str:
    peername = request.transport.get_extra_info("peername") if request.transport is not None else None
    if isinstance(peername, (tuple, list)) and len(peername) >= 2:
        return f"{peername[0]}:{peername[1]}"
    return f"{request.remote or ''}:"


class ApiServer:
    def __init__(
        self,
        server: "Server",
        config: Optional[ApiConfig] = None,
        events: Optional[EventBus] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._server = server
        self._config = config or ApiConfig()
        self._events = events
        self._logger = log or logger
        self._state = LifecycleState.STOPPED
        self._lock = asyncio.Lock()
        self._runner: Optional[web.AppRunner] = None
        self._address: Optional[Tuple[str, int]] = None

    @property
    def server(self) -> "Server":
        return self._server

    @property
    def config(self) -> ApiConfig:
        return self._config

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is LifecycleState.RUNNING and self._runner is not None

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        return self._address

    def _publish(self, event: str, **details: Any) -> None:
        if self._events is None:
            return
        payload = {"source": "api", "event": event, "ts_utc": utc_now_iso()}
        payload.update(details)
        self._events.publish_nowait(HEALTH_TOPIC, payload)

    def _send_failure(self, response: ApiResponse) -> web.StreamResponse:
        try:
            response.send_status(500)
        except Exception:
            self._logger.exception("Could not send failure status for %s", response.request.path)
            return web.Response(status=500)
        assert response.response is not None
        return response.response

    def get_request_handler_safe(self, handler: Optional[ApiRequestHandler]) -> SafeHandler:
        """Wrap ``handler`` so that any exception it raises becomes a 500.

        Only exceptions raised while the handler (or the awaitable it
        returns) runs are caught. Work the handler schedules elsewhere, e.g.
        with ``asyncio.create_task``, is not covered.
        """
        if handler is None:
            async def failing_handler(request: web.Request) -> web.StreamResponse:
                return self._send_failure(ApiResponse(request))

            return failing_handler

        async def safe_handler(request: web.Request) -> web.StreamResponse:
            response = ApiResponse(request)
            try:
                result = handler(request, response)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                self._logger.exception("Handler for %s %s failed", request.method, request.path)
                self._publish("handler_failed", path=request.path, error=repr(exc))
                return self._send_failure(response)

            if not response.is_sent:
                self._logger.warning("Handler for %s %s sent no response", request.method, request.path)
                return self._send_failure(response)
            return response.response

        return safe_handler

    async def _handle_status(self, request: web.Request, response: ApiResponse) -> None:
        response.send_json_result({
            "now": utc_now_iso(),
            "you": remote_endpoint(request),
        })

    def initialize_app(self, app: Optional[web.Application]) -> bool:
        if app is None:
            return False

        app.add_routes([
            web.get('/', self.get_request_handler_safe(self._handle_status)),
        ])
        return True

    async def start(self) -> bool:
        async with self._lock:
            if self.is_running:
                return False

            self._state = LifecycleState.STARTING
            host, port = self._config.host, self._config.port

            runner: Optional[web.AppRunner] = None
            try:
                app = web.Application()
                self.initialize_app(app)
                runner = web.AppRunner(app)
                await runner.setup()
                site = web.TCPSite(runner, host, port)
                await site.start()
            except BaseException as exc:
                # Also covers cancellation while binding
                self._state = LifecycleState.STOPPED
                self._logger.error("Could not bind API on %s:%d: %r", host, port, exc)
                self._publish("start_failed", host=host, port=port, error=repr(exc))
                if runner is not None:
                    try:
                        await runner.cleanup()
                    except Exception:
                        self._logger.debug("Cleanup after failed bind raised", exc_info=True)
                raise

            addresses = runner.addresses
            if addresses:
                self._address = (str(addresses[0][0]), int(addresses[0][1]))
            else:
                self._address = (host, port)
            self._runner = runner
            self._state = LifecycleState.RUNNING
            self._logger.info("API listening on http://%s:%d", *self._address)
            self._publish("started", host=self._address[0], port=self._address[1])
            return True

    async def stop(self) -> bool:
        async with self._lock:
            runner = self._runner
            if runner is None or not self.is_running:
                return False

            self._state = LifecycleState.STOPPING
            try:
                await runner.cleanup()
            except BaseException as exc:
                # Listener may still be open
                self._state = LifecycleState.RUNNING
                self._logger.exception("Could not close API listener")
                self._publish("stop_failed", error=repr(exc))
                raise

            address = self._address
            self._runner = None
            self._address = None
            self._state = LifecycleState.STOPPED
            if address is not None:
                self._logger.info("API on %s:%d closed", *address)
            self._publish("stopped")
            return True
