from __future__ import annotations

import json
import re
from datetime import datetime, timezone

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import make_mocked_request

from mediaplayer.api.server import ApiResponse, ApiServer, remote_endpoint, utc_now_iso
from mediaplayer.event_bus import HEALTH_TOPIC, EventBus
from mediaplayer.lifecycle import LifecycleState


class FailingRouteApiServer(ApiServer):
    def initialize_app(self, app):
        if not super().initialize_app(app):
            return False

        def boom(request, response):
            raise RuntimeError("boom")

        app.add_routes([
            web.get('/boom', self.get_request_handler_safe(boom)),
            web.get('/missing', self.get_request_handler_safe(None)),
        ])
        return True


def _base_url(api: ApiServer) -> str:
    host, port = api.address
    return f"http://{host}:{port}"


@pytest.mark.asyncio
async def test_start_twice_returns_false_second_time(api_config):
    api = ApiServer(object(), api_config)
    try:
        assert await api.start() is True
        assert api.is_running is True
        assert await api.start() is False
        assert api.is_running is True
        assert api.state is LifecycleState.RUNNING
    finally:
        await api.stop()


@pytest.mark.asyncio
async def test_stop_never_started_returns_false(api_config):
    api = ApiServer(object(), api_config)
    assert await api.stop() is False
    assert api.is_running is False
    assert api.address is None


@pytest.mark.asyncio
async def test_server_back_reference_is_kept(api_config):
    owner = object()
    api = ApiServer(owner, api_config)
    assert api.server is owner
    assert api.config is api_config


@pytest.mark.asyncio
async def test_status_route_returns_envelope(api_config):
    api = ApiServer(object(), api_config)
    await api.start()
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(_base_url(api) + "/") as resp:
                assert resp.status == 200
                assert resp.headers["Content-Type"] == "application/json; charset=utf-8"
                local = resp.connection.transport.get_extra_info("sockname")
                raw = await resp.read()
    finally:
        await api.stop()

    body = json.loads(raw.decode("utf-8"))
    assert body["code"] == 0
    assert body["msg"] is None
    assert set(body["data"]) == {"now", "you"}

    now = datetime.fromisoformat(body["data"]["now"].replace("Z", "+00:00"))
    assert now.tzinfo is not None
    assert abs((datetime.now(timezone.utc) - now).total_seconds()) < 5

    host, port = body["data"]["you"].rsplit(":", 1)
    assert host == local[0] == "127.0.0.1"
    assert int(port) == local[1]


@pytest.mark.asyncio
async def test_handler_exception_becomes_500_and_server_keeps_serving(api_config):
    events = EventBus()
    queue = events.open(HEALTH_TOPIC)
    api = FailingRouteApiServer(object(), api_config, events=events)
    await api.start()
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(_base_url(api) + "/boom") as resp:
                assert resp.status == 500
            async with session.get(_base_url(api) + "/missing") as resp:
                assert resp.status == 500
            async with session.get(_base_url(api) + "/") as resp:
                assert resp.status == 200
        assert api.is_running is True
    finally:
        await api.stop()

    names = []
    while not queue.empty():
        names.append(queue.get_nowait()["event"])
    assert names == ["started", "handler_failed", "stopped"]


@pytest.mark.asyncio
async def test_bind_failure_propagates(api_config):
    first = ApiServer(object(), api_config)
    second = ApiServer(object(), api_config)
    await first.start()
    try:
        with pytest.raises(OSError):
            await second.start()
        assert second.is_running is False
        assert second.state is LifecycleState.STOPPED
        assert first.is_running is True
    finally:
        await first.stop()


@pytest.mark.asyncio
async def test_restart_reacquires_port(api_config):
    api = ApiServer(object(), api_config)
    assert await api.start() is True
    assert await api.stop() is True
    assert await api.start() is True
    try:
        assert api.address[1] == api_config.port
    finally:
        await api.stop()


@pytest.mark.asyncio
async def test_close_failure_rolls_back_to_running(api_config, monkeypatch):
    api = ApiServer(object(), api_config)
    await api.start()

    async def failing_cleanup(self):
        raise OSError("close failed")

    monkeypatch.setattr(web.AppRunner, "cleanup", failing_cleanup)
    with pytest.raises(OSError, match="close failed"):
        await api.stop()
    assert api.is_running is True
    assert api.state is LifecycleState.RUNNING

    monkeypatch.undo()
    assert await api.stop() is True


def test_initialize_app_rejects_missing_app():
    api = ApiServer(object())
    assert api.initialize_app(None) is False


def test_initialize_app_registers_root_route():
    api = ApiServer(object())
    app = web.Application()
    assert api.initialize_app(app) is True
    paths = [r.resource.canonical for r in app.router.routes() if r.method == "GET"]
    assert paths == ["/"]


def test_send_json_result_is_chainable_and_encodes_envelope():
    request = make_mocked_request("GET", "/")
    response = ApiResponse(request)
    assert response.send_json_result({"a": 1}, code=3, msg="ok") is response
    assert response.is_sent is True
    assert response.response.content_type == "application/json"
    assert response.response.charset == "utf-8"
    assert json.loads(response.response.body.decode("utf-8")) == {"code": 3, "msg": "ok", "data": {"a": 1}}


@pytest.mark.asyncio
async def test_safe_handler_accepts_plain_functions():
    api = ApiServer(object())

    def handler(request, response):
        response.send_json_result("plain")

    resp = await api.get_request_handler_safe(handler)(make_mocked_request("GET", "/"))
    assert resp.status == 200
    assert json.loads(resp.body.decode("utf-8"))["data"] == "plain"


@pytest.mark.asyncio
async def test_safe_handler_without_response_sends_500():
    api = ApiServer(object())

    async def silent(request, response):
        return None

    resp = await api.get_request_handler_safe(silent)(make_mocked_request("GET", "/"))
    assert resp.status == 500


@pytest.mark.asyncio
async def test_failure_while_sending_500_is_discarded(monkeypatch):
    api = ApiServer(object())

    def broken_send_status(self, status):
        raise RuntimeError("cannot send")

    monkeypatch.setattr(ApiResponse, "send_status", broken_send_status)

    async def boom(request, response):
        raise ValueError("boom")

    resp = await api.get_request_handler_safe(boom)(make_mocked_request("GET", "/"))
    assert resp.status == 500

    resp = await api.get_request_handler_safe(None)(make_mocked_request("GET", "/"))
    assert resp.status == 500


def test_utc_now_iso_format():
    value = utc_now_iso()
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z", value)


def test_remote_endpoint_without_peername_falls_back():
    request = make_mocked_request("GET", "/")
    assert remote_endpoint(request).endswith(":")
