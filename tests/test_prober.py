"""KeepAliveProber 测试。

使用 aiohttp TestServer 作为转发地址。
"""

from __future__ import annotations

import logging
import socket

import anyio
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from kproxy.prober import KeepAliveProber


class PingApp:
    """记录访问次数的测试服务。"""

    def __init__(self, status: int = 200) -> None:
        self.status = status
        self.hits = 0
        self.url = ""

    async def handle(self, request: web.Request) -> web.Response:
        self.hits += 1
        return web.Response(status=self.status, text="pong" * 1024)


@pytest_asyncio.fixture
async def ping_app():
    app = PingApp()
    web_app = web.Application()
    web_app.router.add_get("/", app.handle)
    web_app.router.add_get("/_plugin/kibana", app.handle)
    server = TestServer(web_app)
    await server.start_server()
    app.url = str(server.make_url("/"))
    try:
        yield app
    finally:
        await server.close()


def _unused_url() -> str:
    """返回一个当前没有监听的本地地址。"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    return f"http://127.0.0.1:{port}/"


class TestProbeOnce:
    """测试单次探活。"""

    @pytest.mark.asyncio
    async def test_success(self, ping_app):
        """成功访问并读完响应体。"""
        prober = KeepAliveProber(ping_app.url, delay=1)
        try:
            assert await prober.probe_once() is True
        finally:
            await prober.close()

        assert ping_app.hits == 1
        assert prober.probe_count == 1
        assert prober.failure_count == 0

    @pytest.mark.asyncio
    async def test_error_status_still_counts_as_alive(self, ping_app):
        """HTTP 错误状态码也说明连接是通的。"""
        ping_app.status = 500
        prober = KeepAliveProber(ping_app.url, delay=1)
        try:
            assert await prober.probe_once() is True
        finally:
            await prober.close()

    @pytest.mark.asyncio
    async def test_connection_refused_is_logged(self, caplog):
        """连接失败只记录日志。"""
        url = _unused_url()
        prober = KeepAliveProber(url, delay=1)
        with caplog.at_level(logging.WARNING, logger="kproxy.prober"):
            try:
                assert await prober.probe_once() is False
            finally:
                await prober.close()

        assert prober.failure_count == 1
        assert f"http get error, url={url}" in caplog.text


class TestRunLoop:
    """测试后台探活循环。"""

    @pytest.mark.asyncio
    async def test_probes_repeatedly(self, ping_app):
        """按间隔重复探活，取消后关闭会话。"""
        prober = KeepAliveProber(ping_app.url, delay=0.05)

        with anyio.move_on_after(0.6):
            await prober.run()

        assert ping_app.hits >= 2
        assert prober._session is None

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_loop(self):
        """探活失败后循环继续。"""
        prober = KeepAliveProber(_unused_url(), delay=0.02)

        with anyio.move_on_after(0.5):
            await prober.run()

        assert prober.failure_count >= 2
        assert prober.failure_count == prober.probe_count

    @pytest.mark.asyncio
    async def test_waits_before_first_probe(self, ping_app):
        """第一次探活也要等一个间隔。"""
        prober = KeepAliveProber(ping_app.url, delay=5)

        with anyio.move_on_after(0.2):
            await prober.run()

        assert ping_app.hits == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_stop_loop(self, monkeypatch):
        """非网络异常同样只记录日志，循环继续。"""
        prober = KeepAliveProber(_unused_url(), delay=0.01)
        calls = 0

        async def broken_request() -> bool:
            nonlocal calls
            calls += 1
            raise RuntimeError("unexpected")

        monkeypatch.setattr(prober, "probe_once", broken_request)

        with anyio.move_on_after(0.3):
            await prober.run()

        assert calls >= 2
        assert prober.failure_count == calls
