"""转发地址定期探活。

kubectl port-forward 长时间没有流量时连接可能被中间代理断开，
这里按固定间隔访问一次转发地址。失败只记录日志，永不退出。
"""

from __future__ import annotations

import asyncio
import logging

import aiohttp
import anyio

__all__ = ["KeepAliveProber"]

logger = logging.getLogger(__name__)

# 单次探活请求超时（秒）
DEFAULT_REQUEST_TIMEOUT = 30.0


class KeepAliveProber:
    """定期访问转发地址的后台任务。

    Example:
        prober = KeepAliveProber("http://localhost:8080", delay=240)
        async with anyio.create_task_group() as tg:
            tg.start_soon(prober.run)
    """

    def __init__(
        self,
        url: str,
        delay: float,
        *,
        verify_ssl: bool = True,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        """初始化探活器。

        Args:
            url: 探活地址
            delay: 两次探活之间的间隔（秒）
            verify_ssl: 是否校验 TLS 证书
            request_timeout: 单次请求超时（秒）
        """
        self.url = url
        self.delay = delay
        self.verify_ssl = verify_ssl
        self.request_timeout = request_timeout
        self.probe_count = 0
        self.failure_count = 0
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """获取或创建 HTTP 会话。"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            )
        return self._session

    async def close(self) -> None:
        """关闭 HTTP 会话。"""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def probe_once(self) -> bool:
        """访问一次，读完响应体以释放连接。

        Returns:
            请求是否成功（只要拿到响应即视为成功，不看状态码）
        """
        self.probe_count += 1
        session = await self._get_session()
        try:
            async with session.get(self.url, ssl=self.verify_ssl) as resp:
                await resp.read()
                logger.debug(f"Keep-alive probe url={self.url} status={resp.status}")
            return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.failure_count += 1
            logger.warning(f"http get error, url={self.url}, err={e!r}")
            return False

    async def run(self) -> None:
        """按间隔无限探活，只有取消才会结束。"""
        logger.info(f"Keep-alive probing {self.url} every {self.delay}s")
        try:
            while True:
                await asyncio.sleep(self.delay)
                try:
                    await self.probe_once()
                except Exception as e:
                    self.failure_count += 1
                    logger.warning(f"Keep-alive probe failed unexpectedly, url={self.url}: {e!r}")
        finally:
            with anyio.CancelScope(shield=True):
                await self.close()
