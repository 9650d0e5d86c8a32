"""kproxy 应用入口。

包含端口转发的生命周期管理和主入口点。
"""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime
from typing import Sequence

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream

from .commands import LISTEN_FAILURE_MARKER, port_forward_command, token_command
from .config import Config, load_config
from .errors import CommandError, ConfigError
from .prober import KeepAliveProber
from .runtime import (
    Notification,
    NotificationKind,
    ProcessSpec,
    ProcessSupervisor,
    create_channel,
    run_command,
)

__all__ = ["run", "resolve_token", "main"]

logger = logging.getLogger(__name__)


def _echo(text: str) -> None:
    """带时间戳输出一条转发消息。"""
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    end = "" if text.endswith("\n") else "\n"
    print(f"{timestamp} {text}", end=end, flush=True)


async def resolve_token(config: Config) -> str:
    """获取 dashboard serviceAccount 的登录 token。

    Raises:
        CommandError: kubectl 执行失败
    """
    token = (await run_command(ProcessSpec(token_command(config)))).strip()
    if not token:
        logger.warning(
            f"No token found for serviceAccount '{config.service_account}' "
            f"in namespace '{config.namespace}'"
        )
    return token


async def _consume(receive_stream: MemoryObjectReceiveStream[Notification]) -> Notification | None:
    """消费转发输出，直到通道关闭或监听失败。

    Returns:
        最后一条消息（没有任何消息时为 None）
    """
    last: Notification | None = None
    async with receive_stream:
        async for notification in receive_stream:
            last = notification
            _echo(notification.text)
            # 端口转发失败
            if LISTEN_FAILURE_MARKER in notification.text:
                logger.error("Port-forward listener failed to bind, stopping")
                break
    return last


async def run(config: Config) -> int:
    """运行端口转发。

    - keep-alive 探活在后台任务中运行
    - dashboard 转发先获取 token
    - 端口转发输出逐行打印，监听失败或命令结束后退出

    Returns:
        进程退出码
    """
    if not config.is_open:
        print("\nOnly allowed to access localhost")
    print(f"\naccess addr is {config.probe_url}\n", flush=True)

    prober = KeepAliveProber(
        config.probe_url,
        config.delay_time,
        verify_ssl=not config.insecure,
    )

    async with anyio.create_task_group() as tg:
        tg.start_soon(prober.run, name="keep-alive-prober")

        # 如果是 dashboard 转发，获取 token 值
        if config.is_dashboard:
            try:
                token = await resolve_token(config)
            except CommandError as e:
                logger.error(f"execute cmd error, command={e.command}, err={e.message}")
                tg.cancel_scope.cancel()
                return 1
            print(f"\n{token}\n", flush=True)

        send_stream, receive_stream = create_channel()
        supervisor = ProcessSupervisor(ProcessSpec(port_forward_command(config)), send_stream)
        tg.start_soon(supervisor.run, name="port-forward-supervisor")

        last = await _consume(receive_stream)

        # 停止探活，仍在运行的 kubectl 随之被终止
        tg.cancel_scope.cancel()

    print("process exit", flush=True)

    if last is None or last.kind is not NotificationKind.FINISHED:
        return 1
    return 0


def _configure_logging(config: Config) -> None:
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：输出到临时文件
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # 默认模式：输出到 stderr
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # 第三方库保持 WARNING
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
        force=True,
    )
    logging.getLogger("kproxy").setLevel(log_level)


def main(argv: Sequence[str] | None = None) -> None:
    """主入口点。"""
    try:
        config = load_config(argv)
    except ConfigError as e:
        print(f"{e.message}\n{e.usage}", file=sys.stderr)
        sys.exit(1)

    _configure_logging(config)
    logger.info(f"Starting kproxy: {config}")
    if config.log_file:
        print(f"Debug log: {config.log_file}", file=sys.stderr)

    try:
        exit_code = asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("Interrupted, port-forward stopped")
        sys.exit(130)  # 128 + SIGINT(2) = 130

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
