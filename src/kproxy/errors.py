"""kproxy 异常类。"""

from __future__ import annotations

__all__ = [
    "KproxyError",
    "ConfigError",
    "CommandError",
]


class KproxyError(Exception):
    """kproxy 基础异常。"""
    pass


class ConfigError(KproxyError):
    """参数错误（缺少必填参数或取值非法）。

    Attributes:
        usage: 打印给用户的用法说明
    """

    def __init__(self, message: str, usage: str = "") -> None:
        self.message = message
        self.usage = usage
        super().__init__(message)


class CommandError(KproxyError):
    """一次性 shell 命令执行失败。

    Attributes:
        command: 执行的命令
        returncode: 退出码（无法启动时为 None）
        stderr: 标准错误输出内容
    """

    def __init__(
        self,
        command: str,
        message: str,
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        self.command = command
        self.message = message
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)
