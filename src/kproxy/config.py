"""kproxy 配置管理。

命令行参数（兼容 Go flag 风格，`-name=value` 与 `--name=value` 均可）:
    --hostIP: 代理主机 IP（必填）
    --port: 代理主机端口（必填）
    --isOpen: 是否公开访问，true 表示所有网络都可以访问，false 表示只有本机访问
    --podName: 转发到 pod 的名称，需要包含代理类型名称（必填）
    --targetPort: 转发到 app 所在的端口（必填）
    --namespace: k8s 的名称空间 (默认 default)
    --serviceAccount: serviceAccount 的名字（dashboard 获取 token 用）
    --delayTime: 定时访问间隔，单位：秒 (默认 240)
    --httpProtocol: http 协议，http 或 https (默认 http)
    --insecure: 探活时跳过 TLS 证书校验
    --kubectl: kubectl 可执行文件

环境变量:
    KPROXY_INSECURE: --insecure 的默认值
        - true/1/yes = 跳过证书校验
    KPROXY_KUBECTL: --kubectl 的默认值
    KPROXY_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)
"""

from __future__ import annotations

import argparse
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Sequence

from .errors import ConfigError

__all__ = ["Config", "load_config", "USAGE"]

SUPPORTED_PROTOCOLS = frozenset({"http", "https"})

USAGE = """
parameter error.

some examples:

(1) kibana proxy
    kproxy --hostIP=192.168.8.100 --port=8080 --podName=nginx-to-kibana --targetPort=80 --namespace=default --httpProtocol=http

(2) dashboard proxy
    kproxy --hostIP=192.168.8.100 --port=8081 --podName=kubernetes-dashboard --targetPort=8443 --namespace=kube-system --httpProtocol=https --serviceAccount=dashboard-admin

(3) grafana proxy:
    kproxy --hostIP=192.168.8.100 --port=8082 --podName=monitoring-grafana --targetPort=3000 --namespace=prom --httpProtocol=http

note:
    if you need publicly accessible, add parameter '--isOpen=true'
"""


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


_TRUE_FLAG_VALUES = frozenset({"true", "t", "1", "yes", "on"})
_FALSE_FLAG_VALUES = frozenset({"false", "f", "0", "no", "off"})


def _parse_bool_flag(name: str, value: str) -> bool:
    """解析布尔命令行参数，非法取值报错（与 Go flag 一致）。"""
    lowered = value.strip().lower()
    if lowered in _TRUE_FLAG_VALUES:
        return True
    if lowered in _FALSE_FLAG_VALUES:
        return False
    raise ConfigError(f"invalid boolean value {value!r} for {name}", usage=USAGE)


@dataclass(frozen=True)
class Config:
    """kproxy 配置，构造一次后只读传递。

    Attributes:
        host_ip: 代理主机 IP
        port: 本地监听端口
        pod_name: pod 名称匹配串
        target_port: pod 端口
        is_open: 是否监听 0.0.0.0
        namespace: 名称空间
        service_account: dashboard token 对应的 serviceAccount
        delay_time: 探活间隔（秒）
        http_protocol: http 或 https
        insecure: 探活时跳过证书校验
        kubectl: kubectl 可执行文件
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
    """

    host_ip: str
    port: int
    pod_name: str
    target_port: int
    is_open: bool = False
    namespace: str = "default"
    service_account: str = ""
    delay_time: int = 240
    http_protocol: str = "http"
    insecure: bool = False
    kubectl: str = "kubectl"
    log_debug: bool = False
    log_file: str | None = None

    @property
    def access_host(self) -> str:
        """探活访问的主机，非公开访问时只允许 localhost。"""
        return self.host_ip if self.is_open else "localhost"

    @property
    def probe_url(self) -> str:
        """转发后的访问地址。"""
        url = f"{self.http_protocol}://{self.access_host}:{self.port}"
        if "kibana" in self.pod_name:
            url += "/_plugin/kibana"
        return url

    @property
    def is_dashboard(self) -> bool:
        """dashboard 转发需要额外获取 token。"""
        return "dashboard" in self.pod_name


class _ArgumentParser(argparse.ArgumentParser):
    """解析失败时抛出 ConfigError 而不是直接退出。"""

    def error(self, message: str) -> None:  # type: ignore[override]
        raise ConfigError(message, usage=USAGE)


def _build_parser() -> _ArgumentParser:
    parser = _ArgumentParser(prog="kproxy", add_help=True)
    parser.add_argument("--hostIP", "-hostIP", dest="host_ip", default="",
                        help="Proxy host IP")
    parser.add_argument("--port", "-port", dest="port", type=int, default=-1,
                        help="Proxy Host Port")
    parser.add_argument("--isOpen", "-isOpen", dest="is_open", nargs="?",
                        const="true", default="false",
                        help="Is it publicly accessible?")
    parser.add_argument("--podName", "-podName", dest="pod_name", default="",
                        help="Forwarding port to pod name")
    parser.add_argument("--targetPort", "-targetPort", dest="target_port",
                        type=int, default=-1,
                        help="Forwarding to the port where the app is located")
    parser.add_argument("--namespace", "-namespace", dest="namespace",
                        default="default", help="k8s namespace")
    parser.add_argument("--serviceAccount", "-serviceAccount",
                        dest="service_account", default="",
                        help="k8s service account name")
    parser.add_argument("--delayTime", "-delayTime", dest="delay_time",
                        type=int, default=240, help="Access interval time")
    parser.add_argument("--httpProtocol", "-httpProtocol", dest="http_protocol",
                        default="http", help="http Protocol, http or https")
    parser.add_argument("--insecure", "-insecure", dest="insecure", nargs="?",
                        const="true", default=None,
                        help="Skip TLS verification when probing")
    parser.add_argument("--kubectl", "-kubectl", dest="kubectl", default=None,
                        help="kubectl executable")
    return parser


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "kproxy"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"kproxy_debug_{timestamp}.log"

    return str(log_file.resolve())


def _validate(args: argparse.Namespace) -> None:
    if not args.host_ip or args.port == -1 or not args.pod_name or args.target_port == -1:
        raise ConfigError(
            "hostIP, port, podName and targetPort are required", usage=USAGE
        )
    for name in ("port", "target_port"):
        value = getattr(args, name)
        if not 0 < value < 65536:
            raise ConfigError(f"{name} out of range: {value}", usage=USAGE)
    if args.delay_time <= 0:
        raise ConfigError(
            f"delayTime must be positive: {args.delay_time}", usage=USAGE
        )
    if args.http_protocol.lower() not in SUPPORTED_PROTOCOLS:
        raise ConfigError(
            f"unsupported httpProtocol: {args.http_protocol}", usage=USAGE
        )
    # dashboard 转发需要 serviceAccount 才能获取 token
    if "dashboard" in args.pod_name and not args.service_account:
        raise ConfigError(
            "serviceAccount is required for dashboard proxy", usage=USAGE
        )


def load_config(argv: Sequence[str] | None = None) -> Config:
    """从命令行参数和环境变量加载配置。

    Args:
        argv: 命令行参数（不含程序名），None 表示 sys.argv[1:]

    Raises:
        ConfigError: 缺少必填参数或取值非法
    """
    args = _build_parser().parse_args(argv)
    _validate(args)

    log_debug = _parse_bool(os.environ.get("KPROXY_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    if args.insecure is None:
        insecure = _parse_bool(os.environ.get("KPROXY_INSECURE"), default=False)
    else:
        insecure = _parse_bool_flag("insecure", args.insecure)

    return Config(
        host_ip=args.host_ip,
        port=args.port,
        pod_name=args.pod_name,
        target_port=args.target_port,
        is_open=_parse_bool_flag("isOpen", args.is_open),
        namespace=args.namespace,
        service_account=args.service_account,
        delay_time=args.delay_time,
        http_protocol=args.http_protocol.lower(),
        insecure=insecure,
        kubectl=args.kubectl or os.environ.get("KPROXY_KUBECTL") or "kubectl",
        log_debug=log_debug,
        log_file=log_file,
    )
