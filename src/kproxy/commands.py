"""kubectl 命令构造。

生成交给 /bin/sh 解释执行的命令字符串，pod 与 secret 名称通过
`kubectl get ... | grep ... | awk` 在 shell 中解析。
"""

from __future__ import annotations

import shlex

from .config import Config

__all__ = ["LISTEN_FAILURE_MARKER", "port_forward_command", "token_command"]

# 端口转发监听失败时 kubectl 输出的关键字
LISTEN_FAILURE_MARKER = "Unable to listen"


def port_forward_command(config: Config) -> str:
    """构造端口转发命令。"""
    kubectl = shlex.quote(config.kubectl)
    namespace = shlex.quote(config.namespace)
    pod = shlex.quote(config.pod_name)

    address = "--address 0.0.0.0 " if config.is_open else ""
    return (
        f"{kubectl} port-forward {address}"
        f"$({kubectl} get pods -n {namespace} | grep -e {pod} | awk '{{print $1}}') "
        f"{config.port}:{config.target_port} -n {namespace}"
    )


def token_command(config: Config) -> str:
    """构造获取 dashboard serviceAccount token 的命令。"""
    kubectl = shlex.quote(config.kubectl)
    namespace = shlex.quote(config.namespace)
    secret = shlex.quote(f"{config.service_account}-token")

    return (
        f"{kubectl} describe secret "
        f"$({kubectl} get secret -n {namespace} | grep -e {secret} | awk '{{print $1}}') "
        f"-n {namespace} | awk '/^token:/{{print $2}}'"
    )
