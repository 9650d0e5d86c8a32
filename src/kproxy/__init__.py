"""kproxy - 长期保持的 kubectl 端口转发。

用法:
    kproxy --hostIP=192.168.8.100 --port=8082 --podName=monitoring-grafana --targetPort=3000 --namespace=prom
"""

__version__ = "0.1.0"

from .app import main

__all__ = ["__version__", "main"]
