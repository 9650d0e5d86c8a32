"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from kproxy.config import Config  # noqa: E402


@pytest.fixture
def base_config() -> Config:
    """最小可用配置，探活间隔足够长以免测试期间触发。"""
    return Config(
        host_ip="192.168.8.100",
        port=8082,
        pod_name="monitoring-grafana",
        target_port=3000,
        namespace="prom",
        delay_time=3600,
    )
