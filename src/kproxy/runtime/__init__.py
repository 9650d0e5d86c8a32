"""Runtime module for subprocess supervision and output streaming.

This module runs the port-forward command as a supervised child process and
relays its output through a notification channel.
"""

from __future__ import annotations

from .supervisor import (
    FINISH_SENTINEL,
    Notification,
    NotificationKind,
    ProcessSpec,
    ProcessSupervisor,
    SupervisorState,
    create_channel,
    run_command,
)

__all__ = [
    "FINISH_SENTINEL",
    "Notification",
    "NotificationKind",
    "ProcessSpec",
    "ProcessSupervisor",
    "SupervisorState",
    "create_channel",
    "run_command",
]
