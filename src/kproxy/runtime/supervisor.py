"""Process supervisor with a line-streaming notification channel.

kproxy runtime module

This module provides:
- Supervision of one long-running shell command per invocation
- Stdout relayed line by line through an anyio memory object stream
- Exactly one terminal notification before the channel closes
- Reliable termination of the child's process group on cancellation

Notification sequence for a supervised command:
    LINE*  [OUTPUT_ERROR]  [WAIT_FAILURE]  (STDERR | STDERR_READ_FAILURE | FINISHED)

or a single SPAWN_FAILURE when the command could not be started.

Stderr is drained concurrently while stdout streams, so a child writing a lot
of diagnostics cannot block on a full pipe. Its content is only surfaced after
the process exits.

Non-empty stderr replaces the FINISHED sentinel even when the exit status is
0. Plenty of CLIs write warnings to stderr on success; those runs are reported
through a STDERR notification all the same.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import signal
from dataclasses import dataclass
from enum import Enum

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import BaseModel, ConfigDict

from ..errors import CommandError

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

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "/bin/sh"
DEFAULT_LINE_LIMIT = 64 * 1024  # longest stdout line accepted, in bytes
DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL

FINISH_SENTINEL = "command exec finish"


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a shell command to run.

    Attributes:
        command: Command line interpreted by the shell
        shell: Shell executable, invoked as ``shell -c command``
    """

    command: str
    shell: str = DEFAULT_SHELL

    @property
    def argv(self) -> list[str]:
        return [self.shell, "-c", self.command]


class NotificationKind(str, Enum):
    """What a notification reports."""

    LINE = "line"
    SPAWN_FAILURE = "spawn_failure"
    OUTPUT_ERROR = "output_error"
    WAIT_FAILURE = "wait_failure"
    STDERR = "stderr"
    STDERR_READ_FAILURE = "stderr_read_failure"
    FINISHED = "finished"


TERMINAL_KINDS = frozenset({
    NotificationKind.SPAWN_FAILURE,
    NotificationKind.STDERR,
    NotificationKind.STDERR_READ_FAILURE,
    NotificationKind.FINISHED,
})


class Notification(BaseModel):
    """One message on the notification channel.

    Attributes:
        kind: What the message reports
        text: Text shown to the operator (stdout lines keep their terminator)
    """

    model_config = ConfigDict(frozen=True)

    kind: NotificationKind
    text: str

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS


class SupervisorState(Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    STREAMING_OUTPUT = "streaming_output"
    WAITING = "waiting"
    DRAINING_STDERR = "draining_stderr"
    FAILURE_REPORTED = "failure_reported"
    COMPLETED = "completed"
    CLOSED = "closed"


def create_channel() -> tuple[
    MemoryObjectSendStream[Notification],
    MemoryObjectReceiveStream[Notification],
]:
    """Create an unbounded, ordered notification channel."""
    return anyio.create_memory_object_stream(max_buffer_size=math.inf)


def _describe_exit(returncode: int) -> str:
    if returncode < 0:
        try:
            return f"signal: {signal.Signals(-returncode).name}"
        except ValueError:
            return f"signal: {-returncode}"
    return f"exit status {returncode}"


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


class ProcessSupervisor:
    """Runs one shell command and relays its output as notifications.

    The supervisor owns the send side of the channel and closes it when
    ``run()`` returns, whichever way it returns. Subprocess failures are
    reported as notifications and never raised.

    Example:
        send_stream, receive_stream = create_channel()
        supervisor = ProcessSupervisor(ProcessSpec("kubectl port-forward ..."), send_stream)

        async with anyio.create_task_group() as tg:
            tg.start_soon(supervisor.run)
            async with receive_stream:
                async for notification in receive_stream:
                    print(notification.text, end="")
    """

    def __init__(
        self,
        spec: ProcessSpec,
        send_stream: MemoryObjectSendStream[Notification],
        *,
        line_limit: int = DEFAULT_LINE_LIMIT,
        term_timeout: float = DEFAULT_TERM_TIMEOUT,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
    ) -> None:
        self.spec = spec
        self.line_limit = line_limit
        self.term_timeout = term_timeout
        self.kill_timeout = kill_timeout
        self.returncode: int | None = None
        self._send_stream = send_stream
        self._state = SupervisorState.NOT_STARTED
        self._consumer_gone = False

    @property
    def state(self) -> SupervisorState:
        return self._state

    def _transition(self, state: SupervisorState) -> None:
        logger.debug(f"Supervisor state {self._state.value} -> {state.value}")
        self._state = state

    async def run(self) -> None:
        """Supervise the command to completion, then close the channel.

        Cancelling the calling task terminates the child's process group.
        """
        if self._state is not SupervisorState.NOT_STARTED:
            raise RuntimeError("ProcessSupervisor.run() can only be called once")

        try:
            async with self._send_stream:
                await self._supervise()
        finally:
            self._transition(SupervisorState.CLOSED)

    async def _supervise(self) -> None:
        self._transition(SupervisorState.STARTING)
        logger.info(f"Running command: {self.spec.argv}")

        try:
            process = await asyncio.create_subprocess_exec(
                *self.spec.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.line_limit,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to start command {self.spec.argv}: {e}")
            self._transition(SupervisorState.FAILURE_REPORTED)
            await self._emit(NotificationKind.SPAWN_FAILURE, f"command start error: {e}\n")
            return

        logger.debug(f"Started subprocess pid={process.pid}")

        tasks: list[asyncio.Task[bytes]] = []
        stderr_task = asyncio.create_task(self._drain(process.stderr))
        tasks.append(stderr_task)

        try:
            self._transition(SupervisorState.STREAMING_OUTPUT)
            if not await self._stream_stdout(process):
                # Keep the pipe moving so the child can still exit.
                tasks.append(asyncio.create_task(self._drain(process.stdout)))

            self._transition(SupervisorState.WAITING)
            self.returncode = await process.wait()
            logger.debug(
                f"Subprocess exited pid={process.pid} returncode={self.returncode}"
            )
            wait_failed = self.returncode != 0
            if wait_failed:
                await self._emit(
                    NotificationKind.WAIT_FAILURE,
                    f"command wait error: {_describe_exit(self.returncode)}\n",
                )

            self._transition(SupervisorState.DRAINING_STDERR)
            try:
                stderr = await stderr_task
            except OSError as e:
                self._transition(SupervisorState.FAILURE_REPORTED)
                await self._emit(
                    NotificationKind.STDERR_READ_FAILURE, f"read stderr error: {e}\n"
                )
                return

            if stderr:
                self._transition(SupervisorState.FAILURE_REPORTED)
                await self._emit(NotificationKind.STDERR, _decode(stderr))
                return

            # The sentinel still ends the stream after a reported wait failure.
            if wait_failed:
                self._transition(SupervisorState.FAILURE_REPORTED)
            else:
                self._transition(SupervisorState.COMPLETED)
            await self._emit(NotificationKind.FINISHED, FINISH_SENTINEL)

        finally:
            with anyio.CancelScope(shield=True):
                await self._cleanup(process, tasks)

    async def _stream_stdout(self, process: asyncio.subprocess.Process) -> bool:
        """Forward stdout lines until end of stream.

        Returns:
            True on end of stream, False when reading failed
        """
        assert process.stdout is not None

        while True:
            try:
                line = await process.stdout.readline()
            except (ValueError, OSError) as e:
                # ValueError: line longer than line_limit
                logger.warning(f"Reading stdout failed pid={process.pid}: {e}")
                await self._emit(NotificationKind.OUTPUT_ERROR, f"stdout error: {e}\n")
                return False

            if not line:
                logger.debug(f"Stdout reached end of stream pid={process.pid}")
                return True

            await self._emit(NotificationKind.LINE, _decode(line))

    async def _drain(self, stream: asyncio.StreamReader | None) -> bytes:
        """Read a stream to the end.

        Args:
            stream: The subprocess pipe

        Returns:
            Everything read from the stream
        """
        chunks: list[bytes] = []

        if stream:
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    break
                chunks.append(chunk)

        return b"".join(chunks)

    async def _emit(self, kind: NotificationKind, text: str) -> None:
        if self._consumer_gone:
            return
        try:
            await self._send_stream.send(Notification(kind=kind, text=text))
        except anyio.BrokenResourceError:
            self._consumer_gone = True
            logger.info("Notification consumer closed the channel, output is dropped from now on")

    async def _cleanup(
        self,
        process: asyncio.subprocess.Process,
        tasks: list[asyncio.Task[bytes]],
    ) -> None:
        """Cancel pending pipe readers and terminate the child if still running.

        Args:
            process: The subprocess
            tasks: Pipe draining tasks
        """
        for task in tasks:
            if not task.done():
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, OSError):
                    pass
            elif not task.cancelled() and task.exception() is not None:
                logger.debug(f"Pipe reader failed: {task.exception()}")

        if process.returncode is None:
            await self._terminate_process(process)

    async def _terminate_process(self, process: asyncio.subprocess.Process) -> None:
        """Terminate the child's process group: SIGTERM, then SIGKILL.

        Args:
            process: The subprocess to terminate
        """
        pid = process.pid
        logger.debug(f"Terminating subprocess pid={pid}")

        try:
            self._signal_group(process, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.term_timeout)
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={process.returncode}"
                )
                return
            except asyncio.TimeoutError:
                pass

            logger.debug(f"Force killing subprocess pid={pid}")
            self._signal_group(process, signal.SIGKILL)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")

        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        try:
            # pgid equals pid because of start_new_session
            os.killpg(os.getpgid(process.pid), sig)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, signalling the process only: {e}")
            process.send_signal(sig)


async def run_command(spec: ProcessSpec) -> str:
    """Run a shell command to completion and return its stdout.

    Args:
        spec: Command specification

    Returns:
        Decoded stdout

    Raises:
        CommandError: The command could not start, wrote to stderr,
            or exited with a non-zero status
    """
    logger.info(f"Running command: {spec.argv}")
    try:
        process = await asyncio.create_subprocess_exec(
            *spec.argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise CommandError(spec.command, f"command start error: {e}") from e

    try:
        stdout, stderr = await process.communicate()
    finally:
        if process.returncode is None:
            process.kill()
            with anyio.CancelScope(shield=True):
                await process.wait()

    if stderr:
        text = _decode(stderr)
        raise CommandError(spec.command, text, process.returncode, text)
    if process.returncode != 0:
        raise CommandError(
            spec.command,
            f"command wait error: {_describe_exit(process.returncode)}",
            process.returncode,
        )
    return _decode(stdout)
