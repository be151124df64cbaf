"""
Execution coordinator.

Runs authorized commands one at a time per slot. Every execution gets a
deadline of ``exec_timeout``; when it expires (or the user cancels) the process
group receives SIGINT, and if it is still alive ``exit_timeout`` after that
request it is killed with SIGKILL. After the process exits, children still
holding the output pipe get ``exit_timeout`` to release it before the process
group is killed.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import os
import signal
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from core.auth import AuthorizedCommand
from utils.helpers import format_duration

logger = logging.getLogger(__name__)

# Time allowed for the output pipe to reach EOF after the process was killed.
PIPE_DRAIN_GRACE_SECONDS = 1.0
READ_CHUNK_SIZE = 64 * 1024
EXIT_POLL_INTERVAL_SECONDS = 0.05

REASON_TIMEOUT = "timeout"
REASON_CANCEL = "cancel"
REASON_SHUTDOWN = "shutdown"


class SlotBusyError(RuntimeError):
    """The command slot already has an execution in flight."""


class ExecutionError(Exception):
    """Base class for failures reported back to the user with the output."""


class SpawnError(ExecutionError):
    """The process could not be started."""


def describe_returncode(returncode: int) -> str:
    if returncode < 0:
        try:
            return f"signal: {signal.Signals(-returncode).name}"
        except ValueError:
            return f"signal: {-returncode}"
    return f"exit status {returncode}"


class ExitStatusError(ExecutionError):
    """The process exited unsuccessfully on its own."""

    def __init__(self, returncode: int):
        super().__init__(describe_returncode(returncode))
        self.returncode = returncode


class OutputNotClosedError(ExecutionError):
    """The process exited but its output pipe stayed open (held by a child)."""

    def __init__(self, returncode: int, exit_timeout: float):
        super().__init__(
            f"output still open {format_duration(exit_timeout)} after exit ({describe_returncode(returncode)})"
        )
        self.returncode = returncode


class CommandInterrupted(ExecutionError):
    """The process was interrupted by timeout, cancellation or shutdown."""

    def __init__(
        self,
        reason: str,
        returncode: Optional[int] = None,
        killed: bool = False,
        exec_timeout: float = 0.0,
        exit_timeout: float = 0.0,
    ):
        if reason == REASON_TIMEOUT:
            message = f"command timed out after {format_duration(exec_timeout)}"
        elif reason == REASON_SHUTDOWN:
            message = "command interrupted by shutdown"
        else:
            message = "command canceled"
        if killed:
            message += f", killed after {format_duration(exit_timeout)}"
        elif returncode is not None:
            message += f" ({describe_returncode(returncode)})"
        super().__init__(message)
        self.reason = reason
        self.returncode = returncode
        self.killed = killed

    @property
    def timed_out(self) -> bool:
        return self.reason == REASON_TIMEOUT


class CancelHandle:
    """Cancellation handle of one in-flight execution.

    Calling it requests an interrupt. Only the first call has an effect; later
    calls return False.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None
        self.requested_at: Optional[float] = None

    def __call__(self, reason: str = REASON_CANCEL) -> bool:
        if self._event.is_set():
            return False
        self.reason = reason
        self.requested_at = asyncio.get_running_loop().time()
        self._event.set()
        return True

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class ExecutionResult:
    """Outcome of one execution, detached from the slot."""

    output: bytes
    error: Optional[ExecutionError] = None
    returncode: Optional[int] = None
    duration: float = 0.0


class ExecutionCoordinator:
    """Single-flight execution of authorized commands.

    Executions run in their own tasks so they survive cancellation of the
    update handler that started them; ``wait`` joins all of them.
    """

    def __init__(self, interrupt_signal: int = signal.SIGINT):
        self.interrupt_signal = interrupt_signal
        self._running: Dict[asyncio.Task, CancelHandle] = {}

    @property
    def running_count(self) -> int:
        return len(self._running)

    async def execute(self, command: AuthorizedCommand, user_id: Optional[str] = None) -> ExecutionResult:
        """
        Run *command* and return its result.

        Raises SlotBusyError without touching the slot if the command is
        already running.
        """
        # Claim: test and set with no await in between.
        if command.cancel_handle is not None:
            raise SlotBusyError(command.name)
        handle = CancelHandle()
        command.cancel_handle = handle

        task = asyncio.create_task(self._run(command, handle, user_id))
        self._running[task] = handle
        task.add_done_callback(functools.partial(self._on_done, command, handle))
        return await asyncio.shield(task)

    def cancel(self, command: AuthorizedCommand) -> bool:
        """Request interrupt of the in-flight execution; False if none is running."""
        handle = command.cancel_handle
        if handle is None:
            return False
        if handle(REASON_CANCEL):
            logger.info("Cancel requested for %s", command.display())
        return True

    def interrupt_all(self) -> int:
        """Request interrupt of every in-flight execution (shutdown path)."""
        count = 0
        for handle in list(self._running.values()):
            if handle(REASON_SHUTDOWN):
                count += 1
        if count:
            logger.info("Interrupting %d running command(s)", count)
        return count

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for all outstanding executions. Returns False on timeout."""
        tasks = set(self._running)
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending

    # ── internals ──

    def _on_done(self, command: AuthorizedCommand, handle: CancelHandle, task: asyncio.Task) -> None:
        self._running.pop(task, None)
        # Covers tasks cancelled before their body ran.
        self._release(command, handle)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Execution task for %s crashed", command.display(), exc_info=task.exception())

    @staticmethod
    def _release(command: AuthorizedCommand, handle: CancelHandle) -> None:
        if command.cancel_handle is handle:
            command.output.clear()
            command.cancel_handle = None

    async def _run(self, command: AuthorizedCommand, handle: CancelHandle, user_id: Optional[str]) -> ExecutionResult:
        logger.info("Executing %s for user=%s", command.display(), user_id)
        start = time.monotonic()
        returncode: Optional[int] = None
        error: Optional[ExecutionError] = None
        try:
            returncode, error = await self._run_process(command, handle)
        except Exception as e:
            logger.warning("Unexpected error running %s", command.display(), exc_info=True)
            error = ExecutionError(f"execution failed: {e}")
        finally:
            output = bytes(command.output)
            self._release(command, handle)

        duration = time.monotonic() - start
        if error is not None:
            logger.warning(
                "Command %s for user=%s failed after %.2fs: %s",
                command.display(), user_id, duration, error,
            )
        else:
            logger.info(
                "Command %s for user=%s finished in %.2fs (%d bytes)",
                command.display(), user_id, duration, len(output),
            )
        return ExecutionResult(output=output, error=error, returncode=returncode, duration=duration)

    async def _run_process(
        self, command: AuthorizedCommand, handle: CancelHandle
    ) -> Tuple[Optional[int], Optional[ExecutionError]]:
        loop = asyncio.get_running_loop()
        try:
            process = await asyncio.create_subprocess_exec(
                *command.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            return None, SpawnError(f"failed to start {command.name}: {e.strerror or e}")

        reader = asyncio.create_task(self._collect_output(process.stdout, command.output))
        exited = asyncio.create_task(self._wait_exit(process))
        interrupt = asyncio.create_task(handle.wait())
        interrupted = killed = output_closed = False
        try:
            await asyncio.wait(
                {exited, interrupt},
                timeout=command.exec_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if not exited.done():
                handle(REASON_TIMEOUT)
                interrupted = True
                self._signal(process, self.interrupt_signal)

                # Kill exactly exit_timeout after the interrupt was requested,
                # whichever trigger requested it.
                remaining = max(0.0, handle.requested_at + command.exit_timeout - loop.time())
                done, _ = await asyncio.wait({exited}, timeout=remaining)
                if not done:
                    killed = True
                    logger.warning(
                        "Command %s did not exit within %s of interrupt, killing",
                        command.display(), format_duration(command.exit_timeout),
                    )
                    self._signal(process, signal.SIGKILL)
                    await exited

            # Background children may still hold the output pipe open.
            drain_timeout = PIPE_DRAIN_GRACE_SECONDS if killed else command.exit_timeout
            output_closed = await self._drain_output(command, process, reader, drain_timeout)
        finally:
            for task in (interrupt, exited, reader):
                if not task.done():
                    task.cancel()
            await asyncio.gather(interrupt, exited, reader, return_exceptions=True)
            if process.returncode is None:
                self._signal(process, signal.SIGKILL)
                await self._wait_exit(process)

        returncode = process.returncode
        if interrupted:
            return returncode, CommandInterrupted(
                handle.reason or REASON_TIMEOUT,
                returncode=returncode,
                killed=killed,
                exec_timeout=command.exec_timeout,
                exit_timeout=command.exit_timeout,
            )
        if not output_closed:
            return returncode, OutputNotClosedError(returncode, command.exit_timeout)
        if returncode:
            return returncode, ExitStatusError(returncode)
        return returncode, None

    async def _drain_output(
        self,
        command: AuthorizedCommand,
        process: asyncio.subprocess.Process,
        reader: asyncio.Task,
        timeout: float,
    ) -> bool:
        """Wait for EOF on the output pipe after the process exited.

        Returns False if the pipe was still open after *timeout*; the process
        group is killed in that case.
        """
        done, _ = await asyncio.wait({reader}, timeout=timeout)
        if done:
            return True
        logger.warning(
            "Output of %s still open %s after exit, killing process group",
            command.display(), format_duration(timeout),
        )
        self._signal(process, signal.SIGKILL)
        done, _ = await asyncio.wait({reader}, timeout=PIPE_DRAIN_GRACE_SECONDS)
        if not done:
            reader.cancel()
        return False

    @staticmethod
    async def _wait_exit(process: asyncio.subprocess.Process) -> int:
        """Wait for the process itself to exit.

        ``Process.wait`` also waits for the pipes to close, which a background
        child can hold open indefinitely.
        """
        while process.returncode is None:
            await asyncio.sleep(EXIT_POLL_INTERVAL_SECONDS)
        return process.returncode

    @staticmethod
    async def _collect_output(stream: asyncio.StreamReader, buffer: bytearray) -> None:
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                return
            buffer.extend(chunk)

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, sig: int) -> None:
        """Signal the process group of *process*, falling back to the process itself."""
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning("Failed to signal process group %s: %s", process.pid, e)
            try:
                process.send_signal(sig)
            except ProcessLookupError:
                pass
