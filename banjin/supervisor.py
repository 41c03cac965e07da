"""Run one confirmed tool call under a cancel-key / timeout race.

Three branches compete: the tool invocation, an ESC key press, and a timer.
The first one to settle decides the outcome; the losers are cancelled and not
awaited any further.

Cancellation is cooperative. A tool running in a worker thread (a plain sync
function) cannot be interrupted, so it may keep running in the background
after ``execute`` has already returned ``CANCELLED`` or ``TIMED_OUT``.
"""

import os
import json
import sys
import time
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple

from .errors import FailureKind

try:
    import termios
    import tty
except ImportError:  # not available on Windows
    termios = None
    tty = None

logger = logging.getLogger(__name__)

ESCAPE = b"\x1b"


class ToolStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass
class ToolResult:
    status: ToolStatus
    content: str
    duration: float = 0.0

    @property
    def failure_kind(self) -> Optional[FailureKind]:
        return {
            ToolStatus.CANCELLED: FailureKind.TOOL_CANCELLED,
            ToolStatus.TIMED_OUT: FailureKind.TOOL_TIMED_OUT,
            ToolStatus.FAILED: FailureKind.TOOL_EXECUTION_FAILED,
        }.get(self.status)

    @property
    def ok(self) -> bool:
        return self.status is ToolStatus.COMPLETED

    def to_message(self, tool_call_id: str, name: str) -> Dict[str, Any]:
        return {
            "role": "tool",
            "tool_call_id": tool_call_id,
            "name": name,
            "content": self.content,
        }


class CancelKeyListener:
    """Turns a key press on a terminal fd into a resolved future.

    ``listen()`` switches the fd to cbreak mode for the lifetime of the
    ``async with`` block and always restores the saved attributes on exit.
    When the fd is not a terminal the future simply never resolves.
    """

    def __init__(self, fd: Optional[int] = None, key: bytes = ESCAPE):
        self._fd = fd
        self.key = key

    @property
    def fd(self) -> int:
        return sys.stdin.fileno() if self._fd is None else self._fd

    def available(self) -> bool:
        if termios is None or os.name != "posix":
            return False
        try:
            return os.isatty(self.fd)
        except (OSError, ValueError):
            return False

    @asynccontextmanager
    async def listen(self) -> AsyncIterator["asyncio.Future[bool]"]:
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[bool] = loop.create_future()

        if not self.available():
            try:
                yield fut
            finally:
                fut.cancel()
            return

        fd = self.fd
        old = termios.tcgetattr(fd)

        def _on_stdin_ready() -> None:
            try:
                ch = os.read(fd, 1)
            except OSError:
                ch = b""
            if ch == self.key and not fut.done():
                fut.set_result(True)

        try:
            tty.setcbreak(fd)
            loop.add_reader(fd, _on_stdin_ready)
            yield fut
        finally:
            fut.cancel()
            loop.remove_reader(fd)
            termios.tcsetattr(fd, termios.TCSADRAIN, old)


def _format_seconds(seconds: float) -> str:
    return f"{seconds:g}"


class ToolExecutionSupervisor:
    def __init__(self, listener: Optional[CancelKeyListener] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.listener = listener or CancelKeyListener()
        self.sleep = sleep

    async def execute(self, invoker: Callable[[Dict[str, Any]], Awaitable[Any]],
                      args: Dict[str, Any], timeout_seconds: float) -> ToolResult:
        start = time.monotonic()
        async with self.listener.listen() as cancelled:
            tool_task = asyncio.ensure_future(invoker(args))
            branches = {tool_task, cancelled}
            if timeout_seconds and timeout_seconds > 0:
                branches.add(asyncio.ensure_future(self.sleep(timeout_seconds)))

            try:
                done, _ = await asyncio.wait(branches, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for branch in branches:
                    if not branch.done():
                        branch.cancel()

        duration = time.monotonic() - start

        # a tool that settled in the same tick still counts as finished
        if tool_task in done:
            try:
                value = tool_task.result()
            except asyncio.CancelledError:
                return ToolResult(ToolStatus.CANCELLED, "Tool execution was cancelled by the user.", duration)
            except Exception as e:
                logger.debug("Tool raised", exc_info=True)
                return ToolResult(ToolStatus.FAILED, f"Error: {e}", duration)
            return ToolResult(ToolStatus.COMPLETED, self._stringify(value), duration)

        if cancelled in done:
            logger.info("Tool execution cancelled by user after %.2fs", duration)
            return ToolResult(ToolStatus.CANCELLED, "Tool execution was cancelled by the user.", duration)

        logger.info("Tool execution timed out after %ss", _format_seconds(timeout_seconds))
        return ToolResult(
            ToolStatus.TIMED_OUT,
            f"Tool execution timed out after {_format_seconds(timeout_seconds)} seconds. "
            "Consider increasing the tool timeout (/timeout) or set it to 0 to disable.",
            duration,
        )

    async def race_cancel(self, awaitable: Awaitable[Any]) -> Tuple[bool, Any]:
        """Await ``awaitable`` unless the cancel key comes first.

        Returns ``(True, None)`` on cancel, otherwise ``(False, value)``.
        """
        async with self.listener.listen() as cancelled:
            task = asyncio.ensure_future(awaitable)
            try:
                done, _ = await asyncio.wait({task, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                if not task.done():
                    task.cancel()
        if task in done:
            return False, task.result()
        return True, None

    @staticmethod
    def _stringify(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        try:
            return json.dumps(value, indent=2, ensure_ascii=False)
        except (TypeError, ValueError):
            return str(value)
