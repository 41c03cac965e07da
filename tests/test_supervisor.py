import os
import sys
import json
import asyncio
import pathlib
import unittest
from contextlib import asynccontextmanager

_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from banjin.errors import FailureKind
from banjin.supervisor import CancelKeyListener, ToolExecutionSupervisor, ToolStatus

try:
    import termios
except ImportError:
    termios = None


class _FakeListener:
    """Stands in for the terminal: 'presses' the cancel key after ``fire_after`` seconds."""

    def __init__(self, fire_after=None):
        self.fire_after = fire_after
        self.active = False
        self.exits = 0

    @asynccontextmanager
    async def listen(self):
        loop = asyncio.get_running_loop()
        fut = loop.create_future()
        handle = None
        if self.fire_after is not None:
            handle = loop.call_later(self.fire_after, lambda: fut.done() or fut.set_result(True))
        self.active = True
        try:
            yield fut
        finally:
            if handle is not None:
                handle.cancel()
            fut.cancel()
            self.active = False
            self.exits += 1


class _HangingTool:
    def __init__(self):
        self.cancelled = False

    async def __call__(self, args):
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


async def _instant_sleep(_seconds):
    return None


class TestToolExecutionSupervisor(unittest.IsolatedAsyncioTestCase):

    async def test_completed(self):
        async def tool(args):
            return f"hello {args['name']}"

        result = await ToolExecutionSupervisor(listener=_FakeListener()).execute(tool, {"name": "x"}, 300)
        self.assertEqual(result.status, ToolStatus.COMPLETED)
        self.assertEqual(result.content, "hello x")
        self.assertTrue(result.ok)
        self.assertIsNone(result.failure_kind)

    async def test_structured_result_is_serialized(self):
        async def tool(args):
            return {"rows": [1, 2]}

        result = await ToolExecutionSupervisor(listener=_FakeListener()).execute(tool, {}, 300)
        self.assertEqual(json.loads(result.content), {"rows": [1, 2]})

    async def test_cancel_beats_hanging_tool(self):
        listener = _FakeListener(fire_after=0.01)
        tool = _HangingTool()
        result = await ToolExecutionSupervisor(listener=listener).execute(tool, {}, 300)
        self.assertEqual(result.status, ToolStatus.CANCELLED)
        self.assertEqual(result.failure_kind, FailureKind.TOOL_CANCELLED)
        self.assertEqual(result.content, "Tool execution was cancelled by the user.")
        self.assertFalse(listener.active)
        await asyncio.sleep(0.01)
        self.assertTrue(tool.cancelled)

    async def test_timeout(self):
        tool = _HangingTool()
        supervisor = ToolExecutionSupervisor(listener=_FakeListener(), sleep=_instant_sleep)
        result = await supervisor.execute(tool, {}, 5)
        self.assertEqual(result.status, ToolStatus.TIMED_OUT)
        self.assertEqual(result.failure_kind, FailureKind.TOOL_TIMED_OUT)
        self.assertIn("timed out after 5 seconds", result.content)
        self.assertIn("/timeout", result.content)
        await asyncio.sleep(0.01)
        self.assertTrue(tool.cancelled)

    async def test_real_timer(self):
        result = await ToolExecutionSupervisor(listener=_FakeListener()).execute(_HangingTool(), {}, 0.05)
        self.assertEqual(result.status, ToolStatus.TIMED_OUT)
        self.assertIn("0.05 seconds", result.content)

    async def test_zero_timeout_disables_timer(self):
        sleeps = []

        async def recording_sleep(seconds):
            sleeps.append(seconds)

        async def slow_tool(args):
            await asyncio.sleep(0.05)
            return "finished"

        supervisor = ToolExecutionSupervisor(listener=_FakeListener(), sleep=recording_sleep)
        result = await supervisor.execute(slow_tool, {}, 0)
        self.assertEqual(result.status, ToolStatus.COMPLETED)
        self.assertEqual(result.content, "finished")
        self.assertEqual(sleeps, [])

    async def test_cancel_beats_long_timeout(self):
        supervisor = ToolExecutionSupervisor(listener=_FakeListener(fire_after=0.01))
        result = await supervisor.execute(_HangingTool(), {}, 3600)
        self.assertEqual(result.status, ToolStatus.CANCELLED)

    async def test_tool_exception_is_failed(self):
        async def broken(args):
            raise RuntimeError("boom")

        listener = _FakeListener()
        result = await ToolExecutionSupervisor(listener=listener).execute(broken, {}, 300)
        self.assertEqual(result.status, ToolStatus.FAILED)
        self.assertEqual(result.failure_kind, FailureKind.TOOL_EXECUTION_FAILED)
        self.assertEqual(result.content, "Error: boom")
        self.assertEqual(listener.exits, 1)

    async def test_result_message_shape(self):
        async def tool(args):
            return "ok"

        result = await ToolExecutionSupervisor(listener=_FakeListener()).execute(tool, {}, 300)
        message = result.to_message("call_0", "run_command")
        self.assertEqual(message, {"role": "tool", "tool_call_id": "call_0", "name": "run_command", "content": "ok"})

    async def test_race_cancel(self):
        async def answer():
            return 42

        supervisor = ToolExecutionSupervisor(listener=_FakeListener())
        self.assertEqual(await supervisor.race_cancel(answer()), (False, 42))

        tool = _HangingTool()
        supervisor = ToolExecutionSupervisor(listener=_FakeListener(fire_after=0.01))
        self.assertEqual(await supervisor.race_cancel(tool({})), (True, None))
        await asyncio.sleep(0.01)
        self.assertTrue(tool.cancelled)


class TestCancelKeyListener(unittest.IsolatedAsyncioTestCase):

    async def test_not_a_terminal_never_fires(self):
        read_fd, write_fd = os.pipe()
        try:
            listener = CancelKeyListener(fd=read_fd)
            self.assertFalse(listener.available())
            async with listener.listen() as fut:
                await asyncio.sleep(0.01)
                self.assertFalse(fut.done())
        finally:
            os.close(read_fd)
            os.close(write_fd)

    @unittest.skipUnless(termios is not None and hasattr(os, "openpty"), "needs a POSIX pty")
    async def test_escape_on_pty_cancels_and_restores_terminal(self):
        master, slave = os.openpty()
        try:
            before = termios.tcgetattr(slave)
            listener = CancelKeyListener(fd=slave)
            self.assertTrue(listener.available())

            asyncio.get_running_loop().call_later(0.05, os.write, master, b"\x1b")
            tool = _HangingTool()
            result = await ToolExecutionSupervisor(listener=listener).execute(tool, {}, 10)

            self.assertEqual(result.status, ToolStatus.CANCELLED)
            self.assertEqual(termios.tcgetattr(slave), before)
        finally:
            os.close(master)
            os.close(slave)

    @unittest.skipUnless(termios is not None and hasattr(os, "openpty"), "needs a POSIX pty")
    async def test_other_keys_are_ignored(self):
        master, slave = os.openpty()
        try:
            before = termios.tcgetattr(slave)
            listener = CancelKeyListener(fd=slave)
            os.write(master, b"q")

            async def tool(args):
                await asyncio.sleep(0.05)
                return "done"

            result = await ToolExecutionSupervisor(listener=listener).execute(tool, {}, 10)
            self.assertEqual(result.status, ToolStatus.COMPLETED)
            self.assertEqual(termios.tcgetattr(slave), before)
        finally:
            os.close(master)
            os.close(slave)

    @unittest.skipUnless(termios is not None and hasattr(os, "openpty"), "needs a POSIX pty")
    async def test_timeout_on_pty_restores_terminal(self):
        master, slave = os.openpty()
        try:
            before = termios.tcgetattr(slave)
            result = await ToolExecutionSupervisor(listener=CancelKeyListener(fd=slave)).execute(
                _HangingTool(), {}, 0.05)
            self.assertEqual(result.status, ToolStatus.TIMED_OUT)
            self.assertEqual(termios.tcgetattr(slave), before)
        finally:
            os.close(master)
            os.close(slave)

    @unittest.skipUnless(termios is not None and hasattr(os, "openpty"), "needs a POSIX pty")
    async def test_failing_tool_on_pty_restores_terminal(self):
        master, slave = os.openpty()
        try:
            before = termios.tcgetattr(slave)

            async def broken(args):
                await asyncio.sleep(0.01)
                raise OSError("disk on fire")

            result = await ToolExecutionSupervisor(listener=CancelKeyListener(fd=slave)).execute(broken, {}, 10)
            self.assertEqual(result.status, ToolStatus.FAILED)
            self.assertEqual(result.content, "Error: disk on fire")
            self.assertEqual(termios.tcgetattr(slave), before)
        finally:
            os.close(master)
            os.close(slave)


if __name__ == "__main__":
    unittest.main()
