import sys
import json
import pathlib
import tempfile
import unittest

_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from banjin.registry import ToolRegistry
from banjin.tools import (
    BUILTIN_DEFINITIONS, BuiltinTools, LocalCommandRunner, MAX_OUTPUT_SIZE,
    handle_large_output, parse_df, parse_ps, parse_systemctl_status, register_builtin_tools,
)

DF_OUTPUT = """Filesystem      Size  Used Avail Use% Mounted on
/dev/sda1        50G   20G   28G  42% /
tmpfs           3.9G     0  3.9G   0% /dev/shm
"""

PS_OUTPUT = """USER         PID %CPU %MEM    VSZ   RSS TTY      STAT START   TIME COMMAND
root           1  0.0  0.1 169316 13200 ?        Ss   Oct18   0:03 /sbin/init splash
www-data    1234  0.3  1.2 123456 45678 ?        S    10:00   0:10 nginx: worker process
"""

SYSTEMCTL_OUTPUT = """● nginx.service - A high performance web server
     Loaded: loaded (/lib/systemd/system/nginx.service; enabled; vendor preset: enabled)
     Active: active (running) since Mon 2026-10-19 09:00:00 UTC; 1h ago
   Main PID: 812 (nginx)
"""


class _FakeRunner:
    def __init__(self, outputs=None):
        self.outputs = outputs or {}
        self.commands = []

    async def run(self, cmd):
        self.commands.append(cmd)
        return self.outputs.get(cmd[0], "")


class TestParsers(unittest.TestCase):

    def test_parse_df(self):
        rows = parse_df(DF_OUTPUT)
        self.assertEqual(len(rows), 2)
        self.assertEqual(rows[0]["mounted_on"], "/")
        self.assertEqual(rows[0]["use_percent"], "42%")
        self.assertEqual(rows[1]["filesystem"], "tmpfs")

    def test_parse_ps(self):
        rows = parse_ps(PS_OUTPUT)
        self.assertEqual(len(rows), 2)
        self.assertEqual(rows[0]["command"], "/sbin/init splash")
        self.assertEqual(rows[1]["user"], "www-data")
        self.assertEqual(rows[1]["pid"], "1234")

    def test_parse_systemctl_status(self):
        status = parse_systemctl_status("nginx", SYSTEMCTL_OUTPUT)
        self.assertEqual(status["status"], "active")
        self.assertEqual(status["status_details"], "running")
        self.assertTrue(status["is_loaded"])
        self.assertTrue(status["is_enabled"])
        self.assertEqual(status["main_pid"], "812")
        self.assertEqual(status["description"], "A high performance web server")

    def test_parse_systemctl_missing(self):
        status = parse_systemctl_status("ghost", "Unit ghost.service could not be found.")
        self.assertEqual(status["status"], "unknown")
        status = parse_systemctl_status("x", "sh: 1: systemctl: command not found")
        self.assertIn("systemd", status["status_details"])


class TestHandleLargeOutput(unittest.TestCase):

    def test_small_output_unchanged(self):
        self.assertEqual(handle_large_output("abc", ["ls"]), "abc")

    def test_large_output_preview(self):
        output = "\n".join(f"line {i} " + "x" * 100 for i in range(1000))
        self.assertGreater(len(output), MAX_OUTPUT_SIZE)
        text = handle_large_output(output, ["cat", "big.log"])
        self.assertIn("=== FIRST 50 LINES ===", text)
        self.assertIn("line 0 ", text)
        self.assertIn("line 999 ", text)
        self.assertNotIn("line 500 ", text)
        self.assertIn("[900 lines omitted]", text)

    def test_recursive_search_advice(self):
        output = "\n".join(f"/some/path/{i}" + "y" * 100 for i in range(1000))
        text = handle_large_output(output, ["find", "/", "-name", "*.log"])
        self.assertIn("SUGGESTIONS", text)
        self.assertIn("First 50 lines", text)


class TestBuiltinTools(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = pathlib.Path(self.tmpdir.name)

    def tearDown(self):
        self.tmpdir.cleanup()

    async def test_write_then_read(self):
        tools = BuiltinTools(runner=_FakeRunner(), root=self.root)
        msg = await tools.write_file("notes/a.txt", "hello")
        self.assertIn("Successfully wrote", msg)
        self.assertEqual((self.root / "notes" / "a.txt").read_text(encoding="utf-8"), "hello")
        content = await tools.read_file("notes/a.txt")
        self.assertEqual(content, "Content of file 'notes/a.txt':\nhello")

    async def test_paths_outside_root_are_refused(self):
        tools = BuiltinTools(runner=_FakeRunner(), root=self.root)
        self.assertTrue((await tools.write_file("../escape.txt", "x")).startswith("Error"))
        self.assertTrue((await tools.read_file("/etc/passwd")).startswith("Error"))

    async def test_read_missing_file(self):
        tools = BuiltinTools(runner=_FakeRunner(), root=self.root)
        self.assertEqual(await tools.read_file("nope.txt"), "Error: File not found at nope.txt")

    async def test_run_command_validation(self):
        runner = _FakeRunner({"ls": "a\nb\n"})
        tools = BuiltinTools(runner=runner, root=self.root)
        self.assertEqual(await tools.run_command([]), "Error: Empty command provided.")
        self.assertTrue((await tools.run_command("ls -la")).startswith("Error"))
        self.assertEqual(await tools.run_command(["ls"]), "a\nb\n")
        self.assertEqual(runner.commands, [["ls"]])

    async def test_disk_and_processes(self):
        runner = _FakeRunner({"df": DF_OUTPUT, "ps": PS_OUTPUT})
        tools = BuiltinTools(runner=runner, root=self.root)
        disks = json.loads(await tools.get_disk_usage())
        self.assertEqual(disks[0]["filesystem"], "/dev/sda1")
        procs = json.loads(await tools.get_running_processes(filter="nginx"))
        self.assertEqual([p["pid"] for p in procs], ["1234"])

    async def test_runner_errors_pass_through(self):
        runner = _FakeRunner({"df": "Error executing local command: not found"})
        tools = BuiltinTools(runner=runner, root=self.root)
        self.assertEqual(await tools.get_disk_usage(), "Error executing local command: not found")

    async def test_service_status(self):
        runner = _FakeRunner({"sh": SYSTEMCTL_OUTPUT})
        tools = BuiltinTools(runner=runner, root=self.root)
        status = json.loads(await tools.get_service_status("nginx"))
        self.assertEqual(status["status"], "active")
        self.assertEqual(runner.commands[0][:2], ["sh", "-c"])
        self.assertTrue((await tools.get_service_status("nginx; rm -rf /")).startswith("Error"))
        self.assertEqual(len(runner.commands), 1)

    async def test_registration(self):
        registry = ToolRegistry()
        register_builtin_tools(registry, BuiltinTools(runner=_FakeRunner({"ls": "out"}), root=self.root))
        self.assertEqual(registry.static_names, [d.name for d in BUILTIN_DEFINITIONS])
        self.assertEqual(await registry.resolve("run_command")({"cmd": ["ls"]}), "out")


class TestLocalCommandRunner(unittest.IsolatedAsyncioTestCase):

    async def test_success(self):
        out = await LocalCommandRunner().run([sys.executable, "-c", "print('hi')"])
        self.assertEqual(out.strip(), "hi")

    async def test_non_zero_exit(self):
        out = await LocalCommandRunner().run(
            [sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"]
        )
        self.assertEqual(out, "Local command failed with exit code 3. Stderr: bad")

    async def test_missing_binary(self):
        out = await LocalCommandRunner().run(["this-command-should-not-exist-1234567890"])
        self.assertTrue(out.startswith("Error executing local command:"))


if __name__ == "__main__":
    unittest.main()
