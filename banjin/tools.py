import re
import json
import asyncio
import logging
import socket
import pathlib
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from .profiling import (
    RISK_LEVELS, ActionPlan, MemoryProfileStore, ProfileStore,
    apply_profile_suggestion, create_profile_suggestion, validate_hostname,
)
from .registry import ToolDefinition, NativeInvoker, ToolRegistry

logger = logging.getLogger(__name__)

MAX_OUTPUT_SIZE = 50000
PREVIEW_LINES = 100


class CommandRunner(Protocol):
    async def run(self, cmd: List[str]) -> str: ...


class LocalCommandRunner:
    """Runs argv lists without a shell. Failures come back as text, not raises."""

    async def run(self, cmd: List[str]) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return f"Error executing local command: {e}"

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise

        if proc.returncode != 0:
            err = stderr.decode(errors="replace").strip()
            return f"Local command failed with exit code {proc.returncode}. Stderr: {err}"
        return handle_large_output(stdout.decode(errors="replace"), cmd)


def handle_large_output(output: str, command: List[str], max_size: int = MAX_OUTPUT_SIZE) -> str:
    if len(output) <= max_size:
        return output

    lines = output.split('\n')
    size_kb = round(len(output) / 1024)
    cmd_str = ' '.join(command)

    if 'find /' in cmd_str or 'find .' in cmd_str or re.search(r'grep.*-[rR]', cmd_str):
        first = '\n'.join(lines[:50])
        return (
            f"Command output is too large ({size_kb}KB, {len(lines)} lines).\n\n"
            "This type of recursive search produces massive output that cannot be processed.\n\n"
            "SUGGESTIONS:\n"
            "- For file search: Use more specific paths (e.g., 'find /var/log' instead of 'find /')\n"
            "- Add filters: Use -name, -type, -maxdepth to limit results\n"
            "- For grep: Specify exact directories and use -l to list filenames only\n"
            "- Limit output: Add '| head -n 100' to see first 100 lines\n\n"
            f"First 50 lines of output:\n{first}"
        )

    half = PREVIEW_LINES // 2
    return (
        f"Command output is large ({size_kb}KB, {len(lines)} lines). "
        f"Showing first and last {half} lines:\n\n"
        f"=== FIRST {half} LINES ===\n" + '\n'.join(lines[:half]) +
        f"\n\n... [{len(lines) - PREVIEW_LINES} lines omitted] ...\n\n"
        f"=== LAST {half} LINES ===\n" + '\n'.join(lines[-half:]) +
        "\n\nTIP: Consider using grep, head, tail, or other filters to reduce output size."
    )


def _is_error(output: str) -> bool:
    return output.startswith(("Error", "Local command failed"))


def parse_df(output: str) -> List[Dict[str, str]]:
    rows = output.strip().split('\n')[1:]
    filesystems = []
    for line in rows:
        parts = line.split()
        if len(parts) < 6:
            continue
        filesystems.append({
            "filesystem": parts[0],
            "size": parts[1],
            "used": parts[2],
            "available": parts[3],
            "use_percent": parts[4],
            "mounted_on": ' '.join(parts[5:]),
        })
    return filesystems


def parse_ps(output: str) -> List[Dict[str, str]]:
    rows = output.strip().split('\n')[1:]
    keys = ("user", "pid", "cpu_percent", "mem_percent", "vsz", "rss", "tty", "stat", "start", "time")
    processes = []
    for line in rows:
        parts = line.split(None, 10)
        if len(parts) < 11:
            continue
        proc = dict(zip(keys, parts[:10]))
        proc["command"] = parts[10]
        processes.append(proc)
    return processes


def parse_systemctl_status(service: str, output: str) -> Dict[str, Any]:
    if "command not found" in output or "No such file or directory" in output:
        return {"service": service, "status": "unknown",
                "status_details": "systemctl command not found. This may not be a systemd-based OS."}
    if "could not be found" in output:
        return {"service": service, "status": "unknown", "status_details": f"Service '{service}' not found."}

    result: Dict[str, Any] = {"service": service, "is_loaded": False, "status": "unknown"}

    m = re.search(r'Loaded: (\w+)', output)
    if m:
        result["is_loaded"] = m.group(1) == "loaded"
    m = re.search(r'; (enabled|disabled|static);', output)
    if m:
        result["is_enabled"] = m.group(1) == "enabled"
    m = re.search(r'Active: (\w+) \((.*?)\)', output)
    if m:
        if m.group(1) in ("active", "inactive", "failed"):
            result["status"] = m.group(1)
        result["status_details"] = m.group(2)
    m = re.search(r'Main PID: (\d+)', output)
    if m:
        result["main_pid"] = m.group(1)
    m = re.search(r'^\S+ .+? - (.*)$', output, re.M)
    if m:
        result["description"] = m.group(1).strip()
    return result


def _first_match(pattern: str, text: str, default: str = "unknown") -> str:
    m = re.search(pattern, text, re.M)
    return m.group(1).strip() if m else default


def _to_gb(value: str) -> int:
    m = re.match(r'([\d.]+)([KMGT]?)', value or "")
    if not m:
        return 0
    scale = {"K": 1 / (1024 * 1024), "M": 1 / 1024, "G": 1, "T": 1024, "": 1}[m.group(2)]
    return int(round(float(m.group(1)) * scale))


async def collect_server_profile(runner: CommandRunner, hostname: str) -> Dict[str, Any]:
    """Gather lightweight facts about the host the runner executes on.

    Each command is best effort: a missing binary leaves its fields at the
    defaults instead of failing the whole profile.
    """
    profile: Dict[str, Any] = {
        "id": hostname,
        "collected_at": datetime.now(timezone.utc).isoformat(),
        "hardware": {"cpu": "unknown", "cores": 0, "ram_gb": 0, "disks": []},
        "os": {"name": "unknown", "version": "unknown", "kernel": "unknown", "arch": "unknown"},
        "services": [],
        "kernel_info": {"uptime": "unknown", "load_average": [0.0, 0.0, 0.0]},
    }

    async def run(*cmd: str) -> str:
        output = await runner.run(list(cmd))
        return "" if _is_error(output) else output.strip()

    uname_s = await run("uname", "-s")
    if uname_s:
        profile["os"]["name"] = uname_s
    lsb = await run("lsb_release", "-d")
    if lsb:
        profile["os"]["name"] = _first_match(r'Description:\s*(.+)', lsb, profile["os"]["name"])
    uname_r = await run("uname", "-r")
    if uname_r:
        profile["os"]["version"] = profile["os"]["kernel"] = uname_r
    uname_m = await run("uname", "-m")
    if uname_m:
        profile["os"]["arch"] = uname_m

    lscpu = await run("lscpu")
    if lscpu:
        profile["hardware"]["cpu"] = _first_match(r'^Model name:\s*(.+)$', lscpu)
        profile["hardware"]["cores"] = int(_first_match(r'^CPU\(s\):\s*(\d+)', lscpu, "0"))

    free = await run("free", "-h")
    mem_line = next((l for l in free.split('\n') if l.startswith("Mem:")), "")
    if len(mem_line.split()) > 1:
        profile["hardware"]["ram_gb"] = _to_gb(mem_line.split()[1])

    df = await run("df", "-h", "-P")
    if df:
        profile["hardware"]["disks"] = [
            {"mount": d["mounted_on"], "size_gb": _to_gb(d["size"]), "used_gb": _to_gb(d["used"])}
            for d in parse_df(df)[:5]
        ]

    ps = await run("ps", "aux")
    if ps:
        profile["services"] = [{"name": p["command"].split()[0], "status": "active"} for p in parse_ps(ps)[:10]]

    uptime = await run("uptime")
    if uptime:
        m = re.search(r'load average:\s*([\d.]+),\s*([\d.]+),\s*([\d.]+)', uptime)
        if m:
            profile["kernel_info"]["load_average"] = [float(x) for x in m.groups()]
        if " up " in uptime:
            profile["kernel_info"]["uptime"] = uptime.split(" up ", 1)[1].split(",")[0].strip()

    return profile


def _confined_path(file_path: str, root: Optional[pathlib.Path] = None) -> Optional[pathlib.Path]:
    base = (root or pathlib.Path.cwd()).resolve()
    target = (base / file_path).resolve()
    if target != base and base not in target.parents:
        return None
    return target


class BuiltinTools:
    def __init__(self, runner: Optional[CommandRunner] = None, root: Optional[pathlib.Path] = None,
                 profiles: Optional[ProfileStore] = None, hostname: Optional[str] = None):
        self.runner = runner or LocalCommandRunner()
        self.root = root
        self.profiles = profiles if profiles is not None else MemoryProfileStore()
        self.hostname = hostname or socket.gethostname()
        self.approved_plans: List[ActionPlan] = []

    async def run_command(self, cmd: List[str]) -> str:
        if not cmd:
            return "Error: Empty command provided."
        if not isinstance(cmd, list) or not all(isinstance(c, str) for c in cmd):
            return "Error: 'cmd' must be an array of strings."
        return await self.runner.run(cmd)

    async def write_file(self, file_path: str, content: str) -> str:
        target = _confined_path(file_path, self.root)
        if target is None:
            return "Error: Cannot write outside the current working directory."
        try:
            await asyncio.to_thread(self._write, target, content)
        except OSError as e:
            return f"Error writing file: {e}"
        return f"Successfully wrote content to file '{file_path}'"

    @staticmethod
    def _write(target: pathlib.Path, content: str) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    async def read_file(self, file_path: str) -> str:
        target = _confined_path(file_path, self.root)
        if target is None:
            return "Error: Cannot read outside the current working directory."
        try:
            content = await asyncio.to_thread(target.read_text, encoding="utf-8")
        except FileNotFoundError:
            return f"Error: File not found at {file_path}"
        except (OSError, UnicodeDecodeError) as e:
            return f"Error reading file: {e}"
        return f"Content of file '{file_path}':\n{content}"

    async def get_disk_usage(self) -> str:
        output = await self.runner.run(["df", "-h", "-P"])
        if _is_error(output):
            return output
        if not output.strip():
            return "Error: 'df' command returned empty output."
        return json.dumps(parse_df(output), indent=2)

    async def get_running_processes(self, filter: Optional[str] = None) -> str:
        output = await self.runner.run(["ps", "aux"])
        if _is_error(output):
            return output
        if not output.strip():
            return "Error: 'ps' command returned empty output."
        processes = parse_ps(output)
        if filter:
            processes = [p for p in processes if filter in p["command"] or filter in p["user"]]
        return json.dumps(processes, indent=2)

    async def get_service_status(self, service_name: str = "") -> str:
        if not service_name:
            return "Error: service_name parameter is required."
        if not re.fullmatch(r'[\w@.:-]+', service_name):
            return f"Error: invalid service name '{service_name}'."
        # systemctl exits non-zero for inactive units; the text is still parseable
        output = await self.runner.run(["sh", "-c", f"systemctl status {service_name} 2>&1 || true"])
        return json.dumps(parse_systemctl_status(service_name, output), indent=2)

    def _target_host(self, hostname: Optional[str]) -> str:
        return validate_hostname(hostname or self.hostname)

    @staticmethod
    def _split_tags(tags: Any) -> List[str]:
        if not tags:
            return []
        if isinstance(tags, str):
            tags = tags.split(",")
        return [str(t).strip() for t in tags if str(t).strip()]

    async def collect_profile(self, hostname: Optional[str] = None) -> str:
        """Collect facts for the host and save them, keeping earlier notes and tags."""
        try:
            host = self._target_host(hostname)
        except ValueError as e:
            return f"Error: {e}"
        profile = await collect_server_profile(self.runner, host)
        previous = self.profiles.load(host) or {}
        for key in ("notes", "tags"):
            if previous.get(key):
                profile[key] = previous[key]
        try:
            location = self.profiles.save(host, profile)
        except OSError as e:
            return f"Error collecting profile: {e}"
        return f"Profile collected and saved to {location}"

    async def get_server_profile(self, hostname: Optional[str] = None) -> str:
        try:
            host = self._target_host(hostname)
        except ValueError as e:
            return f"Error: {e}"
        profile = self.profiles.load(host)
        if profile is None:
            return "No server profile available. Run /profile collect first."
        return json.dumps(profile, indent=2)

    async def save_profile_notes(self, hostname: Optional[str] = None, note: str = "", tags: Any = None) -> str:
        return self._update_profile(hostname, note, tags, "Saved to profile")

    async def suggest_profile_update(self, hostname: Optional[str] = None, note: str = "", tags: Any = None) -> str:
        # reaching this point means the operator already approved the suggestion
        return self._update_profile(hostname, note, tags, "Applied")

    def _update_profile(self, hostname: Optional[str], note: str, tags: Any, verb: str) -> str:
        tag_list = self._split_tags(tags)
        if not (note or "").strip() and not tag_list:
            return "Error: provide at least a note or tags."
        try:
            host = self._target_host(hostname)
            if self.profiles.load(host) is None:
                return f"Profile not found for {host}. Run /profile collect first."
            suggestion = create_profile_suggestion(self.profiles, host, note or "", tag_list)
            return f"{verb}: {apply_profile_suggestion(self.profiles, suggestion)}"
        except (OSError, ValueError) as e:
            return f"Error updating profile: {e}"

    async def suggest_action_plan(self, title: str = "System Action", description: str = "",
                                  steps: Optional[List[str]] = None, estimated_time: str = "unknown",
                                  risk: str = "medium") -> str:
        steps = [s for s in (steps or []) if isinstance(s, str) and s.strip()]
        if not description or not steps:
            return "Error: provide description and at least one step."
        if risk not in RISK_LEVELS:
            return f"Error: risk must be one of {', '.join(RISK_LEVELS)}."
        plan = ActionPlan(title=title, description=description, steps=steps,
                          estimated_time=estimated_time, risk=risk)
        self.approved_plans.append(plan)
        logger.info("Action plan approved: %s (%s risk)", title, risk)
        return f"Action plan approved for execution:\n{plan.render()}"


BUILTIN_DEFINITIONS = [
    ToolDefinition(
        name="run_command",
        description=(
            "Executes a shell command. The 'cmd' parameter should be an array where the first element is "
            "the command and subsequent elements are its literal arguments. Do NOT include shell "
            "metacharacters like pipes (|) or redirects (>) directly in the 'cmd' array. If shell features "
            "are required, use 'sh -c' as the command and pass the full shell command string as a single "
            "argument (e.g., {\"cmd\":[\"sh\", \"-c\", \"ps aux | grep nginx\"]})."
        ),
        parameters={
            "type": "object",
            "properties": {
                "cmd": {"type": "array", "items": {"type": "string"},
                        "description": "The command and its arguments as an array of strings."},
            },
            "required": ["cmd"],
        },
    ),
    ToolDefinition(
        name="write_file",
        description="Writes content to a file (relative to the working directory). Returns a success message upon completion.",
        parameters={
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "The relative path to the file."},
                "content": {"type": "string", "description": "The content to write."},
            },
            "required": ["file_path", "content"],
        },
    ),
    ToolDefinition(
        name="read_file",
        description=("Reads content from a file. Returns the file's content as a string. If the file does not "
                     "exist or cannot be read, it returns an error message starting with 'Error:'."),
        parameters={
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "The relative path to the file."},
            },
            "required": ["file_path"],
        },
    ),
    ToolDefinition(
        name="get_disk_usage",
        description="Retrieves disk usage statistics for all mounted filesystems as a JSON array.",
        parameters={"type": "object", "properties": {}, "required": []},
    ),
    ToolDefinition(
        name="get_running_processes",
        description="Retrieves currently running processes as a JSON array, optionally filtered by a search string.",
        parameters={
            "type": "object",
            "properties": {
                "filter": {"type": "string",
                           "description": "Optional. Only processes whose command or user contains this string are returned."},
            },
        },
    ),
    ToolDefinition(
        name="get_service_status",
        description="Retrieves the status of a systemd service (e.g., 'nginx', 'docker') as a JSON object.",
        parameters={
            "type": "object",
            "properties": {
                "service_name": {"type": "string", "description": "The name of the systemd service to inspect."},
            },
            "required": ["service_name"],
        },
    ),
    ToolDefinition(
        name="get_server_profile",
        description=("Returns the saved profile (hardware, OS, services, notes and tags) of a server as JSON. "
                     "Defaults to the local host."),
        parameters={
            "type": "object",
            "properties": {
                "hostname": {"type": "string", "description": "Optional. The server whose profile to read."},
            },
        },
    ),
    ToolDefinition(
        name="save_profile_notes",
        description=("ONLY use this if the user explicitly said 'save' or 'record'. Saves notes and tags "
                     "to the server profile for future reference."),
        parameters={
            "type": "object",
            "properties": {
                "hostname": {"type": "string", "description": "Optional. Defaults to the local host."},
                "note": {"type": "string", "description": "The note to append to the profile."},
                "tags": {"type": "array", "items": {"type": "string"}, "description": "Tags to add to the profile."},
            },
        },
    ),
    ToolDefinition(
        name="suggest_profile_update",
        description=("DEFAULT tool for recording observations about a server. Proposes a note and tags; "
                     "the operator approves or rejects the update before it is saved."),
        parameters={
            "type": "object",
            "properties": {
                "hostname": {"type": "string", "description": "Optional. Defaults to the local host."},
                "note": {"type": "string", "description": "The observation to record."},
                "tags": {"type": "array", "items": {"type": "string"}, "description": "Tags to suggest."},
            },
        },
    ),
    ToolDefinition(
        name="suggest_action_plan",
        description=("Propose an action plan for fixing a problem. The operator must approve the plan "
                     "before any of its steps are run."),
        parameters={
            "type": "object",
            "properties": {
                "title": {"type": "string", "description": "A short title for the plan."},
                "description": {"type": "string", "description": "What the plan fixes and why."},
                "steps": {"type": "array", "items": {"type": "string"}, "description": "The ordered steps."},
                "estimated_time": {"type": "string", "description": "Optional. How long the plan will take."},
                "risk": {"type": "string", "enum": list(RISK_LEVELS), "description": "The risk level of the plan."},
            },
            "required": ["title", "description", "steps"],
        },
    ),
]


def register_builtin_tools(registry: ToolRegistry, tools: Optional[BuiltinTools] = None) -> BuiltinTools:
    tools = tools or BuiltinTools()
    for definition in BUILTIN_DEFINITIONS:
        registry.register(definition, NativeInvoker(getattr(tools, definition.name)))
    logger.debug("Registered %d built-in tools", len(BUILTIN_DEFINITIONS))
    return tools
