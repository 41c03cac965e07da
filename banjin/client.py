import re
import sys
import asyncio
import logging
import shutil
import pathlib
import argparse
from typing import List, Optional

import litellm

from . import __version__
from .config import AppConfig, SessionConfig, load_server_configs, load_system_context, ToolServerConfig
from .conversation import ChatSession, SessionState
from .discovery import MCPDiscovery, DiscoveryResult, format_exception, refresh_registry
from .gateway import LLMGateway, describe_tool_call
from .history import ConversationState, ToolCallRequest
from .registry import ToolRegistry
from .supervisor import ToolExecutionSupervisor, ToolResult
from .profiling import FileProfileStore, MemoryProfileStore, summarize_profile
from .tools import BuiltinTools, register_builtin_tools

SERVERS_FILE = "mcp_servers.json"

logger = logging.getLogger(__name__)


class AnsiTheme:
    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._codes = {'reset': '\x1b[0m', 'bold': '\x1b[1m', 'dim': '\x1b[2m', 'red': '\x1b[31m',
                       'green': '\x1b[32m', 'yellow': '\x1b[33m', 'blue': '\x1b[34m',
                       'magenta': '\x1b[35m', 'cyan': '\x1b[36m', 'gray': '\x1b[90m'}

    def style(self, text: str, *styles: str) -> str:
        if not self.enabled or not text:
            return text
        codes = ''.join(self._codes.get(s, '') for s in styles)
        return f"{codes}{text}{self._codes['reset']}"

    def label(self, text: str, color: str = 'cyan') -> str:
        return self.style(text, 'bold', color)

    def sep(self, title: Optional[str] = None, char: str = "─") -> str:
        width = get_terminal_width()
        if title:
            title_text = f" {title} "
            side = (width - len(title_text)) // 2
            line = char * side + title_text + char * (width - side - len(title_text))
            return self.style(line, 'gray')
        return self.style(char * width, 'gray')


def get_terminal_width() -> int:
    width = shutil.get_terminal_size(fallback=(80, 20)).columns
    return max(20, min(width, 120))


def configure_logging(config: AppConfig) -> None:
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(message)s",
        force=True
    )

    for lib in ['httpx', 'anyio', 'mcp', 'urllib3', 'openai', 'LiteLLM', 'litellm']:
        logging.getLogger(lib).setLevel(logging.WARNING)

    litellm.suppress_debug_info = True


def create_theme(config: AppConfig) -> AnsiTheme:
    enabled = config.use_color and sys.stdout.isatty()
    return AnsiTheme(enabled=enabled)


def find_config_dir(explicit: Optional[str] = None) -> Optional[pathlib.Path]:
    if explicit:
        return pathlib.Path(explicit)
    for candidate in (pathlib.Path.cwd() / ".banjin", pathlib.Path.home() / ".banjin"):
        if candidate.is_dir():
            return candidate
    return None


_HEADING = re.compile(r'^[ \t]{0,3}#{1,6}[ \t]+(.*)$', re.M)
_BOLD = re.compile(r'\*\*(.+?)\*\*')
_CODE_FENCE = re.compile(r'^[ \t]*```[\w-]*[ \t]*$\n?', re.M)
_INLINE_CODE = re.compile(r'`([^`\n]+)`')
_BULLET = re.compile(r'^([ \t]*)[*+][ \t]+', re.M)


def strip_markdown(text: str) -> str:
    text = _CODE_FENCE.sub('', text)
    text = _HEADING.sub(r'\1', text)
    text = _BOLD.sub(r"\1", text)
    text = _INLINE_CODE.sub(r'\1', text)
    return _BULLET.sub(r'\1- ', text)


def render_markdown(text: str, theme: AnsiTheme) -> str:
    if not theme.enabled:
        return text
    text = _HEADING.sub(lambda m: theme.style(m.group(1), 'bold', 'cyan'), text)
    text = _BOLD.sub(lambda m: theme.style(m.group(1), 'bold'), text)
    return _INLINE_CODE.sub(lambda m: theme.style(m.group(1), 'magenta'), text)


class ConsoleUI:
    def __init__(self, theme: AnsiTheme, session: Optional[SessionConfig] = None):
        self.theme = theme
        self.session = session

    def format_text(self, text: str) -> str:
        fmt = self.session.output_format if self.session is not None else "plain"
        if fmt == "markdown":
            return render_markdown(text, self.theme)
        return strip_markdown(text)

    def assistant(self, text: str) -> None:
        print(self.theme.label("Banjin:", "green") + "\n" + self.format_text(text), flush=True)

    def tool_request(self, call: ToolCallRequest) -> None:
        print(self.theme.style("LLM wants to run tool:", 'yellow'))
        print(self.theme.style(describe_tool_call(call), 'bold', 'cyan'), flush=True)

    def tool_result(self, call: ToolCallRequest, result: ToolResult) -> None:
        color = 'green' if result.ok else 'red'
        status = self.theme.style(result.status.value, color)
        print(f"← {self.theme.style(call.tool_name, 'bold', 'blue')}: {status} ({result.duration:.2f}s)", flush=True)

    def error(self, text: str) -> None:
        print(self.theme.style(text, 'red'), flush=True)

    def info(self, text: str) -> None:
        print(self.theme.style(text, 'gray'), flush=True)

    def status(self, text: str) -> None:
        print(self.theme.style(text, 'yellow'), flush=True)


HELP_TEXT = """Commands:
  /help                     Show this help
  /quit, /exit              Leave the session
  /new                      Reset the conversation (keeps the context)
  /status                   Show session settings
  /tools                    List available tools
  /mcp-list                 List configured MCP servers
  /reload                   Re-run MCP tool discovery
  /model [name]             Show or set the model      (/model-reset)
  /temp [value]             Show or set temperature    (/temp-reset)
  /timeout [seconds]        Show or set tool timeout, 0 disables it (/timeout-reset)
  /output [plain|markdown]  Show or set output format  (/output-reset)
                            plain strips markdown from replies, markdown keeps it (styled on color terminals)
  /profile collect          Collect and save the local host profile
  /profile show|summary [host]
                            Show a saved server profile, in full or summarized
While a tool runs, press ESC to cancel it."""


class CommandHandler:
    def __init__(self, chat: ChatSession, registry: ToolRegistry, discovery: MCPDiscovery,
                 session: SessionConfig, servers: List[ToolServerConfig], theme: AnsiTheme,
                 tools: Optional[BuiltinTools] = None):
        self.chat = chat
        self.registry = registry
        self.discovery = discovery
        self.session = session
        self.servers = servers
        self.theme = theme
        self.tools = tools
        self.last_discovery: Optional[DiscoveryResult] = None

        self.commands = {
            '/help': self._help,
            '/quit': self._quit,
            '/exit': self._quit,
            '/new': self._new,
            '/status': self._status,
            '/tools': self._tools,
            '/mcp-list': self._mcp_list,
            '/reload': self._reload,
            '/model': self._model,
            '/model-reset': self._reset_field('model'),
            '/temp': self._temp,
            '/temp-reset': self._reset_field('temperature'),
            '/timeout': self._timeout,
            '/timeout-reset': self._reset_field('tool_timeout_seconds'),
            '/output': self._output,
            '/output-reset': self._reset_field('output_format'),
            '/profile': self._profile,
        }

    async def handle(self, user_input: str) -> bool:
        """Returns False when the session should end."""
        if self.chat.state is SessionState.AWAITING_CONFIRMATION:
            if user_input.strip().lower() in ('/quit', '/exit'):
                return await self._quit([])
            approved = user_input.strip().lower() in ('y', 'yes')
            if approved:
                print(self.theme.style("User approved. Executing tool... (press ESC to cancel)", 'gray'))
            else:
                print(self.theme.style("User denied. Aborting.", 'gray'))
            await self.chat.confirm(approved)
            return True

        if not user_input.strip():
            return True

        if user_input.startswith('/'):
            return await self._handle_command(user_input)

        print(self.theme.style("Waiting for LLM... (press ESC to cancel)", 'gray'), flush=True)
        await self.chat.submit(user_input)
        return True

    async def _handle_command(self, cmd: str) -> bool:
        parts = cmd.split()
        command = parts[0].lower()
        args = parts[1:]

        handler = self.commands.get(command)
        if handler is None:
            print(f"Unknown command: {command}")
            print("Type /help for the list of commands.")
            return True
        result = await handler(args)
        return result is not False

    async def _help(self, _args: List[str]):
        print(HELP_TEXT)

    async def _quit(self, _args: List[str]):
        print(self.theme.style("Goodbye!", 'yellow'))
        return False

    async def _new(self, _args: List[str]):
        self.chat.reset()
        print("[Info] Conversation reset")

    async def _status(self, _args: List[str]):
        timeout = self.session.tool_timeout_seconds
        print(f"  model:       {self.session.model}")
        print(f"  base url:    {self.session.base_url}")
        print(f"  temperature: {self.session.temperature}")
        print(f"  output:      {self.session.output_format}")
        print(f"  timeout:     {'disabled' if not timeout else f'{timeout:g}s'}")
        print(f"  messages:    {len(self.chat.conversation)}")
        if self.chat.last_failure is not None:
            print(f"  last error:  {self.chat.last_failure.value}")
        print(f"  tools:       {len(self.registry.list())}")

    async def _tools(self, _args: List[str]):
        print(self.theme.label("Built-in tools:", "yellow"))
        for name in self.registry.static_names:
            print(f"  - {name}")
        dynamic = self.registry.dynamic_definitions()
        if not dynamic:
            print(self.theme.style("No MCP tools were discovered.", 'yellow'))
            return
        print(self.theme.label("Discovered MCP tools:", "yellow"))
        for server, tools in sorted(self.registry.get_server_tools_map().items()):
            print(f"  - {self.theme.style(server, 'cyan')}: {sorted(tools)}")

    async def _mcp_list(self, _args: List[str]):
        if not self.servers:
            print(self.theme.style("No MCP servers configured.", 'yellow'))
            return
        ok = set(self.last_discovery.successful_servers) if self.last_discovery else set()
        for server in self.servers:
            target = server.url if server.transport == "http" else " ".join([server.command] + server.args)
            mark = self.theme.style("ok", 'green') if server.name in ok else self.theme.style("unavailable", 'red')
            print(f"  - {server.name} [{server.transport}] {target} ({mark})")

    async def _reload(self, _args: List[str]):
        print(self.theme.label("[Info]", "blue") + " Reloading MCP servers...")
        await self.discover()

    async def discover(self) -> None:
        try:
            result = await refresh_registry(self.discovery, self.registry, self.servers)
        except Exception as e:
            logger.debug("Discovery failed", exc_info=True)
            print(self.theme.style(f"[Error] Discovery failed: {format_exception(e)}", 'red'))
            return
        self.last_discovery = result
        for name, error in result.failures.items():
            print(self.theme.style(f"[Warn] MCP server '{name}' unavailable: {error}", 'yellow'))
        for base, assigned in result.collisions:
            print(self.theme.style(f"[Warn] Tool name '{base}' already taken; registered as '{assigned}'", 'yellow'))
        if self.servers:
            print(f"{self.theme.style('✅ MCP', 'green')}: {len(result.successful_servers)}/{len(self.servers)} "
                  f"servers, {len(result.definitions)} tools")

    async def _model(self, args: List[str]):
        if not args:
            print(f"Current model: {self.session.model}")
            return
        self.session.set_model(args[0])
        print(self.theme.style(f"Model set to: {self.session.model}", 'green'))

    async def _temp(self, args: List[str]):
        if not args:
            print(f"Current temperature: {self.session.temperature}")
            return
        try:
            self.session.set_temperature(float(args[0]))
        except ValueError as e:
            print(self.theme.style(f"Invalid temperature: {e}", 'red'))
            return
        print(self.theme.style(f"Temperature set to: {self.session.temperature}", 'green'))

    async def _timeout(self, args: List[str]):
        if not args:
            current = self.session.tool_timeout_seconds
            shown = 'disabled (infinite)' if not current else f"{current:g} seconds"
            print(self.theme.style(f"Current tool execution timeout: {shown}", 'yellow'))
            print(self.theme.style("Usage: /timeout <seconds>   (0 disables the timeout)", 'gray'))
            return
        try:
            self.session.set_tool_timeout(float(args[0]))
        except ValueError:
            print(self.theme.style("Invalid timeout value. Must be a non-negative number (0 = disabled).", 'red'))
            return
        value = self.session.tool_timeout_seconds
        shown = 'disabled (infinite)' if not value else f"{value:g} seconds"
        print(self.theme.style(f"Tool timeout set to: {shown}", 'green'))

    async def _output(self, args: List[str]):
        if not args:
            print(f"Current output format: {self.session.output_format}")
            return
        try:
            self.session.set_output_format(args[0].lower())
        except ValueError as e:
            print(self.theme.style(str(e), 'red'))
            return
        print(self.theme.style(f"Output format set to: {self.session.output_format}", 'green'))

    async def _profile(self, args: List[str]):
        if self.tools is None:
            print(self.theme.style("Server profiles are not available in this session.", 'yellow'))
            return
        action = args[0].lower() if args else "show"
        host = args[1] if len(args) > 1 else None
        if action == "collect":
            print(self.theme.style("Collecting server profile...", 'gray'))
            print(await self.tools.collect_profile())
        elif action == "show":
            print(await self.tools.get_server_profile(host))
        elif action == "summary":
            try:
                profile = self.tools.profiles.load(host or self.tools.hostname)
            except ValueError as e:
                print(self.theme.style(f"Error: {e}", 'red'))
                return
            if profile is None:
                print(self.theme.style("No server profile available. Run /profile collect first.", 'yellow'))
                return
            print(summarize_profile(profile))
        else:
            print(self.theme.style("Usage: /profile collect|show|summary [host]", 'red'))

    def _reset_field(self, name: str):
        async def reset(_args: List[str]):
            self.session.reset(name)
            print(self.theme.style(f"{name} reset to: {getattr(self.session, name)}", 'green'))
        return reset


async def amain(args: argparse.Namespace) -> None:
    cli_args = {
        'base_url': args.base_url,
        'model': args.model,
        'temperature': args.temperature,
        'tool_timeout_seconds': args.tool_timeout,
        'output_format': args.output,
        'system_prompt_file': args.system_prompt_file,
        'log_level': args.log_level,
        'use_color': False if args.no_color else None,
    }
    try:
        config = AppConfig.load(cli_args=cli_args)
    except ValueError as e:
        print(f"[Fatal] Invalid configuration: {e}")
        sys.exit(1)
    configure_logging(config)
    theme = create_theme(config)

    config_dir = find_config_dir(args.config_dir)
    servers: List[ToolServerConfig] = []
    context = config.system_prompt
    if config_dir is not None:
        try:
            servers = load_server_configs(config_dir / SERVERS_FILE)
        except (OSError, ValueError) as e:
            print(theme.style(f"[Warn] Could not load {SERVERS_FILE}: {e}", 'yellow'))
        context = "\n\n---\n\n".join(c for c in (context, load_system_context(config_dir)) if c)

    if not config.api_key:
        print(theme.style("[Warn] BANJIN_API_KEY is not set; LLM calls will likely be rejected.", 'yellow'))

    print(theme.sep(f"Banjin AI Assistant v{__version__}"))
    print(f"{theme.label('[Model]', 'magenta')} {config.model} @ {config.base_url}")
    if config_dir is not None:
        print(theme.style(f"Context loaded from: {config_dir}", 'gray'))
    print(theme.style("Use /help for commands.", 'gray'))

    session = SessionConfig.from_app_config(config)
    registry = ToolRegistry()
    profiles = FileProfileStore(config_dir) if config_dir is not None else MemoryProfileStore()
    tools = register_builtin_tools(registry, BuiltinTools(profiles=profiles))
    discovery = MCPDiscovery()

    chat = ChatSession(
        gateway=LLMGateway(),
        registry=registry,
        supervisor=ToolExecutionSupervisor(),
        session=session,
        conversation=ConversationState(context),
        ui=ConsoleUI(theme, session),
    )
    handler = CommandHandler(chat, registry, discovery, session, servers, theme, tools)

    if servers:
        print(theme.style("Discovering MCP tools...", 'gray'))
        await handler.discover()

    while True:
        if chat.state is SessionState.AWAITING_CONFIRMATION:
            prompt = theme.style("Approve? (y/n)> ", 'bold', 'yellow')
        else:
            prompt = theme.label("> ", "green")
        try:
            user_input = input("\n" + prompt).strip()
        except (EOFError, KeyboardInterrupt):
            print("\n" + theme.style("Goodbye!", 'yellow'))
            break

        try:
            if not await handler.handle(user_input):
                break
        except KeyboardInterrupt:
            print("\n" + theme.label("[Info]", "blue") + " Interrupted")


def main():
    parser = argparse.ArgumentParser(description="Banjin: LLM terminal assistant with confirmed tool calls")
    parser.add_argument("--config-dir", help="Directory holding mcp_servers.json and context.md (default: ./.banjin or ~/.banjin)")
    parser.add_argument("--base-url", help="OpenAI-compatible API base URL")
    parser.add_argument("--model", help="Model name")
    parser.add_argument("--temperature", type=float, help="Sampling temperature")
    parser.add_argument("--tool-timeout", type=float, help="Tool execution timeout in seconds (0 disables)")
    parser.add_argument("--output", choices=["plain", "markdown"], help="Output format")
    parser.add_argument("--system-prompt-file", help="Path to system prompt file")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level")
    parser.add_argument("--no-color", action="store_true", help="Disable ANSI colors")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = parser.parse_args()

    try:
        asyncio.run(amain(args))
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\n[Info] Terminated")


if __name__ == "__main__":
    main()
