import os
import json
import asyncio
import logging
import shutil
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from .config import ToolServerConfig
from .errors import FailureKind
from .registry import ToolDefinition, RemoteInvoker, ToolRegistry

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = timedelta(seconds=60)


def format_exception(exc: BaseException, limit: int = 1024) -> str:
    name = type(exc).__name__
    text = str(exc)[:limit]
    return f"{name}: {text}" if text else name


def qualified_tool_name(server_name: str, raw_name: str) -> str:
    return f"{server_name}_{raw_name}".replace("-", "_")


def format_tool_result(result: Any) -> str:
    """Flatten an MCP ``CallToolResult`` (or anything else) into plain text."""
    if isinstance(result, str):
        return result
    try:
        if hasattr(result, 'content') and isinstance(result.content, list):
            parts = []
            for item in result.content:
                if getattr(item, 'type', None) == 'text' and hasattr(item, 'text'):
                    parts.append(item.text)
                elif hasattr(item, 'model_dump'):
                    parts.append(json.dumps(item.model_dump(mode='json'), indent=2, ensure_ascii=False))
                else:
                    parts.append(json.dumps(item, indent=2, ensure_ascii=False))
            text = '\n'.join(parts)
            if getattr(result, 'isError', False):
                text = f"Error: {text}" if text else "Error: tool reported a failure"
            return text or "[empty response]"
        return json.dumps(result, indent=2, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(result)


class MCPServer:
    def __init__(self, config: ToolServerConfig):
        self.config = config
        self.name = config.name
        self.exit_stack = AsyncExitStack()
        self.session: Optional[ClientSession] = None

    async def initialize(self) -> None:
        try:
            if self.config.transport == "http":
                read, write, _ = await self.exit_stack.enter_async_context(
                    streamablehttp_client(url=self.config.url, timeout=HTTP_TIMEOUT)
                )
            else:
                cmd = self._resolve_command(self.config.command)
                params = StdioServerParameters(command=cmd, args=list(self.config.args), env=self._merged_env())
                read, write = await self.exit_stack.enter_async_context(stdio_client(params))
            self.session = await self.exit_stack.enter_async_context(ClientSession(read, write))
            await self.session.initialize()
            logger.debug("Server '%s' initialized", self.name)
        except BaseException:
            await self.cleanup()
            raise

    def _merged_env(self) -> Optional[Dict[str, str]]:
        if self.config.env is None:
            return None
        return {**os.environ, **self.config.env}

    def _resolve_command(self, cmd: str) -> str:
        if not cmd or not cmd.strip():
            raise ValueError("Invalid command in config")

        cmd = cmd.strip()

        if os.path.isabs(cmd) or os.path.sep in cmd:
            if not os.path.exists(cmd):
                raise ValueError(f"Command not found: {cmd}")
            return cmd

        resolved = shutil.which(cmd)
        if not resolved:
            raise ValueError(f"Command '{cmd}' not found in PATH")
        return resolved

    async def list_tools(self) -> Any:
        if not self.session:
            raise RuntimeError("Server not initialized")
        return await self.session.list_tools()

    async def call_tool(self, tool_name: str, arguments: Dict[str, Any]) -> Any:
        if not self.session:
            raise RuntimeError("Server not initialized")
        return await self.session.call_tool(tool_name, arguments=arguments)

    async def cleanup(self) -> None:
        try:
            await self.exit_stack.aclose()
        except (RuntimeError, OSError, ConnectionError) as e:
            msg = str(e)
            benign = any(s in msg for s in (
                "cancel scope", "Event loop is closed", "already closed",
                "I/O operation on closed file",
            ))
            if not benign:
                logger.warning("Cleanup warning for '%s': %r", self.name, e)
        finally:
            self.session = None
            self.exit_stack = AsyncExitStack()


ServerFactory = Callable[[ToolServerConfig], Any]


@dataclass
class DiscoveryResult:
    definitions: List[ToolDefinition] = field(default_factory=list)
    invokers: Dict[str, RemoteInvoker] = field(default_factory=dict)
    successful_servers: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    collisions: List[Tuple[str, str]] = field(default_factory=list)  # (base name, assigned name)

    def entries(self) -> List[Tuple[ToolDefinition, RemoteInvoker]]:
        return [(d, self.invokers[d.name]) for d in self.definitions]

    def record_failure(self, server_name: str, error: str) -> None:
        logger.warning("MCP server '%s' failed (%s): %s", server_name, FailureKind.DISCOVERY_FAILED.value, error)
        self.failures[server_name] = error


class MCPDiscovery:
    """Lists tools from every configured MCP server concurrently, one task per server.

    No connection outlives a call: discovery opens and closes each server, and
    every invoker it hands out opens a fresh transport per invocation.
    """

    def __init__(self, server_factory: ServerFactory = MCPServer):
        self.server_factory = server_factory

    async def discover(self, server_configs: Sequence[ToolServerConfig],
                       reserved: Iterable[str] = ()) -> DiscoveryResult:
        result = DiscoveryResult()
        if not server_configs:
            return result

        listings = await asyncio.gather(
            *[self._list_server(cfg) for cfg in server_configs],
            return_exceptions=True,
        )

        taken: Set[str] = set(reserved)
        for cfg, listing in zip(server_configs, listings):
            if isinstance(listing, BaseException):
                if not isinstance(listing, Exception):
                    raise listing
                result.record_failure(cfg.name, format_exception(listing))
                continue
            _, tools, error = listing
            if error is not None:
                result.record_failure(cfg.name, error)
                continue
            result.successful_servers.append(cfg.name)
            for tool in tools:
                self._register_tool(result, taken, cfg, tool)

        if result.definitions:
            logger.info("Loaded %d tools from %d servers",
                        len(result.definitions), len(result.successful_servers))
        return result

    async def _list_server(self, cfg: ToolServerConfig) -> Tuple[ToolServerConfig, List[Any], Optional[str]]:
        server = self.server_factory(cfg)
        try:
            await server.initialize()
            tools_resp = await server.list_tools()
            tools = list(getattr(tools_resp, "tools", tools_resp) or [])
            return cfg, tools, None
        except Exception as e:
            logger.debug("Discovery error for '%s'", cfg.name, exc_info=True)
            return cfg, [], format_exception(e)
        finally:
            try:
                await server.cleanup()
            except Exception as e:
                # the listing stands even when teardown fails
                logger.warning("Cleanup of MCP server '%s' failed: %s", cfg.name, format_exception(e))

    def _register_tool(self, result: DiscoveryResult, taken: Set[str],
                       cfg: ToolServerConfig, tool: Any) -> None:
        raw_name = getattr(tool, "name", None)
        if not raw_name:
            logger.warning("[%s] skipping tool without a name", cfg.name)
            return
        try:
            schema = self._validate_schema(
                getattr(tool, "inputSchema", None) or getattr(tool, "input_schema", None),
                cfg.name, raw_name,
            )
        except ValueError as e:
            logger.warning("%s", e)
            return

        base_name = qualified_tool_name(cfg.name, raw_name)
        name = self._get_unique_name(base_name, taken)
        if name != base_name:
            logger.warning("Tool name collision: '%s' from server '%s' registered as '%s'",
                           base_name, cfg.name, name)
            result.collisions.append((base_name, name))
        taken.add(name)

        result.definitions.append(ToolDefinition(
            name=name,
            description=getattr(tool, "description", None) or "",
            parameters=schema,
        ))
        result.invokers[name] = RemoteInvoker(
            server_name=cfg.name,
            raw_name=raw_name,
            call=self._make_caller(cfg),
        )

    def _make_caller(self, cfg: ToolServerConfig):
        async def call(raw_name: str, arguments: Dict[str, Any]) -> str:
            server = self.server_factory(cfg)
            try:
                await server.initialize()
                return format_tool_result(await server.call_tool(raw_name, arguments))
            finally:
                try:
                    await server.cleanup()
                except Exception as e:
                    logger.warning("Cleanup of MCP server '%s' failed: %s", cfg.name, format_exception(e))
        return call

    @staticmethod
    def _get_unique_name(base_name: str, taken: Set[str]) -> str:
        name = base_name
        suffix = 2
        while name in taken:
            name = f"{base_name}_{suffix}"
            suffix += 1
        return name

    @staticmethod
    def _validate_schema(schema: Any, server_name: str, tool_name: str) -> Dict:
        if schema is None:
            return {"type": "object", "properties": {}}

        if not isinstance(schema, dict):
            raise ValueError(f"[{server_name}] Tool '{tool_name}' schema must be object")

        schema = dict(schema)
        if schema.get("type") != "object":
            schema["type"] = "object"

        if "properties" not in schema:
            schema["properties"] = {}
        elif not isinstance(schema["properties"], dict):
            raise ValueError(f"[{server_name}] Tool '{tool_name}' properties must be object")

        return schema


async def refresh_registry(discovery: MCPDiscovery, registry: ToolRegistry,
                           server_configs: Sequence[ToolServerConfig]) -> DiscoveryResult:
    """Run discovery from scratch and swap in the new dynamic tool table."""
    result = await discovery.discover(server_configs, reserved=registry.static_names)
    registry.replace_dynamic(result.entries())
    return result
