import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .errors import ToolNameCollisionError, ToolNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_spec(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class NativeInvoker:
    """Local function. Sync callables run in a worker thread."""

    func: Callable[..., Any]
    kind: str = field(default="native", init=False)

    async def __call__(self, arguments: Dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(self.func):
            return await self.func(**arguments)
        return await asyncio.to_thread(self.func, **arguments)


@dataclass(frozen=True)
class RemoteInvoker:
    """Tool hosted on an MCP server; ``call`` receives the raw tool name."""

    server_name: str
    raw_name: str
    call: Callable[[str, Dict[str, Any]], Awaitable[str]]
    kind: str = field(default="remote", init=False)

    async def __call__(self, arguments: Dict[str, Any]) -> str:
        return await self.call(self.raw_name, arguments)


Invoker = Union[NativeInvoker, RemoteInvoker]


class ToolRegistry:
    def __init__(self):
        self._static: Dict[str, Tuple[ToolDefinition, Invoker]] = {}
        self._dynamic: Dict[str, Tuple[ToolDefinition, Invoker]] = {}

    def register(self, definition: ToolDefinition, invoker: Invoker) -> None:
        if definition.name in self._static or definition.name in self._dynamic:
            raise ToolNameCollisionError(f"Tool '{definition.name}' is already registered")
        self._static[definition.name] = (definition, invoker)

    def tool(self, description: str, parameters: Optional[Dict[str, Any]] = None, name: Optional[str] = None):
        def decorator(func):
            definition = ToolDefinition(
                name=name or func.__name__,
                description=description,
                parameters=parameters or {"type": "object", "properties": {}},
            )
            self.register(definition, NativeInvoker(func))
            return func
        return decorator

    def replace_dynamic(self, entries: Iterable[Tuple[ToolDefinition, Invoker]]) -> None:
        staged: Dict[str, Tuple[ToolDefinition, Invoker]] = {}
        for definition, invoker in entries:
            if definition.name in self._static:
                raise ToolNameCollisionError(
                    f"Discovered tool '{definition.name}' clashes with a built-in tool"
                )
            if definition.name in staged:
                raise ToolNameCollisionError(f"Discovered tool '{definition.name}' is duplicated")
            staged[definition.name] = (definition, invoker)
        # single assignment so readers never see a half-built table
        self._dynamic = staged
        logger.debug("Dynamic tool table replaced: %d tools", len(staged))

    def resolve(self, name: str) -> Invoker:
        entry = self._static.get(name) or self._dynamic.get(name)
        if entry is None:
            raise ToolNotFoundError(name)
        return entry[1]

    def __contains__(self, name: str) -> bool:
        return name in self._static or name in self._dynamic

    def list(self) -> List[ToolDefinition]:
        return [d for d, _ in self._static.values()] + [d for d, _ in self._dynamic.values()]

    def specs(self) -> List[Dict[str, Any]]:
        return [d.to_spec() for d in self.list()]

    @property
    def static_names(self) -> List[str]:
        return list(self._static)

    def dynamic_definitions(self) -> List[ToolDefinition]:
        return [d for d, _ in self._dynamic.values()]

    def get_server_tools_map(self) -> Dict[str, List[str]]:
        result: Dict[str, List[str]] = {}
        for name, (_, invoker) in self._dynamic.items():
            if isinstance(invoker, RemoteInvoker):
                result.setdefault(invoker.server_name, []).append(name)
        return result
