import json
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from .errors import InvalidToolArgumentsError

MAX_HISTORY_MESSAGES = 10


def read_field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def generate_tool_call_id(index: int, prefix: str = "call") -> str:
    return f"{prefix}_{index}"


@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    tool_name: str
    arguments_json: str

    @classmethod
    def from_raw(cls, raw: Any, index: int = 0) -> 'ToolCallRequest':
        func = read_field(raw, "function") or {}
        args = read_field(func, "arguments", "")
        if isinstance(args, dict):
            args = json.dumps(args, ensure_ascii=False)
        return cls(
            id=read_field(raw, "id") or generate_tool_call_id(index),
            tool_name=read_field(func, "name") or "",
            arguments_json=args or "",
        )

    def parse_arguments(self) -> Dict[str, Any]:
        if not self.arguments_json.strip():
            return {}
        try:
            args = json.loads(self.arguments_json)
        except json.JSONDecodeError as e:
            raise InvalidToolArgumentsError(f"Invalid JSON arguments: {str(e)[:100]}") from e
        if not isinstance(args, dict):
            raise InvalidToolArgumentsError("Tool arguments must be a JSON object")
        return args

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.tool_name, "arguments": self.arguments_json},
        }


def tool_message(tool_call_id: str, name: str, content: str) -> Dict[str, Any]:
    return {"role": "tool", "tool_call_id": tool_call_id, "name": name, "content": content}


class ConversationState:
    """Ordered chat history in OpenAI message format.

    A leading ``system`` message is the session context: it survives both
    ``reset()`` and the outgoing-window truncation done by ``recent()``.
    """

    def __init__(self, system_context: str = ""):
        self._messages: List[Dict[str, Any]] = []
        if system_context:
            self._messages.append({"role": "system", "content": system_context})

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return iter(list(self._messages))

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return list(self._messages)

    @property
    def system_message(self) -> Optional[Dict[str, Any]]:
        if self._messages and self._messages[0].get("role") == "system":
            return self._messages[0]
        return None

    def append(self, message: Dict[str, Any]) -> None:
        role = message.get("role")
        if role not in ("system", "user", "assistant", "tool"):
            raise ValueError(f"Unknown message role: {role!r}")
        if role == "tool" and (not message.get("tool_call_id") or "name" not in message):
            raise ValueError("tool messages need tool_call_id and name")
        if role == "system" and self._messages:
            raise ValueError("system context must be the first message")
        self._messages.append(message)

    def add_user(self, text: str) -> None:
        self.append({"role": "user", "content": text})

    def add_tool_result(self, tool_call_id: str, name: str, content: str) -> None:
        self.append(tool_message(tool_call_id, name, content))

    def pop_last(self) -> Optional[Dict[str, Any]]:
        if not self._messages or self._messages[-1] is self.system_message:
            return None
        return self._messages.pop()

    def reset(self) -> None:
        system = self.system_message
        self._messages = [system] if system else []

    def recent(self, limit: int = MAX_HISTORY_MESSAGES) -> List[Dict[str, Any]]:
        system = self.system_message
        body = self._messages[1:] if system else self._messages
        window = body[-limit:] if limit > 0 else []
        return ([system] if system else []) + list(window)
