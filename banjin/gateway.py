import json
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import litellm

from .config import SessionConfig, detect_provider, forbidden_hint, normalize_model_name, provider_headers
from .errors import FailureKind
from .history import MAX_HISTORY_MESSAGES, ConversationState, ToolCallRequest, read_field
from .registry import ToolDefinition

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 40.0


@dataclass
class AssistantReply:
    content: Optional[str] = None
    tool_calls: List[ToolCallRequest] = field(default_factory=list)

    def to_message(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        return message


@dataclass
class ErrorReply:
    kind: FailureKind
    content: str
    status_code: Optional[int] = None


GatewayReply = Union[AssistantReply, ErrorReply]


def _parse_message(message: Any) -> AssistantReply:
    raw_calls = read_field(message, "tool_calls") or []
    return AssistantReply(
        content=read_field(message, "content"),
        tool_calls=[ToolCallRequest.from_raw(tc, i) for i, tc in enumerate(raw_calls)],
    )


def _error_body(exc: BaseException) -> str:
    response = getattr(exc, "response", None)
    text = getattr(response, "text", None)
    if isinstance(text, str) and text:
        return text
    return getattr(exc, "message", None) or str(exc) or type(exc).__name__


class LLMGateway:
    """Sends the conversation to an OpenAI-compatible ``/chat/completions`` endpoint.

    Every outcome is a return value: rate limits are retried here with
    exponential backoff, everything else becomes an ``ErrorReply``.
    """

    def __init__(self, completion: Optional[Callable[..., Awaitable[Any]]] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 history_limit: int = MAX_HISTORY_MESSAGES):
        self.completion = completion or litellm.acompletion
        self.sleep = sleep
        self.history_limit = history_limit

    def build_request(self, conversation: ConversationState,
                      tool_definitions: Sequence[ToolDefinition],
                      session: SessionConfig) -> Dict[str, Any]:
        provider = detect_provider(session.base_url)
        kwargs: Dict[str, Any] = {
            "model": normalize_model_name(session.model, provider),
            "messages": conversation.recent(self.history_limit),
            "temperature": session.temperature,
            # Plain OpenAI wire format against {api_base}/chat/completions
            "custom_llm_provider": "openai",
            "api_base": session.base_url.rstrip("/"),
            "api_key": session.api_key,
            "max_retries": 0,
        }
        if tool_definitions:
            kwargs["tools"] = [d.to_spec() for d in tool_definitions]
            kwargs["tool_choice"] = "auto"
        headers = provider_headers(provider)
        if headers:
            kwargs["extra_headers"] = headers
        return kwargs

    async def send(self, conversation: ConversationState,
                   tool_definitions: Sequence[ToolDefinition],
                   session: SessionConfig,
                   on_status: Optional[Callable[[str], None]] = None) -> GatewayReply:
        kwargs = self.build_request(conversation, tool_definitions, session)
        provider = detect_provider(session.base_url)
        backoff = INITIAL_BACKOFF_SECONDS

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await self.completion(**kwargs)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                status = getattr(e, "status_code", None)
                if status == 403:
                    return ErrorReply(
                        FailureKind.AUTH_OR_REQUEST_REJECTED,
                        f"Error calling LLM (403 Forbidden): {forbidden_hint(provider)}",
                        403,
                    )
                if status == 429:
                    if attempt == MAX_RETRIES:
                        break
                    message = f"Rate limit hit. Retrying in {backoff:g} seconds..."
                    logger.warning(message)
                    if on_status:
                        on_status(message)
                    await self.sleep(backoff)
                    backoff *= 2
                    continue
                logger.debug("LLM request failed", exc_info=True)
                details = f"{status}: {_error_body(e)}" if status else _error_body(e)
                return ErrorReply(FailureKind.TRANSPORT_ERROR, f"Error calling LLM: {details}", status)

            try:
                return _parse_message(read_field(read_field(response, "choices")[0], "message"))
            except (AttributeError, IndexError, KeyError, TypeError) as e:
                logger.debug("Malformed LLM response: %r", response)
                return ErrorReply(FailureKind.TRANSPORT_ERROR, f"Error calling LLM: malformed response ({e})")

        return ErrorReply(
            FailureKind.RATE_LIMITED,
            "Error calling LLM: Max retries exceeded due to rate limiting.",
            429,
        )


def describe_tool_call(call: ToolCallRequest) -> str:
    try:
        args = json.dumps(json.loads(call.arguments_json or "{}"), ensure_ascii=False)
    except json.JSONDecodeError:
        args = call.arguments_json
    return f"{call.tool_name} {args}"
