"""The conversation / confirmation loop.

``ChatSession`` is either idle or holding exactly one tool call that waits
for the operator's yes/no. Nothing runs without an explicit approval.
"""

import logging
from enum import Enum
from typing import Optional, Protocol

from .config import SessionConfig
from .errors import FailureKind, InvalidToolArgumentsError, ToolNotFoundError
from .gateway import ErrorReply, GatewayReply, LLMGateway
from .history import ConversationState, ToolCallRequest
from .registry import ToolRegistry
from .supervisor import ToolExecutionSupervisor, ToolResult, ToolStatus

logger = logging.getLogger(__name__)

DENIED_MESSAGE = "User denied execution."
REJECTED_MESSAGE = ("Rejected: only one tool call can await confirmation at a time. "
                    "Request it again after the current one is resolved.")


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_CONFIRMATION = "awaiting_confirmation"


class SessionUI(Protocol):
    def assistant(self, text: str) -> None: ...
    def tool_request(self, call: ToolCallRequest) -> None: ...
    def tool_result(self, call: ToolCallRequest, result: ToolResult) -> None: ...
    def error(self, text: str) -> None: ...
    def info(self, text: str) -> None: ...
    def status(self, text: str) -> None: ...


class ChatSession:
    def __init__(self, gateway: LLMGateway, registry: ToolRegistry,
                 supervisor: ToolExecutionSupervisor, session: SessionConfig,
                 conversation: ConversationState, ui: SessionUI):
        self.gateway = gateway
        self.registry = registry
        self.supervisor = supervisor
        self.session = session
        self.conversation = conversation
        self.ui = ui
        self.pending_call: Optional[ToolCallRequest] = None
        self.last_failure: Optional[FailureKind] = None

    @property
    def state(self) -> SessionState:
        if self.pending_call is not None:
            return SessionState.AWAITING_CONFIRMATION
        return SessionState.IDLE

    async def submit(self, text: str) -> SessionState:
        if self.pending_call is not None:
            self.ui.error("A tool call is waiting for confirmation. Answer y or n first.")
            return self.state

        self.conversation.add_user(text)
        cancelled, reply = await self.supervisor.race_cancel(self._ask_llm())
        if cancelled:
            self.conversation.pop_last()
            self.ui.info("Cancelled by user.")
            return self.state

        self._handle_reply(reply)
        return self.state

    async def confirm(self, approved: bool) -> SessionState:
        call = self.pending_call
        if call is None:
            self.ui.error("No tool call is waiting for confirmation.")
            return self.state
        self.pending_call = None

        if not approved:
            logger.info("User denied tool call %s (%s)", call.id, call.tool_name)
            self.conversation.add_tool_result(call.id, call.tool_name, DENIED_MESSAGE)
            self._handle_reply(await self._ask_llm())
            return self.state

        try:
            invoker = self.registry.resolve(call.tool_name)
            args = call.parse_arguments()
        except (ToolNotFoundError, InvalidToolArgumentsError) as e:
            # no second round trip: a broken request would likely repeat
            self.last_failure = e.kind
            message = f"Error: {e}"
            logger.warning("Tool call %s rejected (%s): %s", call.id, e.kind.value, message)
            self.conversation.add_tool_result(call.id, call.tool_name, message)
            self.ui.error(message)
            return self.state

        logger.info("Executing tool %s", call.tool_name)
        try:
            result = await self.supervisor.execute(invoker, args, self.session.tool_timeout_seconds)
        except Exception as e:
            logger.exception("Supervisor failed for tool %s", call.tool_name)
            result = ToolResult(ToolStatus.FAILED, f"Error: {e}")

        if result.failure_kind is not None:
            self.last_failure = result.failure_kind
        self.ui.tool_result(call, result)
        self.conversation.append(result.to_message(call.id, call.tool_name))
        self._handle_reply(await self._ask_llm())
        return self.state

    async def _ask_llm(self) -> GatewayReply:
        return await self.gateway.send(
            self.conversation, self.registry.list(), self.session, on_status=self.ui.status,
        )

    def _handle_reply(self, reply: GatewayReply) -> None:
        if isinstance(reply, ErrorReply):
            self.last_failure = reply.kind
            logger.warning("LLM call failed (%s): %s", reply.kind.value, reply.content)
            self.ui.error(reply.content)
            return

        self.conversation.append(reply.to_message())
        if not reply.tool_calls:
            if reply.content:
                self.ui.assistant(reply.content)
            return

        if reply.content:
            self.ui.assistant(reply.content)
        first, extra = reply.tool_calls[0], reply.tool_calls[1:]
        for call in extra:
            logger.warning("Model requested extra tool call %s (%s) while one is pending; rejecting",
                           call.id, call.tool_name)
            self.conversation.add_tool_result(call.id, call.tool_name, REJECTED_MESSAGE)
        self.pending_call = first
        self.ui.tool_request(first)

    def reset(self) -> None:
        self.pending_call = None
        self.last_failure = None
        self.conversation.reset()
