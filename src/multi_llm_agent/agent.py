"""Agent loop: completion, tool execution and history bookkeeping for one chat.

The loop repeatedly asks the provider for a completion and executes the
requested tools until:
- the model returns a completion without tool calls
- the per-turn iteration cap is used up (``ToolLoopExceeded``)
- the provider fails (``ProviderError`` propagates)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import AgentError, ToolError, ToolErrorKind, ToolLoopExceeded
from .history import ConversationHistory
from .providers.base import Completion, LLMProvider, ToolCallRequest
from .tool_manager import ToolManager

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 8
ERROR_PREFIX = "[ERROR] "


class AgentMode(str, Enum):
    AGENT = "agent"
    CHAT = "chat"


class AgentState(str, Enum):
    IDLE = "idle"
    AWAITING_COMPLETION = "awaiting_completion"
    EXECUTING_TOOLS = "executing_tools"


@dataclass(frozen=True)
class ToolTraceEntry:
    """One executed tool call and the text fed back to the model."""

    tool_call_id: str
    name: str
    arguments: Dict[str, Any]
    output: str
    is_error: bool = False
    error_kind: Optional[ToolErrorKind] = None


@dataclass(frozen=True)
class TurnResult:
    """Result of ``Agent.handle_turn``.

    Attributes:
        text: Final assistant text ("" when the model returned none)
        tool_trace: Executed tool calls in execution order
        iterations: Number of tool-call batches executed in this turn
    """

    text: str
    tool_trace: tuple[ToolTraceEntry, ...] = field(default_factory=tuple)
    iterations: int = 0


class Agent:
    """Drives one conversation.

    Each Agent owns its history; turns on the same Agent are serialized.
    Registry and sessions are shared through the ToolManager and are never
    touched by ``reset()``.
    """

    def __init__(
        self,
        provider: LLMProvider,
        tool_manager: Optional[ToolManager] = None,
        model: Optional[str] = None,
        system_prompt: Optional[str] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        mode: AgentMode = AgentMode.AGENT,
        options: Optional[Dict[str, Any]] = None,
    ):
        if max_iterations < 0:
            raise ValueError("max_iterations must be >= 0")
        if mode is AgentMode.AGENT and tool_manager is None:
            raise ValueError("Agent mode requires a ToolManager")

        self.provider = provider
        self.tool_manager = tool_manager
        self.model = model
        self.max_iterations = max_iterations
        self.mode = AgentMode(mode)
        self.options = dict(options or {})
        self._history = ConversationHistory(system_prompt)
        self._state = AgentState.IDLE
        self._lock = asyncio.Lock()
        self.total_iterations = 0
        self.turns = 0

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def history(self) -> List[Dict[str, Any]]:
        return self._history.entries()

    @property
    def system_prompt(self) -> Optional[str]:
        return self._history.system_prompt

    async def handle_turn(self, user_text: str) -> TurnResult:
        """Run one user turn to completion.

        Raises:
            ProviderError: The provider failed; already appended messages stay
            ToolLoopExceeded: The model kept requesting tools past the cap
        """
        async with self._lock:
            try:
                return await self._run_turn(user_text)
            finally:
                self._state = AgentState.IDLE

    async def _run_turn(self, user_text: str) -> TurnResult:
        self._history.append_user(user_text)
        self.turns += 1

        tools: List[Dict[str, Any]] = []
        guidance: Dict[str, str] = {}
        if self.mode is AgentMode.AGENT:
            tools = await self.tool_manager.advertised_tools()
            guidance = self.tool_manager.server_instructions()

        trace: List[ToolTraceEntry] = []
        iterations = 0
        while True:
            self._state = AgentState.AWAITING_COMPLETION
            completion: Completion = await self.provider.complete(
                self._request_history(guidance), tools, model=self.model, options=self.options
            )

            if self.mode is AgentMode.CHAT or not completion.tool_calls:
                if completion.tool_calls:
                    logger.debug(
                        "Ignoring %d tool call(s) in chat mode", len(completion.tool_calls)
                    )
                text = completion.text or ""
                self._history.append_assistant(text)
                return TurnResult(text=text, tool_trace=tuple(trace), iterations=iterations)

            if iterations >= self.max_iterations:
                logger.warning(
                    "Tool loop exceeded %d iteration(s); aborting turn", self.max_iterations
                )
                raise ToolLoopExceeded(self.max_iterations)

            iterations += 1
            self.total_iterations += 1
            self._history.append_assistant(completion.text, completion.tool_calls)

            self._state = AgentState.EXECUTING_TOOLS
            for call in completion.tool_calls:
                entry = await self._execute(call)
                self._history.append_tool_result(
                    call.id, call.name, entry.output, is_error=entry.is_error
                )
                trace.append(entry)

    def _request_history(self, guidance: Dict[str, str]) -> List[Dict[str, Any]]:
        # Server guidance goes into the system message sent to the provider;
        # the stored history keeps the plain system prompt
        entries = self._history.entries()
        if not guidance:
            return entries
        text = "\n".join(
            f"Server '{server}' guidance: {instruction}" for server, instruction in guidance.items()
        )
        if entries and entries[0]["role"] == "system":
            entries[0] = {"role": "system", "content": f"{entries[0]['content']}\n\n{text}"}
        else:
            entries.insert(0, {"role": "system", "content": text})
        return entries

    async def _execute(self, call: ToolCallRequest) -> ToolTraceEntry:
        logger.info("Executing tool '%s' (id=%s)", call.name, call.id)
        try:
            result = await self.tool_manager.invoke(call.name, call.arguments)
        except ToolError as e:
            logger.warning("Tool '%s' failed: %s", call.name, e)
            return ToolTraceEntry(
                tool_call_id=call.id,
                name=call.name,
                arguments=dict(call.arguments),
                output=f"{ERROR_PREFIX}{e}",
                is_error=True,
                error_kind=e.kind,
            )

        output = result.text
        if result.is_error:
            output = f"{ERROR_PREFIX}{output}"
        return ToolTraceEntry(
            tool_call_id=call.id,
            name=call.name,
            arguments=dict(call.arguments),
            output=output,
            is_error=result.is_error,
        )

    def reset(self) -> None:
        """Clear the conversation. Safe to call repeatedly.

        Raises:
            AgentError: A turn is in progress
        """
        if self._lock.locked():
            raise AgentError("Cannot reset the conversation while a turn is in progress")
        self._history.reset()
        self.total_iterations = 0
        self.turns = 0
        self._state = AgentState.IDLE
