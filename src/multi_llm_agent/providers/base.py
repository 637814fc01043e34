"""Base classes for LLM providers

This module defines the completion interface that every backend adapter
implements, together with the backend-neutral reply types.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import ProviderError, ProviderErrorKind
from ..snapshot import ProviderConfig

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0
DEFAULT_RETRY_BACKOFF = 1.0


@dataclass(frozen=True)
class ToolCallRequest:
    """A tool call requested by the model."""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Completion:
    """One model reply: final text, ordered tool calls, or both."""

    text: Optional[str] = None
    tool_calls: tuple[ToolCallRequest, ...] = ()
    model: Optional[str] = None
    finish_reason: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


def new_tool_call_id() -> str:
    """Generate an id for backends that do not assign tool call ids."""
    return f"call_{uuid.uuid4().hex[:24]}"


def _is_transient(error: BaseException) -> bool:
    return (
        isinstance(error, ProviderError)
        and error.kind is ProviderErrorKind.NETWORK
        and error.transient
    )


class LLMProvider(ABC):
    """Abstract base class for LLM providers

    Subclasses implement ``_complete`` for a single request and
    ``format_history`` for the wire conversion; ``complete`` adds model
    selection, option merging and the single retry on transient network
    failures.
    """

    kind: str = ""
    DEFAULT_MODEL: Optional[str] = None
    requires_api_key = True

    def __init__(
        self,
        config: ProviderConfig,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
    ):
        self.config = config
        self.api_key = api_key
        self.timeout = timeout
        self.retry_backoff = retry_backoff

    @property
    def id(self) -> str:
        return self.config.id

    def resolve_model(self, model: Optional[str] = None) -> Optional[str]:
        return model or self.config.default_model or self.DEFAULT_MODEL

    async def complete(
        self,
        history: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        model: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Completion:
        """Request one completion for the whole history.

        Args:
            history: Universal-format history. MUST NOT be mutated.
            tools: MCP tool definitions ({"name", "description", "inputSchema"})
            model: Model override; defaults to the provider's first model
            options: Extra request options merged over the configured ones

        Returns:
            Completion with tool calls in the order the backend returned them

        Raises:
            ProviderError: UNAUTHORIZED, RATE_LIMITED, NETWORK or MALFORMED
        """
        if self.requires_api_key and not self.api_key:
            raise ProviderError(
                ProviderErrorKind.UNAUTHORIZED, self.id, "API key is not configured"
            )

        resolved_model = self.resolve_model(model)
        if not resolved_model:
            raise ValueError(f"Provider '{self.id}' has no model configured")
        merged_options = {**self.config.options, **(options or {})}

        retrying = AsyncRetrying(
            stop=stop_after_attempt(2),
            wait=wait_exponential(multiplier=self.retry_backoff),
            retry=retry_if_exception(_is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                completion = await self._complete(
                    history, tools or [], resolved_model, merged_options
                )
        logger.debug(
            "Provider '%s' completed: model=%s tool_calls=%d finish_reason=%s",
            self.id,
            completion.model,
            len(completion.tool_calls),
            completion.finish_reason,
        )
        return completion

    @abstractmethod
    async def _complete(
        self,
        history: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        model: str,
        options: Dict[str, Any],
    ) -> Completion:
        """Send a single request and parse the reply."""

    @staticmethod
    @abstractmethod
    def format_history(history):
        """Convert universal history to the provider-specific wire format"""

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""
        return None

    def error(
        self,
        kind: ProviderErrorKind,
        detail: str,
        transient: bool = False,
        status_code: Optional[int] = None,
    ) -> ProviderError:
        return ProviderError(kind, self.id, detail, transient=transient, status_code=status_code)

    def error_for_status(self, status_code: int, detail: str) -> ProviderError:
        """Classify an HTTP status returned by a backend."""
        if status_code in (401, 403):
            return self.error(ProviderErrorKind.UNAUTHORIZED, detail, status_code=status_code)
        if status_code == 429:
            return self.error(ProviderErrorKind.RATE_LIMITED, detail, status_code=status_code)
        return self.error(
            ProviderErrorKind.NETWORK,
            detail,
            transient=status_code >= 500,
            status_code=status_code,
        )
