"""OpenAI chat completions provider"""

import json
import logging
from typing import Any, Dict, List, Optional

import openai

from ..errors import ProviderErrorKind
from ..snapshot import ProviderConfig
from .base import (
    DEFAULT_RETRY_BACKOFF,
    DEFAULT_TIMEOUT,
    Completion,
    LLMProvider,
    ToolCallRequest,
    new_tool_call_id,
)

logger = logging.getLogger(__name__)


# MCP Tool conversion functions


def mcp_tools_to_openai_format(mcp_tools: List[Dict[str, Any]]) -> Optional[List[Dict[str, Any]]]:
    """Convert MCP tool definitions to OpenAI tools format.

    Args:
        mcp_tools: List of MCP tool definitions with structure:
            [{"name": str, "description": str, "inputSchema": dict}, ...]

    Returns:
        List of OpenAI tool definitions:
            [{"type": "function", "function": {"name": str, ...}}, ...]
        or None if no tools are provided.
    """
    if not mcp_tools:
        return None

    openai_tools = []
    for tool in mcp_tools:
        name = tool.get("name")
        if not name:
            logger.warning(
                "Skipping MCP tool without name. Tool data: %s",
                {k: v for k, v in tool.items() if k != "inputSchema"},
            )
            continue

        openai_tools.append(
            {
                "type": "function",
                "function": {
                    "name": name,
                    "description": tool.get("description") or "",
                    "parameters": tool.get("inputSchema") or {"type": "object", "properties": {}},
                },
            }
        )

    return openai_tools if openai_tools else None


def parse_openai_tool_call(tool_call: Any) -> ToolCallRequest:
    """Parse an OpenAI tool_call into a ToolCallRequest.

    Args:
        tool_call: SDK object or dict with structure:
            {"id": str, "type": "function", "function": {"name": str, "arguments": str}}
    """
    if hasattr(tool_call, "model_dump"):
        tool_call = tool_call.model_dump()

    function = tool_call.get("function") or {}
    name = function.get("name")
    args_json = function.get("arguments") or "{}"
    tool_call_id = tool_call.get("id")

    if not tool_call_id:
        logger.warning("OpenAI tool_call missing 'id' field (name=%s); generating one", name)
        tool_call_id = new_tool_call_id()

    try:
        arguments = json.loads(args_json) if isinstance(args_json, str) else dict(args_json)
    except (json.JSONDecodeError, TypeError, ValueError) as e:
        logger.warning("Failed to parse tool arguments JSON for '%s': %s", name, e)
        arguments = {}
    if not isinstance(arguments, dict):
        arguments = {"value": arguments}

    return ToolCallRequest(id=tool_call_id, name=name, arguments=arguments)


class OpenAIProvider(LLMProvider):
    """OpenAI (or OpenAI-compatible endpoint) provider

    The async client is created lazily and reused across requests.
    """

    kind = "openai"
    DEFAULT_MODEL = "gpt-4o"

    def __init__(
        self,
        config: ProviderConfig,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
        client: Optional[Any] = None,
    ):
        super().__init__(config, api_key=api_key, timeout=timeout, retry_backoff=retry_backoff)
        # Self-hosted compatible endpoints usually accept any key
        self.requires_api_key = not config.endpoint
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = openai.AsyncOpenAI(
                api_key=self.api_key or "unused",
                base_url=self.config.endpoint,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    @staticmethod
    def format_history(history):
        """Convert universal history to OpenAI chat messages

        Assistant text and tool calls share one message; each tool result
        becomes a ``tool`` role message carrying its ``tool_call_id``.
        """
        messages = []
        for entry in history:
            role = entry.get("role")
            content = entry.get("content")

            if role in ("system", "user"):
                messages.append({"role": role, "content": content or ""})
            elif role == "assistant":
                items = content if isinstance(content, list) else [{"type": "text", "content": content}]
                text_items = []
                tool_calls = []
                for item in items:
                    if item.get("type") == "text" and item.get("content"):
                        text_items.append(item["content"])
                    elif item.get("type") == "tool_call":
                        tool_calls.append(
                            {
                                "id": item["tool_call_id"],
                                "type": "function",
                                "function": {
                                    "name": item["name"],
                                    "arguments": json.dumps(item.get("arguments", {})),
                                },
                            }
                        )
                message: Dict[str, Any] = {
                    "role": "assistant",
                    "content": "".join(text_items) if text_items else None,
                }
                if tool_calls:
                    message["tool_calls"] = tool_calls
                if message["content"] is None and not tool_calls:
                    message["content"] = ""
                messages.append(message)
            elif role == "tool":
                for item in content or []:
                    if item.get("type") != "tool_result":
                        logger.warning("Skipping non-tool_result item in role='tool': %s", item)
                        continue
                    messages.append(
                        {
                            "role": "tool",
                            "tool_call_id": item["tool_call_id"],
                            "content": item.get("content", ""),
                        }
                    )
            else:
                logger.warning("Skipping history entry with unknown role: %s", role)
        return messages

    async def _complete(self, history, tools, model, options) -> Completion:
        params: Dict[str, Any] = {
            **options,
            "model": model,
            "messages": self.format_history(history),
        }
        openai_tools = mcp_tools_to_openai_format(tools)
        if openai_tools:
            params["tools"] = openai_tools
            params["tool_choice"] = "auto"

        try:
            response = await self._get_client().chat.completions.create(**params)
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise self.error(
                ProviderErrorKind.UNAUTHORIZED, str(e), status_code=e.status_code
            ) from e
        except openai.RateLimitError as e:
            raise self.error(
                ProviderErrorKind.RATE_LIMITED, str(e), status_code=e.status_code
            ) from e
        except openai.APIStatusError as e:
            raise self.error_for_status(e.status_code, str(e)) from e
        except openai.APIConnectionError as e:
            # Includes APITimeoutError
            raise self.error(ProviderErrorKind.NETWORK, str(e), transient=True) from e

        return self._parse_response(response, model)

    def _parse_response(self, response, model: str) -> Completion:
        choices = getattr(response, "choices", None)
        if not choices:
            raise self.error(ProviderErrorKind.MALFORMED, "Response contains no choices")

        choice = choices[0]
        message = getattr(choice, "message", None)
        if message is None:
            raise self.error(ProviderErrorKind.MALFORMED, "Response choice has no message")

        content = message.content
        if isinstance(content, list):
            content = "".join(part.text if hasattr(part, "text") else str(part) for part in content)

        tool_calls = [parse_openai_tool_call(tc) for tc in (message.tool_calls or [])]
        for call in tool_calls:
            if not call.name:
                raise self.error(ProviderErrorKind.MALFORMED, "Tool call without function name")

        return Completion(
            text=content or None,
            tool_calls=tool_calls,
            model=getattr(response, "model", None) or model,
            finish_reason=getattr(choice, "finish_reason", None),
        )

    async def aclose(self) -> None:
        if self._client is not None and hasattr(self._client, "close"):
            await self._client.close()
