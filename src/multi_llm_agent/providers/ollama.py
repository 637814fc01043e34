"""Ollama provider (local /api/chat endpoint)"""

import json
import logging
from typing import Any, Dict, Optional

import httpx

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
from .openai import mcp_tools_to_openai_format

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "http://localhost:11434"


class OllamaProvider(LLMProvider):
    """Local Ollama server. No API key; tool call ids are generated locally."""

    kind = "ollama"
    DEFAULT_MODEL = "llama3.1"
    requires_api_key = False

    def __init__(
        self,
        config: ProviderConfig,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(config, api_key=api_key, timeout=timeout, retry_backoff=retry_backoff)
        self.endpoint = (config.endpoint or DEFAULT_ENDPOINT).rstrip("/")
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self._client

    @staticmethod
    def format_history(history):
        """Convert universal history to Ollama chat messages"""
        messages = []
        for entry in history:
            role = entry.get("role")
            content = entry.get("content")

            if role in ("system", "user"):
                messages.append({"role": role, "content": content or ""})
            elif role == "assistant":
                items = content if isinstance(content, list) else [{"type": "text", "content": content}]
                text = "".join(
                    item.get("content") or "" for item in items if item.get("type") == "text"
                )
                message: Dict[str, Any] = {"role": "assistant", "content": text}
                tool_calls = [
                    {"function": {"name": item["name"], "arguments": item.get("arguments", {})}}
                    for item in items
                    if item.get("type") == "tool_call"
                ]
                if tool_calls:
                    message["tool_calls"] = tool_calls
                messages.append(message)
            elif role == "tool":
                for item in content or []:
                    if item.get("type") == "tool_result":
                        messages.append(
                            {
                                "role": "tool",
                                "content": item.get("content", ""),
                                "tool_name": item.get("name"),
                            }
                        )
            else:
                logger.warning("Skipping history entry with unknown role: %s", role)
        return messages

    async def _complete(self, history, tools, model, options) -> Completion:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": self.format_history(history),
            "stream": False,
        }
        ollama_tools = mcp_tools_to_openai_format(tools)
        if ollama_tools:
            payload["tools"] = ollama_tools
        if options:
            payload["options"] = dict(options)

        url = f"{self.endpoint}/api/chat"
        try:
            response = await self._get_client().post(url, json=payload)
        except httpx.TransportError as e:
            raise self.error(ProviderErrorKind.NETWORK, f"{url}: {e!r}", transient=True) from e

        if response.status_code >= 400:
            raise self.error_for_status(
                response.status_code, f"{url} returned {response.status_code}: {response.text}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise self.error(ProviderErrorKind.MALFORMED, f"Invalid JSON from {url}: {e}") from e

        return self._parse_response(data, model)

    def _parse_response(self, data: Any, model: str) -> Completion:
        if not isinstance(data, dict) or not isinstance(data.get("message"), dict):
            raise self.error(ProviderErrorKind.MALFORMED, "Response has no 'message' object")
        if data.get("error"):
            raise self.error(ProviderErrorKind.MALFORMED, str(data["error"]))

        message = data["message"]
        tool_calls = []
        for raw in message.get("tool_calls") or []:
            function = raw.get("function") or {}
            name = function.get("name")
            if not name:
                raise self.error(ProviderErrorKind.MALFORMED, "Tool call without function name")
            arguments = function.get("arguments") or {}
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments)
                except json.JSONDecodeError as e:
                    logger.warning("Failed to parse tool arguments JSON for '%s': %s", name, e)
                    arguments = {}
            tool_calls.append(
                ToolCallRequest(
                    id=raw.get("id") or new_tool_call_id(),
                    name=name,
                    arguments=arguments if isinstance(arguments, dict) else {},
                )
            )

        return Completion(
            text=message.get("content") or None,
            tool_calls=tool_calls,
            model=data.get("model") or model,
            finish_reason=data.get("done_reason"),
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
