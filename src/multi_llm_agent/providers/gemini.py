"""Google Gemini provider implementation (google-genai SDK)"""

import json
import logging
from typing import Any, Dict, List, Optional

import google.genai as genai
import httpx
from google.genai import errors as genai_errors
from google.genai import types

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

# MCP Tool conversion functions (Gemini)


def _sanitize_schema_for_gemini(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Remove JSON Schema fields that Gemini API doesn't accept.

    Gemini only accepts: type, properties, required, description, items, enum.
    Removes validation keywords like minItems, maxItems, pattern, format, etc.
    """
    if not isinstance(schema, dict):
        return schema

    allowed_fields = {"type", "properties", "required", "description", "items", "enum"}

    cleaned = {}
    for key, value in schema.items():
        if key not in allowed_fields:
            continue

        if key == "properties" and isinstance(value, dict):
            cleaned[key] = {
                prop_name: _sanitize_schema_for_gemini(prop_schema)
                for prop_name, prop_schema in value.items()
            }
        elif key == "items" and isinstance(value, dict):
            cleaned[key] = _sanitize_schema_for_gemini(value)
        else:
            cleaned[key] = value

    return cleaned


def mcp_tools_to_gemini_format(mcp_tools: List[Dict[str, Any]]) -> Optional[List[types.Tool]]:
    """Convert MCP tool definitions to Gemini Tool format.

    Returns:
        A list containing a single Gemini Tool object, or None if no tools are provided.
    """
    if not mcp_tools:
        return None

    function_declarations = []
    for tool in mcp_tools:
        name = tool.get("name")
        if not name:
            logger.warning(
                "Skipping MCP tool without name. Tool data: %s",
                {k: v for k, v in tool.items() if k != "inputSchema"},
            )
            continue

        parameters = tool.get("inputSchema")
        if parameters and isinstance(parameters, dict):
            parameters = _sanitize_schema_for_gemini(parameters)
        # Gemini rejects an object schema without properties
        if not parameters or not parameters.get("properties"):
            parameters = None

        function_declarations.append(
            types.FunctionDeclaration(
                name=name,
                description=tool.get("description") or "",
                parameters=parameters,
            )
        )

    if not function_declarations:
        return None

    return [types.Tool(function_declarations=function_declarations)]


def _parse_tool_response_payload(response_payload):
    """Parse tool response payload into a dictionary for function_response.

    Handles dict, str, int, float, list, bool and None.
    """
    if response_payload is None:
        return {}

    if isinstance(response_payload, dict):
        return response_payload

    if isinstance(response_payload, str):
        try:
            parsed = json.loads(response_payload)
            return parsed if isinstance(parsed, dict) else {"result": parsed}
        except (json.JSONDecodeError, ValueError, RecursionError) as e:
            logger.debug("Failed to parse JSON payload: %s", e)
            return {"result": response_payload}

    if isinstance(response_payload, (int, float, list, bool)):
        return {"result": response_payload}

    logger.warning(
        "Tool response payload has unexpected type: %s. Using str() conversion.",
        type(response_payload).__name__,
    )
    return {"result": str(response_payload)}


def _coerce_function_args(raw_args: Any) -> Dict[str, Any]:
    if raw_args is None:
        return {}
    if isinstance(raw_args, dict):
        return raw_args
    try:
        return dict(raw_args)
    except (TypeError, ValueError) as e:
        logger.warning("Failed to convert to dict: %s (type: %s)", e, type(raw_args).__name__)
        return {}


class GeminiProvider(LLMProvider):
    """Google Gemini LLM provider"""

    kind = "gemini"
    DEFAULT_MODEL = "gemini-2.0-flash"

    def __init__(
        self,
        config: ProviderConfig,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
        client: Optional[Any] = None,
    ):
        super().__init__(config, api_key=api_key, timeout=timeout, retry_backoff=retry_backoff)
        self._client = client

    def _get_client(self):
        if self._client is None:
            http_options = types.HttpOptions(
                base_url=self.config.endpoint, timeout=int(self.timeout * 1000)
            )
            self._client = genai.Client(api_key=self.api_key, http_options=http_options)
        return self._client

    @staticmethod
    def format_history(history):
        """Convert universal history to Gemini contents.

        Returns:
            (system_instruction, contents). System messages are joined into the
            system instruction; consecutive tool results are merged into one
            ``user`` content of function_response parts.
        """
        system_parts = []
        contents = []
        for entry in history:
            role = entry.get("role")
            content = entry.get("content")

            if role == "system":
                if content:
                    system_parts.append(content)
            elif role == "user":
                contents.append({"role": "user", "parts": [{"text": content or ""}]})
            elif role == "assistant":
                items = content if isinstance(content, list) else [{"type": "text", "content": content}]
                parts = []
                for item in items:
                    if item.get("type") == "text" and item.get("content"):
                        parts.append({"text": item["content"]})
                    elif item.get("type") == "tool_call":
                        parts.append(
                            {
                                "function_call": {
                                    "name": item["name"],
                                    "args": item.get("arguments", {}),
                                }
                            }
                        )
                if parts:
                    contents.append({"role": "model", "parts": parts})
            elif role == "tool":
                parts = [
                    {
                        "function_response": {
                            "name": item.get("name"),
                            "response": _parse_tool_response_payload(item.get("content")),
                        }
                    }
                    for item in content or []
                    if item.get("type") == "tool_result"
                ]
                if not parts:
                    continue
                previous = contents[-1] if contents else None
                if previous and previous["role"] == "user" and "function_response" in previous["parts"][0]:
                    previous["parts"].extend(parts)
                else:
                    contents.append({"role": "user", "parts": parts})
            else:
                logger.warning("Skipping history entry with unknown role: %s", role)

        system_instruction = "\n\n".join(system_parts) if system_parts else None
        return system_instruction, contents

    async def _complete(self, history, tools, model, options) -> Completion:
        system_instruction, contents = self.format_history(history)
        config: Dict[str, Any] = dict(options)
        if system_instruction:
            config["system_instruction"] = system_instruction
        gemini_tools = mcp_tools_to_gemini_format(tools)
        if gemini_tools:
            config["tools"] = gemini_tools
            # Tool calls are executed by the agent, not by the SDK
            config["automatic_function_calling"] = {"disable": True}

        try:
            response = await self._get_client().aio.models.generate_content(
                model=model, contents=contents, config=config or None
            )
        except genai_errors.ClientError as e:
            raise self.error_for_status(e.code, str(e)) from e
        except genai_errors.ServerError as e:
            raise self.error(
                ProviderErrorKind.NETWORK, str(e), transient=True, status_code=e.code
            ) from e
        except genai_errors.APIError as e:
            raise self.error_for_status(e.code or 500, str(e)) from e
        except httpx.TransportError as e:
            raise self.error(ProviderErrorKind.NETWORK, str(e), transient=True) from e

        return self._parse_response(response, model)

    def _parse_response(self, response, model: str) -> Completion:
        candidates = getattr(response, "candidates", None)
        if not candidates:
            feedback = getattr(response, "prompt_feedback", None)
            raise self.error(
                ProviderErrorKind.MALFORMED, f"Response contains no candidates ({feedback})"
            )

        candidate = candidates[0]
        parts = (candidate.content.parts if candidate.content else None) or []

        text_parts = []
        tool_calls = []
        for part in parts:
            function_call = getattr(part, "function_call", None)
            if function_call is not None:
                if not function_call.name:
                    raise self.error(ProviderErrorKind.MALFORMED, "function_call without name")
                tool_calls.append(
                    ToolCallRequest(
                        id=function_call.id or new_tool_call_id(),
                        name=function_call.name,
                        arguments=_coerce_function_args(function_call.args),
                    )
                )
            elif getattr(part, "text", None) and not getattr(part, "thought", False):
                text_parts.append(part.text)

        finish_reason = candidate.finish_reason
        if finish_reason is not None:
            finish_reason = getattr(finish_reason, "value", str(finish_reason))

        return Completion(
            text="".join(text_parts) or None,
            tool_calls=tool_calls,
            model=getattr(response, "model_version", None) or model,
            finish_reason=finish_reason,
        )
