"""Conversation history in the universal message format.

    {"role": "system" | "user", "content": str}
    {"role": "assistant", "content": [{"type": "text", "content": str},
                                      {"type": "tool_call", "tool_call_id": str,
                                       "name": str, "arguments": dict}, ...]}
    {"role": "tool", "content": [{"type": "tool_result", "tool_call_id": str,
                                  "name": str, "content": str, "is_error": bool}]}
"""

import copy
import logging
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

ALL_ROLES = {"system", "user", "assistant", "tool"}


def validate_history_entry(entry: Dict[str, Any]) -> None:
    """Validate a single history entry for structural correctness.

    Raises:
        ValueError: If entry structure is invalid

    Examples:
        validate_history_entry({"role": "user", "content": "hello"})
        # Valid - no exception

        validate_history_entry({"role": "invalid_role", "content": "test"})
        # Raises ValueError
    """
    if not isinstance(entry, dict):
        raise ValueError(f"History entry must be dict, got {type(entry).__name__}")

    role = entry.get("role")
    if role not in ALL_ROLES:
        raise ValueError(f"Invalid role: '{role}'. Must be one of {sorted(ALL_ROLES)}")

    content = entry.get("content")
    if content is None:
        raise ValueError("History entry must have 'content' field")

    if role in ("system", "user"):
        if not isinstance(content, str):
            raise ValueError(f"role='{role}' content must be str, got {type(content).__name__}")
        return

    if not isinstance(content, list):
        raise ValueError(f"Structured content must be list, got {type(content).__name__}")

    for i, item in enumerate(content):
        if not isinstance(item, dict):
            raise ValueError(f"content[{i}] must be dict, got {type(item).__name__}")
        item_type = item.get("type")

        if role == "assistant":
            if item_type == "text":
                continue
            if item_type != "tool_call":
                raise ValueError(f"Invalid assistant item type '{item_type}' at content[{i}]")
            if not item.get("tool_call_id") or not item.get("name"):
                raise ValueError(f"tool_call needs 'tool_call_id' and 'name' at content[{i}]")
            if not isinstance(item.get("arguments", {}), dict):
                raise ValueError(f"tool_call arguments must be dict at content[{i}]")
        else:
            if item_type != "tool_result":
                raise ValueError(
                    f"role='tool' can only contain type='tool_result', "
                    f"got type='{item_type}' at content[{i}]"
                )
            if not item.get("tool_call_id"):
                raise ValueError(f"tool_result must have 'tool_call_id' field at content[{i}]")

    if role == "tool" and len(content) != 1:
        raise ValueError("role='tool' must carry exactly one tool_result")


class ConversationHistory:
    """Append-only message list for one chat.

    ``entries()`` returns a deep copy, so providers and callers cannot mutate
    the stored history.
    """

    def __init__(self, system_prompt: Optional[str] = None):
        self.system_prompt = system_prompt
        self._entries: List[Dict[str, Any]] = []
        self.reset()

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._entries)

    def append(self, entry: Dict[str, Any]) -> None:
        validate_history_entry(entry)
        self._entries.append(copy.deepcopy(entry))

    def append_user(self, text: str) -> None:
        self.append({"role": "user", "content": text})

    def append_assistant(
        self, text: Optional[str] = None, tool_calls: Iterable[Any] = ()
    ) -> None:
        """Append one assistant message.

        Args:
            text: Assistant text (may be empty when only tools are called)
            tool_calls: ``ToolCallRequest`` objects, in the order to execute them
        """
        content: List[Dict[str, Any]] = []
        if text:
            content.append({"type": "text", "content": text})
        for call in tool_calls:
            content.append(
                {
                    "type": "tool_call",
                    "tool_call_id": call.id,
                    "name": call.name,
                    "arguments": dict(call.arguments),
                }
            )
        if not content:
            content.append({"type": "text", "content": ""})
        self.append({"role": "assistant", "content": content})

    def append_tool_result(
        self, tool_call_id: str, name: str, content: str, is_error: bool = False
    ) -> None:
        self.append(
            {
                "role": "tool",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_call_id": tool_call_id,
                        "name": name,
                        "content": content,
                        "is_error": is_error,
                    }
                ],
            }
        )

    def reset(self) -> None:
        """Drop all messages, keeping only the system prompt."""
        self._entries = []
        if self.system_prompt and self.system_prompt.strip():
            self._entries.append({"role": "system", "content": self.system_prompt})
