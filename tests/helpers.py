"""Helpers shared by the test modules."""

import sys
from pathlib import Path

from multi_llm_agent.mcp.server_config import ServerDescriptor
from multi_llm_agent.providers.base import Completion, LLMProvider, ToolCallRequest
from multi_llm_agent.snapshot import ProviderConfig

FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_tool_server.py"


def fake_server_descriptor(name="fake", *extra_args, timeout=10, **kwargs):
    """ServerDescriptor launching the stdlib fake tool server with this interpreter."""
    return ServerDescriptor(
        name=name,
        command=sys.executable,
        args=[str(FAKE_SERVER), *extra_args],
        timeout=timeout,
        **kwargs,
    )


class ScriptedProvider(LLMProvider):
    """Provider that replays a fixed list of completions and records each request."""

    kind = "scripted"
    DEFAULT_MODEL = "scripted-model"
    requires_api_key = False

    def __init__(self, completions, provider_id="scripted"):
        super().__init__(ProviderConfig(id=provider_id, kind="scripted"), retry_backoff=0)
        self._completions = list(completions)
        self.requests = []

    @staticmethod
    def format_history(history):
        return history

    async def _complete(self, history, tools, model, options):
        self.requests.append({"history": history, "tools": tools, "model": model})
        if not self._completions:
            raise AssertionError("ScriptedProvider ran out of completions")
        item = self._completions.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def tool_call(name, call_id, **arguments):
    return Completion(tool_calls=(ToolCallRequest(id=call_id, name=name, arguments=arguments),))


def text(value):
    return Completion(text=value, finish_reason="stop")
