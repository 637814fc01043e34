"""
multi-llm-agent: tool-augmented LLM agent core.

Bridges LLM providers (OpenAI, Gemini, Ollama) and MCP tool servers spoken
to over stdio JSON-RPC.
"""

from .agent import Agent, AgentMode, AgentState, ToolTraceEntry, TurnResult
from .core import AgentCore
from .errors import (
    AgentError,
    ProtocolError,
    ProviderError,
    ProviderErrorKind,
    SpawnError,
    ToolError,
    ToolErrorKind,
    ToolLoopExceeded,
)
from .mcp import ReloadReport, ServerDescriptor, ServerRegistry, Session, SessionStatus
from .providers import Completion, LLMProvider, ToolCallRequest, create_provider
from .runtime import init_runtime
from .snapshot import CoreSnapshot, ProviderConfig, ToolBinding, snapshot_from_mapping
from .tool_manager import ToolManager

__version__ = "0.1.0"

__all__ = [
    "Agent",
    "AgentCore",
    "AgentError",
    "AgentMode",
    "AgentState",
    "Completion",
    "CoreSnapshot",
    "LLMProvider",
    "ProtocolError",
    "ProviderConfig",
    "ProviderError",
    "ProviderErrorKind",
    "ReloadReport",
    "ServerDescriptor",
    "ServerRegistry",
    "Session",
    "SessionStatus",
    "SpawnError",
    "ToolBinding",
    "ToolCallRequest",
    "ToolError",
    "ToolErrorKind",
    "ToolLoopExceeded",
    "ToolManager",
    "ToolTraceEntry",
    "TurnResult",
    "create_provider",
    "init_runtime",
    "snapshot_from_mapping",
]
