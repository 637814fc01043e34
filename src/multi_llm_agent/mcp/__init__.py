"""
MCP (Model Context Protocol) stdio client package.
"""

from multi_llm_agent.mcp.registry import ReloadReport, ServerRegistry
from multi_llm_agent.mcp.server_config import ServerDescriptor
from multi_llm_agent.mcp.session import (
    Session,
    SessionStatus,
    ToolInfo,
    ToolResult,
    render_tool_content,
)

__all__ = [
    "ReloadReport",
    "ServerDescriptor",
    "ServerRegistry",
    "Session",
    "SessionStatus",
    "ToolInfo",
    "ToolResult",
    "render_tool_content",
]
