"""
MCP server descriptor data structures.

Descriptors are supplied by configuration or discovery and never mutated;
a reload produces new descriptors that are compared by value.
"""

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class ServerDescriptor:
    """Launch description for an MCP tool server.

    Attributes:
        name: Unique identifier for this server instance
        command: Command to launch the MCP server (e.g., "uvx", "python")
        args: Arguments for the server command (e.g., ["mcp-server-time"])
        env: Extra environment variables merged over the parent environment
        workdir: Optional working directory for the child process
        timeout: Per-call timeout in seconds for this server; None falls back to
                 the caller's default
        settings: Free-form per-server settings (e.g. default timezone)
    """

    name: str
    command: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    workdir: Optional[str] = None
    timeout: Optional[float] = None
    settings: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Accept lists from callers but keep the descriptor immutable
        object.__setattr__(self, "args", tuple(self.args))
        object.__setattr__(self, "env", dict(self.env))
        object.__setattr__(self, "settings", dict(self.settings))

    def validate(self) -> list[str]:
        """Validate descriptor and return list of issues.

        Returns:
            list[str]: List of validation error messages. Empty if valid.
        """
        issues = []

        if not self.name:
            issues.append("Server name cannot be empty")

        if not self.command:
            issues.append("Server command cannot be empty")

        if self.timeout is not None and self.timeout <= 0:
            issues.append(f"Invalid timeout: {self.timeout} (must be > 0)")

        return issues
