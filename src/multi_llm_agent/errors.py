"""Error taxonomy shared by sessions, the tool manager, providers and the agent.

Session level errors (``ProtocolError`` and subclasses) are local to the call
that raised them. The tool manager converts them into ``ToolError`` values that
the agent feeds back to the model, while ``ProviderError`` aborts a whole turn.
"""

from enum import Enum
from typing import Optional


class SpawnError(Exception):
    """The tool server process could not be launched."""

    def __init__(self, server: str, message: str):
        super().__init__(f"Failed to spawn MCP server '{server}': {message}")
        self.server = server


class ProtocolError(Exception):
    """Base class for failures of a single request on a session."""

    def __init__(self, server: str, message: str):
        super().__init__(message)
        self.server = server


class ProtocolTimeout(ProtocolError):
    def __init__(self, server: str, method: str, timeout: float):
        super().__init__(
            server, f"MCP server '{server}' did not answer '{method}' within {timeout}s"
        )
        self.method = method
        self.timeout = timeout


class MalformedResponse(ProtocolError):
    def __init__(self, server: str, detail: str):
        super().__init__(server, f"MCP server '{server}' returned a malformed response: {detail}")
        self.detail = detail


class RemoteError(ProtocolError):
    """JSON-RPC error object returned by the server."""

    def __init__(self, server: str, code: int, message: str):
        super().__init__(server, f"MCP server '{server}' returned error {code}: {message}")
        self.code = code
        self.remote_message = message


class ProcessExited(ProtocolError):
    def __init__(self, server: str, returncode: Optional[int] = None):
        detail = f" (exit code {returncode})" if returncode is not None else ""
        super().__init__(server, f"MCP server '{server}' terminated unexpectedly{detail}")
        self.returncode = returncode


class SessionCancelled(ProtocolError):
    def __init__(self, server: str):
        super().__init__(server, f"MCP server '{server}' request cancelled (session closed)")


class UnknownServerError(KeyError):
    """No server with the given name is registered."""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self):
        return f"MCP server '{self.name}' is not registered"


class ServerNotReadyError(RuntimeError):
    def __init__(self, name: str, status: str):
        super().__init__(f"MCP server '{name}' is not ready (status: {status})")
        self.name = name
        self.status = status


class ToolErrorKind(str, Enum):
    NOT_BOUND = "not_bound"
    SERVER_NOT_READY = "server_not_ready"
    TIMEOUT = "timeout"
    PROCESS_EXITED = "process_exited"
    REMOTE_ERROR = "remote_error"
    MALFORMED_RESPONSE = "malformed_response"
    CANCELLED = "cancelled"


class ToolError(Exception):
    """Failure of one tool invocation, scoped to that call only."""

    def __init__(
        self,
        kind: ToolErrorKind,
        tool_name: str,
        message: str,
        server: Optional[str] = None,
        code: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.tool_name = tool_name
        self.server = server
        self.code = code

    @property
    def retryable(self) -> bool:
        return self.kind in (ToolErrorKind.TIMEOUT, ToolErrorKind.PROCESS_EXITED)


class ProviderErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    NETWORK = "network"
    MALFORMED = "malformed"


class ProviderError(Exception):
    """A completion request failed. Aborts the current turn."""

    def __init__(
        self,
        kind: ProviderErrorKind,
        provider_id: str,
        detail: str,
        transient: bool = False,
        status_code: Optional[int] = None,
    ):
        super().__init__(f"Provider '{provider_id}' {kind.value} error: {detail}")
        self.kind = kind
        self.provider_id = provider_id
        self.detail = detail
        self.transient = transient
        self.status_code = status_code


class AgentError(Exception):
    """Base class for orchestration failures."""


class ToolLoopExceeded(AgentError):
    def __init__(self, max_iterations: int):
        super().__init__(
            f"Agent exceeded the maximum of {max_iterations} tool iterations in one turn"
        )
        self.max_iterations = max_iterations
