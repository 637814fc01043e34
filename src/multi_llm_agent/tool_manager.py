"""Tool invocation routing.

Resolves a tool name to its owning server through static bindings, brings the
server up through the registry and classifies failures into scoped
``ToolError`` values. Transient failures (process exit, timeout) get exactly
one re-initialize-and-retry.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from .errors import (
    ProcessExited,
    ProtocolError,
    ProtocolTimeout,
    RemoteError,
    SessionCancelled,
    SpawnError,
    ToolError,
    ToolErrorKind,
    UnknownServerError,
)
from .mcp.registry import ServerRegistry
from .mcp.session import ToolResult
from .snapshot import ToolBinding

logger = logging.getLogger(__name__)


def _classify(error: ProtocolError) -> ToolErrorKind:
    if isinstance(error, ProtocolTimeout):
        return ToolErrorKind.TIMEOUT
    if isinstance(error, ProcessExited):
        return ToolErrorKind.PROCESS_EXITED
    if isinstance(error, RemoteError):
        return ToolErrorKind.REMOTE_ERROR
    if isinstance(error, SessionCancelled):
        return ToolErrorKind.CANCELLED
    return ToolErrorKind.MALFORMED_RESPONSE


class ToolManager:
    """Routes tool calls to MCP servers.

    Bindings are validated lazily: a binding may name a server that is not
    registered or not Ready yet, and that only matters when the tool is
    invoked.
    """

    def __init__(
        self,
        registry: ServerRegistry,
        bindings: Iterable[ToolBinding] = (),
        call_timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.call_timeout = call_timeout
        self._bindings: Dict[str, str] = {}
        self.set_bindings(bindings)

    def set_bindings(self, bindings: Iterable[ToolBinding]) -> None:
        """Replace the binding table wholesale.

        Raises:
            ValueError: If a tool name is bound more than once
        """
        table: Dict[str, str] = {}
        for binding in bindings:
            if binding.tool_name in table:
                raise ValueError(f"Tool '{binding.tool_name}' is bound more than once")
            table[binding.tool_name] = binding.server_name
        self._bindings = table

    def bindings(self) -> Dict[str, str]:
        return dict(self._bindings)

    def server_for(self, tool_name: str) -> Optional[str]:
        return self._bindings.get(tool_name)

    async def invoke(
        self,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> ToolResult:
        """Invoke a bound tool.

        Args:
            tool_name: Bound tool name
            arguments: Tool arguments as dict
            timeout: Per-call timeout; defaults to the server descriptor's
                     timeout, then to the manager's call timeout

        Returns:
            ToolResult from the server (``is_error`` may be set by the tool itself)

        Raises:
            ToolError: Scoped failure of this call
        """
        arguments = arguments or {}
        server = self._bindings.get(tool_name)
        if server is None:
            raise ToolError(
                ToolErrorKind.NOT_BOUND,
                tool_name,
                f"Tool '{tool_name}' is not bound to any MCP server",
            )
        if server not in self.registry:
            raise ToolError(
                ToolErrorKind.NOT_BOUND,
                tool_name,
                f"Tool '{tool_name}' is bound to unknown MCP server '{server}'",
                server=server,
            )

        try:
            session = await self.registry.ensure_ready(server)
        except UnknownServerError as e:
            raise ToolError(
                ToolErrorKind.NOT_BOUND,
                tool_name,
                f"Tool '{tool_name}' is bound to unknown MCP server '{server}'",
                server=server,
            ) from e
        except (SpawnError, ProtocolError) as e:
            raise ToolError(
                ToolErrorKind.SERVER_NOT_READY,
                tool_name,
                f"MCP server '{server}' is not ready: {e}",
                server=server,
            ) from e

        effective_timeout = timeout or self._server_timeout(server) or self.call_timeout
        try:
            return await session.call_tool(tool_name, arguments, timeout=effective_timeout)
        except (ProcessExited, ProtocolTimeout) as first:
            logger.warning(
                "Tool '%s' failed on server '%s' (%s); re-initializing and retrying once",
                tool_name,
                server,
                first,
            )
            first_error = first
        except ProtocolError as e:
            raise self._tool_error(tool_name, server, e) from e

        try:
            session = await self.registry.reinitialize(server, stale=session)
        except (SpawnError, ProtocolError, UnknownServerError) as e:
            logger.error("Re-initializing server '%s' failed: %s", server, e)
            raise self._tool_error(tool_name, server, first_error) from e

        try:
            return await session.call_tool(tool_name, arguments, timeout=effective_timeout)
        except ProtocolError as e:
            logger.error("Retry of tool '%s' on server '%s' failed: %s", tool_name, server, e)
            raise self._tool_error(tool_name, server, e) from e

    async def list_available(self, connect: bool = True) -> List[Dict[str, Any]]:
        """Merge the catalogs of all Ready servers.

        Args:
            connect: Bring bound servers up first. Failures are logged and the
                     server is skipped.

        Returns:
            List of tool dicts with name, description, inputSchema, server and
            ``bound`` (True when the tool's binding points at that server).
        """
        if connect:
            for server in sorted(set(self._bindings.values())):
                if server not in self.registry:
                    continue
                try:
                    await self.registry.ensure_ready(server)
                except (SpawnError, ProtocolError) as e:
                    logger.warning("Skipping tools of server '%s': %s", server, e)

        tools = []
        for server, session in self.registry.ready_sessions():
            for info in session.catalog.values():
                entry = info.to_dict()
                entry["server"] = server
                entry["bound"] = self._bindings.get(info.name) == server
                tools.append(entry)
        return tools

    async def advertised_tools(self, connect: bool = True) -> List[Dict[str, Any]]:
        """Tools the model may call: the bound subset of ``list_available()``."""
        return [
            {k: v for k, v in tool.items() if k not in ("server", "bound")}
            for tool in await self.list_available(connect=connect)
            if tool["bound"]
        ]

    def server_instructions(self) -> Dict[str, str]:
        """Usage instructions announced by Ready servers that have bound tools.

        Returns:
            Dict mapping server name to its ``initialize`` instructions
        """
        bound_servers = set(self._bindings.values())
        guidance = {}
        for server, session in self.registry.ready_sessions():
            if server in bound_servers and session.instructions and session.instructions.strip():
                guidance[server] = session.instructions.strip()
        return dict(sorted(guidance.items()))

    def _server_timeout(self, server: str) -> Optional[float]:
        descriptor = self.registry.descriptor(server)
        return descriptor.timeout if descriptor is not None else None

    @staticmethod
    def _tool_error(tool_name: str, server: str, error: ProtocolError) -> ToolError:
        kind = _classify(error)
        code = error.code if isinstance(error, RemoteError) else None
        return ToolError(kind, tool_name, str(error), server=server, code=code)
