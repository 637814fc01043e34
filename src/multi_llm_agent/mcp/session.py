"""
MCP stdio session: one child tool server process and its JSON-RPC stream.

The session writes newline-delimited JSON-RPC requests to the child's stdin
and a background reader task matches responses on stdout to their waiters by
request id. Payloads are validated against the ``mcp.types`` models.
"""

import asyncio
import itertools
import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from mcp import types
from pydantic import ValidationError

from ..errors import (
    MalformedResponse,
    ProcessExited,
    ProtocolError,
    ProtocolTimeout,
    RemoteError,
    SessionCancelled,
    SpawnError,
)
from .server_config import ServerDescriptor

logger = logging.getLogger(__name__)

CLIENT_NAME = "multi-llm-agent"
CLIENT_VERSION = "0.1.0"
DEFAULT_HANDSHAKE_TIMEOUT = 10.0
DEFAULT_CALL_TIMEOUT = 120.0

# Grace period between terminate() and kill() on close
_TERMINATE_GRACE_SECONDS = 2.0
# Tool servers may return large payloads (e.g. base64 images) on one line
_STREAM_LIMIT = 16 * 1024 * 1024


class SessionStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(frozen=True)
class ToolInfo:
    """Catalog entry for one tool exposed by a server."""

    name: str
    description: Optional[str] = None
    input_schema: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description or "",
            "inputSchema": self.input_schema,
        }


def render_tool_content(content: List[Dict[str, Any]]) -> str:
    """Flatten MCP result content items into plain text for the model.

    Text items are used verbatim; resources fall back to their URI; binary
    items (image, audio) become placeholders; unknown items are stringified.
    """
    text_parts = []
    for item in content:
        item_type = item.get("type")

        if item_type == "text":
            text_parts.append(item.get("text", ""))
        elif item_type == "resource":
            resource = item.get("resource", {})
            if "text" in resource:
                text_parts.append(resource["text"])
            elif "uri" in resource:
                mime_type = resource.get("mimeType", "unknown")
                text_parts.append(f"[Resource: {resource['uri']} ({mime_type})]")
        elif item_type == "resource_link":
            text_parts.append(f"[Resource: {item.get('uri', '')}]")
        elif item_type in ("image", "audio"):
            mime_type = item.get("mimeType", item_type)
            text_parts.append(f"[{item_type.capitalize()}: {mime_type}]")
        else:
            text_parts.append(f"[Unknown content: {json.dumps(item, ensure_ascii=False)}]")
            logger.debug("Unknown content type stringified: type=%s", item_type)

    return "\n".join(text_parts) if text_parts else "(no text output)"


@dataclass(frozen=True)
class ToolResult:
    """Result of a ``tools/call`` request."""

    content: List[Dict[str, Any]] = field(default_factory=list)
    is_error: bool = False
    structured_content: Optional[Dict[str, Any]] = None

    @property
    def text(self) -> str:
        return render_tool_content(self.content)

    def to_dict(self) -> Dict[str, Any]:
        return {"content": self.content, "isError": self.is_error}


def _normalize_id(raw_id: Any) -> Optional[int]:
    # Outbound ids are ints; tolerate servers that echo them back as strings
    if isinstance(raw_id, bool):
        return None
    if isinstance(raw_id, int):
        return raw_id
    if isinstance(raw_id, str) and raw_id.isdigit():
        return int(raw_id)
    return None


class Session:
    """Connection to one MCP tool server over stdio.

    Lifecycle: ``start()`` launches the process, ``initialize()`` performs the
    handshake, ``list_tools()`` fills the catalog, ``call_tool()`` executes
    tools, ``close()`` tears everything down. A session never goes back to an
    earlier status; re-initializing means building a new Session.

    Usage:
        ```python
        async with Session(descriptor) as session:
            result = await session.call_tool("get_time", {})
        ```
    """

    def __init__(
        self,
        descriptor: ServerDescriptor,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
    ):
        self.descriptor = descriptor
        self.handshake_timeout = handshake_timeout
        self.status = SessionStatus.UNINITIALIZED
        self.failure_reason: Optional[str] = None
        self.server_info: Optional[types.Implementation] = None
        self.capabilities: Optional[types.ServerCapabilities] = None
        self.instructions: Optional[str] = None
        self.protocol_version: Optional[str] = None
        self._catalog: Dict[str, ToolInfo] = {}
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._exited = False
        self._released = False
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._write_lock = asyncio.Lock()
        self._background: set = set()

    @classmethod
    async def spawn(cls, descriptor: ServerDescriptor, **kwargs) -> "Session":
        """Create a session and launch its process.

        Raises:
            SpawnError: If the process cannot be launched.
        """
        session = cls(descriptor, **kwargs)
        await session.start()
        return session

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def catalog(self) -> Dict[str, ToolInfo]:
        return dict(self._catalog)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def is_ready(self) -> bool:
        return self.status is SessionStatus.READY and not self._exited

    async def __aenter__(self):
        await self.handshake()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self) -> None:
        """Launch the child process and the stdout reader task."""
        if self.status is SessionStatus.CLOSED:
            raise RuntimeError(f"Session '{self.name}' is closed")
        if self._process is not None:
            raise RuntimeError(f"Session '{self.name}' is already started")

        env = os.environ.copy()
        env.update(self.descriptor.env)

        logger.info(
            "Starting MCP server '%s': %s %s",
            self.name,
            self.descriptor.command,
            " ".join(self.descriptor.args),
        )
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.descriptor.command,
                *self.descriptor.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env=env,
                cwd=self.descriptor.workdir,
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            self._fail("spawn")
            raise SpawnError(self.name, str(e)) from e

        self._reader_task = asyncio.create_task(
            self._read_loop(), name=f"mcp-reader-{self.name}"
        )

    async def handshake(self) -> Dict[str, ToolInfo]:
        """Start (if needed), initialize and list tools in one step.

        On failure the process is stopped; the session stays FAILED with its
        ``failure_reason``.
        """
        if self._process is None:
            await self.start()
        try:
            await self.initialize()
            try:
                return await self.list_tools()
            except ProtocolError as e:
                self._fail(_failure_reason(e))
                logger.error("Listing tools of MCP server '%s' failed: %s", self.name, e)
                raise
        except ProtocolError:
            await self._release()
            raise

    async def initialize(self) -> types.InitializeResult:
        """Send the ``initialize`` request and wait for the server's answer.

        Raises:
            ProtocolTimeout: No answer within ``handshake_timeout``.
            MalformedResponse: The answer is not a valid InitializeResult.
            RemoteError: The server rejected the handshake.
            ProcessExited: The server died during the handshake.
        """
        if self._process is None:
            await self.start()

        self.status = SessionStatus.INITIALIZING
        params = {
            "protocolVersion": types.LATEST_PROTOCOL_VERSION,
            "capabilities": {"elicitation": {}},
            "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
        }
        try:
            raw = await self._request("initialize", params, self.handshake_timeout)
            result = self._validate(types.InitializeResult, raw)
            await self._notify("notifications/initialized")
        except ProtocolError as e:
            self._fail(_failure_reason(e))
            logger.error("Handshake with MCP server '%s' failed: %s", self.name, e)
            raise

        # Wire names, independent of the model's Python attribute names
        data = _dump(result)
        self.server_info = types.Implementation.model_validate(data["serverInfo"])
        self.capabilities = types.ServerCapabilities.model_validate(data.get("capabilities", {}))
        self.instructions = data.get("instructions")
        self.protocol_version = data.get("protocolVersion")
        self.status = SessionStatus.READY
        logger.info(
            "MCP server '%s' ready (%s %s, protocol %s)",
            self.name,
            self.server_info.name,
            self.server_info.version,
            self.protocol_version,
        )
        return result

    async def list_tools(self, timeout: Optional[float] = None) -> Dict[str, ToolInfo]:
        """Fetch the server's tool catalog, following pagination cursors.

        Returns:
            Dict mapping tool name to ToolInfo. Also replaces the cached catalog.
        """
        catalog: Dict[str, ToolInfo] = {}
        cursor = None
        seen_cursors = set()
        while True:
            params = {"cursor": cursor} if cursor else {}
            raw = await self._request("tools/list", params, timeout or self.handshake_timeout)
            data = _dump(self._validate(types.ListToolsResult, raw))
            for tool in data.get("tools", []):
                catalog[tool["name"]] = ToolInfo(
                    name=tool["name"],
                    description=tool.get("description"),
                    input_schema=dict(tool.get("inputSchema") or {}),
                )
            cursor = data.get("nextCursor")
            if not cursor:
                break
            if cursor in seen_cursors:
                raise MalformedResponse(self.name, f"tools/list cursor '{cursor}' repeated")
            seen_cursors.add(cursor)

        self._catalog = catalog
        logger.debug("MCP server '%s' exposes %d tool(s)", self.name, len(catalog))
        return dict(catalog)

    async def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> ToolResult:
        """Execute a tool on the server.

        Args:
            name: Tool name (e.g., "get_time")
            arguments: Tool arguments as dict
            timeout: Seconds to wait; defaults to the descriptor's timeout,
                     then to DEFAULT_CALL_TIMEOUT

        Raises:
            ProtocolTimeout, ProcessExited, MalformedResponse, RemoteError,
            SessionCancelled
        """
        effective_timeout = timeout or self.descriptor.timeout or DEFAULT_CALL_TIMEOUT
        logger.debug("Calling tool '%s' on MCP server '%s'", name, self.name)
        raw = await self._request(
            "tools/call", {"name": name, "arguments": arguments or {}}, effective_timeout
        )
        data = _dump(self._validate(types.CallToolResult, raw))
        return ToolResult(
            content=list(data.get("content", [])),
            is_error=bool(data.get("isError")),
            structured_content=data.get("structuredContent"),
        )

    async def close(self) -> None:
        """Terminate the server process and cancel pending requests.

        Safe to call multiple times.
        """
        if self.status is SessionStatus.CLOSED:
            return
        self.status = SessionStatus.CLOSED
        await self._release()
        logger.info("Closed MCP server '%s'", self.name)

    async def _release(self) -> None:
        # Stops the process and reader without touching the status
        self._released = True
        self._fail_pending(lambda: SessionCancelled(self.name))
        for task in list(self._background):
            task.cancel()

        process = self._process
        if process is not None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            if process.returncode is None:
                try:
                    process.terminate()
                    await asyncio.wait_for(process.wait(), _TERMINATE_GRACE_SECONDS)
                except ProcessLookupError:
                    pass
                except asyncio.TimeoutError:
                    logger.warning("MCP server '%s' did not terminate, killing", self.name)
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                    await process.wait()

        if self._reader_task is not None:
            self._reader_task.cancel()
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None

        if process is not None:
            self._exited = True
        self._catalog = {}

    # ------------------------------------------------------------------
    # Wire handling
    # ------------------------------------------------------------------

    def _fail(self, reason: str) -> None:
        # The first failure reason wins
        if self.status in (SessionStatus.CLOSED, SessionStatus.FAILED):
            return
        self.status = SessionStatus.FAILED
        self.failure_reason = reason

    def _fail_pending(self, make_error: Callable[[], ProtocolError]) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for waiter in pending:
            if not waiter.done():
                waiter.set_exception(make_error())

    def _returncode(self) -> Optional[int]:
        return self._process.returncode if self._process is not None else None

    def _check_usable(self) -> None:
        if self.status is SessionStatus.CLOSED:
            raise SessionCancelled(self.name)
        if self._process is None:
            raise RuntimeError(f"Session '{self.name}' has not been started")
        if self._exited:
            raise ProcessExited(self.name, self._returncode())

    def _validate(self, model, raw: Any):
        try:
            return model.model_validate(raw)
        except ValidationError as e:
            raise MalformedResponse(
                self.name, f"invalid {model.__name__} ({e.error_count()} validation error(s))"
            ) from e

    async def _request(self, method: str, params: Dict[str, Any], timeout: float) -> Any:
        self._check_usable()
        request_id = next(self._ids)
        waiter = asyncio.get_running_loop().create_future()
        self._pending[request_id] = waiter
        try:
            await self._write(
                {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
            )
            return await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Request %s '%s' to MCP server '%s' timed out after %ss",
                request_id,
                method,
                self.name,
                timeout,
            )
            raise ProtocolTimeout(self.name, method, timeout) from None
        finally:
            # Evict on response, timeout or failure alike
            self._pending.pop(request_id, None)

    async def _notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        self._check_usable()
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._write(message)

    async def _write(self, message: Dict[str, Any]) -> None:
        data = (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")
        stdin = self._process.stdin
        async with self._write_lock:
            try:
                stdin.write(data)
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                self._exited = True
                self._fail("process exited")
                raise ProcessExited(self.name, self._returncode()) from e

    async def _read_loop(self) -> None:
        stdout = self._process.stdout
        while True:
            try:
                line = await stdout.readline()
            except ValueError as e:
                logger.warning("Dropping oversized line from MCP server '%s': %s", self.name, e)
                continue
            if not line:
                break
            self._handle_line(line)
        await self._on_stdout_closed()

    async def _on_stdout_closed(self) -> None:
        self._exited = True
        try:
            await asyncio.wait_for(self._process.wait(), _TERMINATE_GRACE_SECONDS)
        except asyncio.TimeoutError:
            pass
        if self.status is SessionStatus.CLOSED or self._released:
            return
        returncode = self._returncode()
        logger.warning("MCP server '%s' exited (exit code %s)", self.name, returncode)
        self._fail("process exited")
        self._fail_pending(lambda: ProcessExited(self.name, returncode))

    def _handle_line(self, raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace").strip()
        if not text:
            return
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Dropping non-JSON line from MCP server '%s': %.200s", self.name, text)
            return
        if not isinstance(message, dict):
            logger.warning("Dropping non-object message from MCP server '%s'", self.name)
            return

        method = message.get("method")
        has_id = message.get("id") is not None
        if method is not None and has_id:
            self._spawn_background(self._answer_server_request(message))
        elif method is not None:
            self._handle_notification(message)
        elif has_id:
            self._resolve(message)
        else:
            logger.warning("Dropping message without id or method from MCP server '%s'", self.name)

    def _resolve(self, message: Dict[str, Any]) -> None:
        request_id = _normalize_id(message["id"])
        waiter = self._pending.pop(request_id, None) if request_id is not None else None
        if waiter is None or waiter.done():
            # Unknown, late (already evicted) or duplicate id
            logger.warning(
                "Dropping response with unmatched id %r from MCP server '%s'",
                message["id"],
                self.name,
            )
            return

        if "error" in message:
            error = message["error"]
            if isinstance(error, dict) and isinstance(error.get("code"), int):
                waiter.set_exception(
                    RemoteError(self.name, error["code"], str(error.get("message", "unknown error")))
                )
            else:
                waiter.set_exception(MalformedResponse(self.name, "invalid error object"))
        elif "result" in message:
            waiter.set_result(message["result"])
        else:
            waiter.set_exception(
                MalformedResponse(self.name, "response has neither result nor error")
            )

    def _handle_notification(self, message: Dict[str, Any]) -> None:
        method = message["method"]
        logger.debug("Notification from MCP server '%s': %s", self.name, method)
        if method == "notifications/tools/list_changed" and self.is_ready:
            self._spawn_background(self._refresh_catalog())

    async def _refresh_catalog(self) -> None:
        try:
            await self.list_tools()
        except ProtocolError as e:
            logger.warning("Failed to refresh tool catalog of MCP server '%s': %s", self.name, e)

    async def _answer_server_request(self, message: Dict[str, Any]) -> None:
        method = message["method"]
        if method == "ping":
            reply = {"jsonrpc": "2.0", "id": message["id"], "result": {}}
        elif method == "elicitation/create":
            reply = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "result": _elicitation_ack(message.get("params")),
            }
        else:
            logger.warning("MCP server '%s' sent unsupported request '%s'", self.name, method)
            reply = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {
                    "code": types.METHOD_NOT_FOUND,
                    "message": f"client does not implement method '{method}'",
                },
            }
        try:
            await self._write(reply)
        except ProtocolError as e:
            logger.debug("Could not answer '%s' from MCP server '%s': %s", method, self.name, e)

    def _spawn_background(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


def _failure_reason(error: ProtocolError) -> str:
    if isinstance(error, ProtocolTimeout):
        return "timeout"
    if isinstance(error, ProcessExited):
        return "process exited"
    if isinstance(error, RemoteError):
        return "remote error"
    if isinstance(error, SessionCancelled):
        return "cancelled"
    return "malformed response"


def _elicitation_ack(params: Any) -> Dict[str, Any]:
    """Accept an ``elicitation/create`` request, echoing its message back.

    There is no interactive user behind the session, so the request is
    acknowledged without asking for the requested fields.
    """
    content: Dict[str, Any] = {}
    message = params.get("message") if isinstance(params, dict) else None
    if isinstance(message, str) and message.strip():
        content["message"] = message.strip()
    return {"action": "accept", "content": content}


def _dump(model) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)
