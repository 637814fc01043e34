"""
MCP server registry.

Maps server names to sessions and their tool catalogs. Handshakes are
serialized per server name with one ``asyncio.Lock`` per name, so servers
with different names come up in parallel while concurrent callers for the
same name share a single handshake.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from ..errors import ProtocolError, ServerNotReadyError, SpawnError, UnknownServerError
from .server_config import ServerDescriptor
from .session import DEFAULT_HANDSHAKE_TIMEOUT, Session, SessionStatus, ToolInfo

logger = logging.getLogger(__name__)


@dataclass
class ReloadReport:
    """Outcome of applying a new descriptor snapshot."""

    added: List[str] = field(default_factory=list)
    changed: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)


class ServerRegistry:
    """Registry of MCP server sessions keyed by server name.

    The registry is an explicit shared handle: front ends running in the same
    process receive the same instance (usually through ``AgentCore``).
    """

    def __init__(self, handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT):
        self.handshake_timeout = handshake_timeout
        self._descriptors: Dict[str, ServerDescriptor] = {}
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def register(self, descriptor: ServerDescriptor) -> None:
        """Add a server descriptor with an Uninitialized session.

        Raises:
            ValueError: If the descriptor is invalid or the name is taken
        """
        if descriptor.name in self._descriptors:
            raise ValueError(f"Server '{descriptor.name}' is already registered")

        issues = descriptor.validate()
        if issues:
            raise ValueError(f"Invalid server descriptor: {', '.join(issues)}")

        self._descriptors[descriptor.name] = descriptor
        self._sessions[descriptor.name] = self._new_session(descriptor)
        logger.debug(f"Registered server: {descriptor.name}")

    def lookup(self, name: str) -> Optional[Session]:
        return self._sessions.get(name)

    def descriptor(self, name: str) -> Optional[ServerDescriptor]:
        return self._descriptors.get(name)

    def names(self) -> List[str]:
        return list(self._descriptors)

    def __contains__(self, name: str) -> bool:
        return name in self._descriptors

    def ready_sessions(self) -> List[Tuple[str, Session]]:
        return [(name, s) for name, s in self._sessions.items() if s.is_ready]

    def catalog(self, name: str) -> Dict[str, ToolInfo]:
        session = self._sessions.get(name)
        return session.catalog if session is not None else {}

    async def ensure_ready(self, name: str) -> Session:
        """Return a Ready session for ``name``, running the handshake if needed.

        Raises:
            UnknownServerError: If no server with this name is registered
            SpawnError: If the process cannot be launched
            ProtocolError: If initialize or tools/list fails
        """
        if name not in self._descriptors:
            raise UnknownServerError(name)

        async with self._lock_for(name):
            session = self._sessions.get(name)
            if session is not None and session.is_ready:
                # Another caller finished the handshake while we waited
                return session
            return await self._bring_up(name)

    async def reinitialize(self, name: str, stale: Optional[Session] = None) -> Session:
        """Close the current session for ``name`` and handshake a fresh one.

        Args:
            name: Server name
            stale: The session the caller saw fail. If another caller already
                   replaced it with a Ready session, that session is returned
                   as is.
        """
        if name not in self._descriptors:
            raise UnknownServerError(name)

        async with self._lock_for(name):
            current = self._sessions.get(name)
            if (
                stale is not None
                and current is not None
                and current is not stale
                and current.is_ready
            ):
                logger.debug(f"Server '{name}' was already re-initialized")
                return current
            logger.info(f"Re-initializing server: {name}")
            return await self._bring_up(name)

    async def resync(self, name: str) -> Dict[str, ToolInfo]:
        """Re-run tools/list on an already Ready session.

        Raises:
            UnknownServerError: If no server with this name is registered
            ServerNotReadyError: If the session is not Ready
        """
        if name not in self._descriptors:
            raise UnknownServerError(name)

        async with self._lock_for(name):
            session = self._sessions.get(name)
            if session is None:
                raise UnknownServerError(name)
            if not session.is_ready:
                raise ServerNotReadyError(name, session.status.value)
            catalog = await session.list_tools()
            logger.info(f"Synced {len(catalog)} tool(s) from server: {name}")
            return catalog

    async def apply_descriptors(self, descriptors: Iterable[ServerDescriptor]) -> ReloadReport:
        """Apply a new descriptor snapshot (configuration hot reload).

        Unchanged descriptors keep their sessions untouched. Changed ones are
        closed and replaced, and re-initialized right away when the previous
        session was Ready. Names missing from the snapshot are closed and
        dropped.
        """
        incoming: Dict[str, ServerDescriptor] = {}
        for descriptor in descriptors:
            issues = descriptor.validate()
            if issues:
                raise ValueError(f"Invalid server descriptor: {', '.join(issues)}")
            if descriptor.name in incoming:
                raise ValueError(f"Server '{descriptor.name}' appears twice in snapshot")
            incoming[descriptor.name] = descriptor

        report = ReloadReport()

        for name in [n for n in self._descriptors if n not in incoming]:
            async with self._lock_for(name):
                session = self._sessions.pop(name)
                del self._descriptors[name]
                await session.close()
            self._locks.pop(name, None)
            report.removed.append(name)

        reinit = []
        for name, descriptor in incoming.items():
            current = self._descriptors.get(name)
            if current is None:
                self.register(descriptor)
                report.added.append(name)
            elif current == descriptor:
                report.unchanged.append(name)
            else:
                async with self._lock_for(name):
                    old = self._sessions[name]
                    was_ready = old.is_ready
                    await old.close()
                    self._descriptors[name] = descriptor
                    self._sessions[name] = self._new_session(descriptor)
                report.changed.append(name)
                if was_ready:
                    reinit.append(name)

        if reinit:
            results = await asyncio.gather(
                *(self.ensure_ready(name) for name in reinit), return_exceptions=True
            )
            for name, result in zip(reinit, results):
                if isinstance(result, Exception):
                    logger.warning(f"Failed to re-initialize changed server '{name}': {result}")

        logger.info(
            "Applied server snapshot: added=%s changed=%s removed=%s unchanged=%s",
            report.added,
            report.changed,
            report.removed,
            report.unchanged,
        )
        return report

    async def aclose(self) -> None:
        """Close every session."""
        logger.info("Stopping all MCP servers...")
        for name, session in list(self._sessions.items()):
            try:
                await session.close()
            except Exception as e:
                logger.warning(f"Error stopping server '{name}': {e}")
        logger.info("All MCP servers stopped")

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    def _new_session(self, descriptor: ServerDescriptor) -> Session:
        return Session(descriptor, handshake_timeout=self.handshake_timeout)

    async def _bring_up(self, name: str) -> Session:
        # Caller holds the lock for ``name``; the server may have been removed
        # by a reload while the caller was waiting for it
        if name not in self._descriptors:
            raise UnknownServerError(name)

        session = self._sessions[name]
        if session.status is not SessionStatus.UNINITIALIZED:
            await session.close()
            session = self._sessions[name] = self._new_session(self._descriptors[name])

        try:
            await session.handshake()
        except (SpawnError, ProtocolError) as e:
            # The session has stopped its process; it stays Failed until the
            # next attempt replaces it
            logger.error(f"Failed to start server '{name}': {e}")
            raise
        logger.info(f"Started server: {name}")
        return session
