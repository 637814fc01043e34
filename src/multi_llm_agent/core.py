"""Agent core facade.

``AgentCore`` is the single shared handle front ends receive: it owns the
server registry, the tool manager and the provider instances built from the
current ``CoreSnapshot``, and creates one ``Agent`` per chat.
"""

import logging
from typing import Any, Dict, List, Optional

from .agent import Agent, AgentMode
from .config import AppConfig, get_config, is_config_initialized, load_config_from_env
from .errors import ProtocolError, SpawnError
from .mcp.registry import ReloadReport, ServerRegistry
from .mcp.session import ToolInfo, ToolResult
from .providers.base import LLMProvider
from .providers.factory import create_provider
from .snapshot import CoreSnapshot
from .tool_manager import ToolManager

logger = logging.getLogger(__name__)


class AgentCore:
    def __init__(self, snapshot: CoreSnapshot, config: Optional[AppConfig] = None):
        if config is None:
            config = get_config() if is_config_initialized() else load_config_from_env()
        self.config = config
        self.registry = ServerRegistry(handshake_timeout=config.mcp_handshake_timeout_seconds)
        for descriptor in snapshot.servers:
            self.registry.register(descriptor)
        self.tool_manager = ToolManager(
            self.registry, snapshot.bindings, call_timeout=config.mcp_timeout_seconds
        )
        self.snapshot = snapshot
        self._providers = self._build_providers(snapshot)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    def _build_providers(self, snapshot: CoreSnapshot) -> Dict[str, LLMProvider]:
        providers = {}
        for provider_config in snapshot.providers:
            if provider_config.id in providers:
                raise ValueError(f"Provider '{provider_config.id}' is configured twice")
            providers[provider_config.id] = create_provider(provider_config, self.config)
        return providers

    def provider(self, provider_id: Optional[str] = None) -> LLMProvider:
        """Return the provider instance for ``provider_id`` (default provider if None).

        Raises:
            KeyError: If no such provider is configured
        """
        config = self.snapshot.provider(provider_id)
        return self._providers[config.id]

    def create_agent(
        self,
        provider_id: Optional[str] = None,
        model: Optional[str] = None,
        mode: AgentMode = AgentMode.AGENT,
        system_prompt: Optional[str] = None,
        max_iterations: Optional[int] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Agent:
        """Create a fresh Agent with its own history."""
        return Agent(
            self.provider(provider_id),
            self.tool_manager,
            model=model,
            system_prompt=system_prompt,
            max_iterations=(
                max_iterations if max_iterations is not None else self.config.agent_max_iterations
            ),
            mode=mode,
            options=options,
        )

    async def start(self) -> None:
        """Bring up every server that has a bound tool. Failures are logged."""
        servers = sorted(set(self.tool_manager.bindings().values()))
        for name in servers:
            if name not in self.registry:
                logger.warning("Tools are bound to unknown MCP server '%s'", name)
                continue
            try:
                await self.registry.ensure_ready(name)
            except (SpawnError, ProtocolError) as e:
                logger.warning("MCP server '%s' did not start: %s", name, e)

    async def list_tools(self, connect: bool = True) -> List[Dict[str, Any]]:
        return await self.tool_manager.list_available(connect=connect)

    async def invoke_tool(
        self, name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> ToolResult:
        """Invoke a bound tool directly, outside of any agent loop.

        Raises:
            ToolError: Scoped failure of this call
        """
        return await self.tool_manager.invoke(name, arguments or {})

    async def resync(self, server: str) -> Dict[str, ToolInfo]:
        return await self.registry.resync(server)

    async def reload(self, snapshot: CoreSnapshot) -> ReloadReport:
        """Swap in a new snapshot.

        Providers and bindings are replaced wholesale; servers go through the
        registry so unchanged Ready sessions survive. Agents created before the
        reload keep their provider instance.
        """
        providers = self._build_providers(snapshot)
        previous_bindings = self.snapshot.bindings
        self.tool_manager.set_bindings(snapshot.bindings)
        try:
            report = await self.registry.apply_descriptors(snapshot.servers)
        except ValueError:
            self.tool_manager.set_bindings(previous_bindings)
            raise
        self._providers = providers
        self.snapshot = snapshot
        logger.info("Reloaded snapshot with %d provider(s)", len(providers))
        return report

    async def aclose(self) -> None:
        await self.registry.aclose()
        for provider in self._providers.values():
            await provider.aclose()
