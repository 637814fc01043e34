"""Immutable configuration snapshot consumed by the agent core.

Configuration files and discovery live outside this package; they hand over
a ``CoreSnapshot`` (or an already parsed mapping for ``snapshot_from_mapping``).
A reload builds a new snapshot instead of mutating the current one.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from .mcp.server_config import ServerDescriptor

logger = logging.getLogger(__name__)

_ENV_REF_PATTERN = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$")


@dataclass(frozen=True)
class ToolBinding:
    """Static mapping from a tool name to the server that provides it."""

    tool_name: str
    server_name: str


@dataclass(frozen=True)
class ProviderConfig:
    """Connection settings for one LLM backend.

    Attributes:
        id: Unique identifier (e.g. "openai", "ollama-local")
        kind: Backend kind selecting the adapter: "openai", "gemini" or "ollama"
        endpoint: Optional API base URL
        credential_ref: API key, "${ENV_VAR}" or "env:ENV_VAR"
        models: Available model names; the first one is the default
        options: Extra request options forwarded to the backend
    """

    id: str
    kind: str
    endpoint: Optional[str] = None
    credential_ref: Optional[str] = None
    models: tuple[str, ...] = ()
    options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "models", tuple(self.models))
        object.__setattr__(self, "options", dict(self.options))

    @property
    def default_model(self) -> Optional[str]:
        return self.models[0] if self.models else None


@dataclass(frozen=True)
class CoreSnapshot:
    servers: tuple[ServerDescriptor, ...] = ()
    providers: tuple[ProviderConfig, ...] = ()
    bindings: tuple[ToolBinding, ...] = ()
    default_provider: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "servers", tuple(self.servers))
        object.__setattr__(self, "providers", tuple(self.providers))
        object.__setattr__(self, "bindings", tuple(self.bindings))

    def provider(self, provider_id: Optional[str] = None) -> ProviderConfig:
        """Return the provider with ``provider_id`` (or the default one).

        Raises:
            KeyError: If no such provider is configured
        """
        wanted = provider_id or self.default_provider
        if wanted is None and self.providers:
            return self.providers[0]
        for config in self.providers:
            if config.id == wanted:
                return config
        raise KeyError(f"Provider '{wanted}' is not configured")


def resolve_credential(ref: Optional[str]) -> Optional[str]:
    """Resolve a credential reference to the actual secret.

    "${NAME}" and "env:NAME" read the environment variable NAME; anything else
    is taken literally. Unset variables resolve to None.
    """
    if not ref:
        return None
    match = _ENV_REF_PATTERN.match(ref)
    if match:
        return os.getenv(match.group(1))
    if ref.startswith("env:"):
        return os.getenv(ref[len("env:") :])
    return ref


def snapshot_from_mapping(data: Mapping[str, Any]) -> CoreSnapshot:
    """Build a snapshot from an already parsed configuration mapping.

    Expected shape (keys mirror the client configuration file):

        {
            "default_provider": "openai",
            "providers": [{"id": ..., "type": ..., "endpoint": ..., "api_key": ...,
                           "models": ["gpt-4o" | {"name": "gpt-4o"}]}],
            "servers": [{"name": ..., "command": ..., "args": [...], "env": {...},
                         "workdir": ..., "timeout": ...}],
            "tools": [{"name": ..., "server": ...} | "tool_name"],
        }

    Tool entries without a server produce no binding; invoking such a tool
    fails with NOT_BOUND at call time.

    Raises:
        ValueError: If a required key is missing
    """
    servers = []
    for raw in data.get("servers", []):
        try:
            servers.append(
                ServerDescriptor(
                    name=raw["name"],
                    command=os.path.expanduser(os.path.expandvars(raw["command"])),
                    args=[os.path.expandvars(arg) for arg in raw.get("args", [])],
                    env=raw.get("env", {}),
                    workdir=(
                        os.path.expanduser(os.path.expandvars(raw["workdir"]))
                        if raw.get("workdir")
                        else None
                    ),
                    timeout=raw.get("timeout"),
                    settings={
                        k: v
                        for k, v in raw.items()
                        if k not in ("name", "command", "args", "env", "workdir", "timeout")
                    },
                )
            )
        except KeyError as e:
            raise ValueError(f"Server entry is missing required key {e}") from e

    providers = []
    for raw in data.get("providers", []):
        try:
            models = [m["name"] if isinstance(m, Mapping) else m for m in raw.get("models", [])]
            providers.append(
                ProviderConfig(
                    id=raw["id"],
                    kind=raw.get("type") or raw["kind"],
                    endpoint=raw.get("endpoint"),
                    credential_ref=raw.get("api_key") or raw.get("credential_ref"),
                    models=models,
                    options=raw.get("options", {}),
                )
            )
        except KeyError as e:
            raise ValueError(f"Provider entry is missing required key {e}") from e

    bindings = []
    for raw in data.get("tools", []):
        if isinstance(raw, str):
            logger.debug("Tool '%s' has no server binding", raw)
            continue
        if raw.get("server"):
            bindings.append(ToolBinding(tool_name=raw["name"], server_name=raw["server"]))

    return CoreSnapshot(
        servers=servers,
        providers=providers,
        bindings=bindings,
        default_provider=data.get("default_provider"),
    )
