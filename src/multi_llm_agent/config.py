"""Application configuration repository.

Centralizes access to tunables loaded from environment variables. Server,
provider and binding definitions are not read here: they arrive as an
immutable snapshot (see ``multi_llm_agent.snapshot``).
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class AppConfig:
    """Application configuration container.

    Values are typically loaded from environment variables during
    initialization (see ``init_runtime()``).
    """

    # Fallback API keys for providers without an explicit credential reference
    google_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None

    # Agent settings
    agent_max_iterations: int = 8

    # MCP settings
    mcp_handshake_timeout_seconds: float = 10.0
    mcp_timeout_seconds: float = 120.0

    # Provider settings
    provider_timeout_seconds: float = 120.0
    provider_retry_backoff_seconds: float = 1.0

    def validate(self) -> list[str]:
        """Validate configuration and return list of warnings.

        Returns:
            list[str]: List of warning messages for missing or invalid configuration.
        """
        issues = []

        if self.agent_max_iterations <= 0:
            issues.append(f"Invalid AGENT_MAX_ITERATIONS: {self.agent_max_iterations}")

        if self.mcp_handshake_timeout_seconds <= 0:
            issues.append(
                f"Invalid MCP_HANDSHAKE_TIMEOUT_SECONDS: {self.mcp_handshake_timeout_seconds}"
            )

        if self.mcp_timeout_seconds <= 0:
            issues.append(f"Invalid MCP_TIMEOUT_SECONDS: {self.mcp_timeout_seconds}")

        if self.provider_timeout_seconds <= 0:
            issues.append(f"Invalid PROVIDER_TIMEOUT_SECONDS: {self.provider_timeout_seconds}")

        if self.provider_retry_backoff_seconds < 0:
            issues.append(
                f"Invalid PROVIDER_RETRY_BACKOFF_SECONDS: {self.provider_retry_backoff_seconds}"
            )

        return issues


# Global configuration instance (set once at startup)
_config: Optional[AppConfig] = None


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables.

    Returns:
        AppConfig: Configuration instance populated from environment variables.
    """

    def _get_env_float(key: str, default: float) -> float:
        """Safely parse float from environment variable with fallback."""
        val_str = os.getenv(key)
        if val_str is None:
            return default
        try:
            return float(val_str)
        except (ValueError, TypeError):
            logger.warning(f"Invalid value for {key}: '{val_str}'. Using default value: {default}.")
            return default

    def _get_env_int(key: str, default: int) -> int:
        """Safely parse int from environment variable with fallback."""
        val_str = os.getenv(key)
        if val_str is None:
            return default
        try:
            return int(val_str)
        except (ValueError, TypeError):
            logger.warning(f"Invalid value for {key}: '{val_str}'. Using default value: {default}.")
            return default

    config = AppConfig(
        google_api_key=os.getenv("GOOGLE_API_KEY"),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        agent_max_iterations=_get_env_int("AGENT_MAX_ITERATIONS", 8),
        mcp_handshake_timeout_seconds=_get_env_float("MCP_HANDSHAKE_TIMEOUT_SECONDS", 10.0),
        mcp_timeout_seconds=_get_env_float("MCP_TIMEOUT_SECONDS", 120.0),
        provider_timeout_seconds=_get_env_float("PROVIDER_TIMEOUT_SECONDS", 120.0),
        provider_retry_backoff_seconds=_get_env_float("PROVIDER_RETRY_BACKOFF_SECONDS", 1.0),
    )

    # Log validation issues
    issues = config.validate()
    for issue in issues:
        logger.warning(issue)

    return config


def set_config(config: AppConfig) -> None:
    """Set the global configuration instance.

    Raises:
        RuntimeError: If configuration has already been set.
    """
    global _config
    if _config is not None:
        raise RuntimeError("Configuration already set. Call reset_config() first.")
    _config = config
    logger.debug("Configuration initialized")


def get_config() -> AppConfig:
    """Get the global configuration instance.

    Raises:
        RuntimeError: If configuration has not been initialized.
                     Call init_runtime() first.
    """
    if _config is None:
        raise RuntimeError(
            "Configuration not initialized. Call init_runtime() at application startup."
        )
    return _config


def reset_config() -> None:
    """Reset configuration state (for testing purposes only)."""
    global _config
    _config = None


def is_config_initialized() -> bool:
    return _config is not None
