"""Provider construction from ProviderConfig"""

import logging
from typing import Dict, Optional, Type

from ..config import AppConfig, get_config, is_config_initialized, load_config_from_env
from ..snapshot import ProviderConfig, resolve_credential
from .base import LLMProvider
from .gemini import GeminiProvider
from .ollama import OllamaProvider
from .openai import OpenAIProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: Dict[str, Type[LLMProvider]] = {
    "openai": OpenAIProvider,
    "gemini": GeminiProvider,
    "ollama": OllamaProvider,
}

# AppConfig attribute used when the provider config carries no credential
_FALLBACK_KEYS = {
    "openai": "openai_api_key",
    "gemini": "google_api_key",
}


def create_provider(config: ProviderConfig, app_config: Optional[AppConfig] = None) -> LLMProvider:
    """Create the adapter for ``config.kind``.

    Raises:
        ValueError: If the kind is not supported
    """
    provider_class = PROVIDER_CLASSES.get(config.kind)
    if provider_class is None:
        raise ValueError(
            f"Unsupported provider kind '{config.kind}' for provider '{config.id}'. "
            f"Supported: {', '.join(sorted(PROVIDER_CLASSES))}"
        )

    if app_config is None:
        app_config = get_config() if is_config_initialized() else load_config_from_env()
    api_key = resolve_credential(config.credential_ref)
    if not api_key and config.kind in _FALLBACK_KEYS:
        api_key = getattr(app_config, _FALLBACK_KEYS[config.kind])
    if not api_key and provider_class.requires_api_key and not config.endpoint:
        logger.warning("Provider '%s' has no API key; completions will fail", config.id)

    return provider_class(
        config,
        api_key=api_key,
        timeout=app_config.provider_timeout_seconds,
        retry_backoff=app_config.provider_retry_backoff_seconds,
    )
