import pytest


def pytest_configure(config):
    """Initialize runtime before test collection (pytest plugin hook)."""
    from multi_llm_agent.runtime import init_runtime, is_initialized

    if not is_initialized():
        init_runtime()


@pytest.fixture(autouse=True)
def ensure_config_initialized():
    """Ensure configuration is initialized before each test."""
    from multi_llm_agent.config import (
        is_config_initialized,
        load_config_from_env,
        set_config,
    )

    # If config was reset by a previous test, reinitialize it
    if not is_config_initialized():
        config = load_config_from_env()
        set_config(config)

    yield

