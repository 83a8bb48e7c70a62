"""Shared fixtures."""

from collections.abc import Iterator

import pytest

from mailsift.core.config import get_settings
from mailsift.core.resilience import model_api_circuit_breaker, supabase_circuit_breaker


@pytest.fixture(autouse=True)
def _fresh_settings_and_breakers() -> Iterator[None]:
    """Each test sees settings from its own environment and closed breakers."""
    get_settings.cache_clear()
    model_api_circuit_breaker.reset()
    supabase_circuit_breaker.reset()
    yield
    get_settings.cache_clear()
