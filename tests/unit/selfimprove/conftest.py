from collections.abc import Iterator

import pytest

from selfimprove.config import get_config


@pytest.fixture(autouse=True)
def clear_config_cache() -> Iterator[None]:
    """Ensure get_config cache is cleared before and after each test."""
    get_config.cache_clear()
    yield
    get_config.cache_clear()
