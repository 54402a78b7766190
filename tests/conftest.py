from __future__ import annotations

from collections.abc import Iterator

import pytest

from infra.config import clear_settings_cache


@pytest.fixture(autouse=True)
def _fresh_settings() -> Iterator[None]:
    """Settings are cached per process; rebuild them from each test's env."""
    clear_settings_cache()
    yield
    clear_settings_cache()
