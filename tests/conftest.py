import asyncio
from typing import Any, Callable

import pytest

from fakes import FakeTransport
from syncdesk.core import config


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    config.get_settings.cache_clear()
    yield
    config.get_settings.cache_clear()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def no_sleep() -> Callable[[float], Any]:
    async def _sleep(_: float) -> None:
        await asyncio.sleep(0)

    return _sleep
