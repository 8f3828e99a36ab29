from collections.abc import AsyncIterator

import httpx
import pytest

from tests.fakes import FakeClock, FakeDingTalk


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fake_dingtalk() -> FakeDingTalk:
    return FakeDingTalk()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def http(fake_dingtalk: FakeDingTalk) -> AsyncIterator[httpx.AsyncClient]:
    client = fake_dingtalk.http()
    try:
        yield client
    finally:
        await client.aclose()
