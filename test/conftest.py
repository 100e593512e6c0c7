import pytest_asyncio

from _helper import make_service, seed


@pytest_asyncio.fixture
async def service():
    return make_service()


@pytest_asyncio.fixture
async def cast(service):
    return await seed(service)
