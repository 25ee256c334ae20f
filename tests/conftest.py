import pytest
import pytest_asyncio

from fakes import FakeBot, FakeConfigGroup, FakeForum, FakeTracker

from issue_bridge.cache import ThreadCache


@pytest.fixture
def bot():
    return FakeBot()


@pytest.fixture
def forum(bot):
    forum = FakeForum(100, bot=bot)
    bot.channels[forum.id] = forum
    return forum


@pytest.fixture
def tracker():
    return FakeTracker()


@pytest_asyncio.fixture
async def cache():
    cache = ThreadCache(FakeConfigGroup(), save_delay=0.01)
    yield cache
    await cache.close()
