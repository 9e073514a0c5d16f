import pytest

from fakes import FakeBackend

from refbrowser.context import BrowserContext, SecurityPolicy


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def downloads(tmp_path):
    path = tmp_path / "downloads"
    path.mkdir()
    return path


@pytest.fixture
async def context(backend, downloads):
    ctx = BrowserContext(backend, policy=SecurityPolicy(["http", "https"], [downloads]))
    ctx._create_page(navigation_timeout=2000, action_timeout=2000)
    yield ctx
    await ctx.close()


@pytest.fixture
def page(context):
    return context.pages()[0]
