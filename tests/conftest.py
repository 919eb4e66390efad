from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from tabpilot.config import AppSettings, EndpointConfig
from tabpilot.main import create_app
from tests.fakes import FakeBrowserClient, FakeChatClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    base_url = overrides.pop("base_url", "http://llm.test/v1")
    endpoint = EndpointConfig(base_url=base_url, model_id="test-model")
    settings = AppSettings(
        llm_base_url=base_url,
        default_model="test-model",
        router_endpoint=endpoint,
        planner_endpoint=endpoint,
        executor_endpoint=endpoint,
        researcher_endpoint=endpoint,
        synthesizer_endpoint=endpoint,
        browser_base_url="http://browser.test/api",
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
        tool_timeout_short_s=1.0,
        tool_timeout_long_s=1.0,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    return make_settings(tmp_path)


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_lm: FakeChatClient | None = None,
        fake_browser: FakeBrowserClient | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        lm_client = fake_lm or FakeChatClient()
        browser_client = fake_browser or FakeBrowserClient()
        app = create_app(
            settings,
            lm_client=lm_client,
            browser_client=browser_client,
            config_path=tmp_path / "config.json",
        )
        return app, lm_client, browser_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, lm_client, browser_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_lm = lm_client  # type: ignore[attr-defined]
            http_client.fake_browser = browser_client  # type: ignore[attr-defined]
            yield http_client
