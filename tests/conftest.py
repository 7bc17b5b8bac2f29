from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from datachat.config import AppSettings
from datachat.main import create_app
from tests.fakes import FakeCompletionClient, FakeYouTubeClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        gemini_api_key=None,
        gemini_model="test-model",
        youtube_api_key=None,
        database_path=str(tmp_path / "test.db"),
        data_dir=str(tmp_path / "public"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_completion: FakeCompletionClient | None = None,
        fake_youtube: FakeYouTubeClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        completion = fake_completion or FakeCompletionClient()
        youtube = fake_youtube or FakeYouTubeClient([f"v{i}" for i in range(5)])
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, completion=completion, youtube=youtube, config_path=cfg_path)
        return app, cfg_path, completion, youtube

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, completion, youtube = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_completion = completion  # type: ignore[attr-defined]
            http_client.fake_youtube = youtube  # type: ignore[attr-defined]
            yield http_client
