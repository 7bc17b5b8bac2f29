import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from datachat.config import AppSettings, load_settings


@pytest.mark.asyncio
async def test_get_settings_masks_api_keys(app_factory):
    app, _, _, _ = app_factory(gemini_api_key="secret-key", youtube_api_key="yt-secret")
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.get("/settings")
            assert res.status_code == 200
            data = res.json()["settings"]
            assert data["gemini_api_key"] == "********"
            assert data["youtube_api_key"] == "********"
            assert data["gemini_model"] == "test-model"


@pytest.mark.asyncio
async def test_post_settings_persists_config_and_updates_clients(app_factory):
    app, config_path, completion, youtube = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post(
                "/settings", json={"gemini_api_key": "new-key", "gemini_model": "gemini-pro", "max_tool_rounds": 3}
            )
            assert res.status_code == 200
            assert res.json()["settings"]["gemini_api_key"] == "********"

    saved = json.loads(config_path.read_text())
    assert saved["gemini_api_key"] == "new-key"
    assert completion.api_key == "new-key"
    assert completion.model == "gemini-pro"
    assert completion.max_tool_rounds == 3


@pytest.mark.asyncio
async def test_post_settings_rejects_invalid_values(app_factory):
    app, config_path, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/settings", json={"port": "not-a-port"})
            assert res.status_code == 400
    assert not config_path.exists()


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"gemini_model": "from-config"}))
    monkeypatch.setenv("GEMINI_MODEL", "from-env")
    monkeypatch.delenv("DATACHAT_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.gemini_model == "from-config"


def test_env_override_when_flag_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"gemini_model": "from-config"}))
    monkeypatch.setenv("GEMINI_MODEL", "from-env")
    monkeypatch.setenv("DATACHAT_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.gemini_model == "from-env"


def test_env_api_key_fills_blank_config_value(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"youtube_api_key": ""}))
    monkeypatch.setenv("YOUTUBE_API_KEY", "env-key")
    monkeypatch.delenv("DATACHAT_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.youtube_api_key == "env-key"


def test_env_integers_are_parsed(tmp_path, monkeypatch):
    monkeypatch.setenv("MAX_CHANNEL_VIDEOS", "25")
    monkeypatch.delenv("DATACHAT_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.max_channel_videos == 25


def test_to_safe_dict_leaves_empty_keys_alone():
    data = AppSettings().to_safe_dict()
    assert data["gemini_api_key"] is None
