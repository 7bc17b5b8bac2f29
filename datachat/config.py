import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "DATACHAT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("gemini_api_key", "youtube_api_key")


class AppSettings(BaseModel):
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    youtube_api_key: Optional[str] = None
    youtube_base_url: str = "https://www.googleapis.com/youtube/v3"
    database_path: str = "datachat.db"
    data_dir: str = "public"
    host: str = "0.0.0.0"
    port: int = 8000
    upload_max_mb: int = 15
    max_channel_videos: int = 100
    youtube_page_size: int = 50
    transcript_concurrency: int = 4
    max_tool_rounds: int = 5
    agent_tag: str = "lisa"

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data


_INT_FIELDS = (
    "port",
    "upload_max_mb",
    "max_channel_videos",
    "youtube_page_size",
    "transcript_concurrency",
    "max_tool_rounds",
)


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "gemini_api_key": os.getenv("GEMINI_API_KEY"),
        "gemini_model": os.getenv("GEMINI_MODEL"),
        "gemini_base_url": os.getenv("GEMINI_BASE_URL"),
        "youtube_api_key": os.getenv("YOUTUBE_API_KEY"),
        "youtube_base_url": os.getenv("YOUTUBE_BASE_URL"),
        "database_path": os.getenv("DATABASE_PATH"),
        "data_dir": os.getenv("DATA_DIR"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "upload_max_mb": os.getenv("UPLOAD_MAX_MB"),
        "max_channel_videos": os.getenv("MAX_CHANNEL_VIDEOS"),
        "youtube_page_size": os.getenv("YOUTUBE_PAGE_SIZE"),
        "transcript_concurrency": os.getenv("TRANSCRIPT_CONCURRENCY"),
        "max_tool_rounds": os.getenv("MAX_TOOL_ROUNDS"),
        "agent_tag": os.getenv("AGENT_TAG"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in _INT_FIELDS:
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except ValueError:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # Keys are usually only in .env; an empty value in config.json should not hide them.
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
