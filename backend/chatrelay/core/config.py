from pydantic_settings import BaseSettings
from typing import List
from pathlib import Path
import json
import os


SETTINGS_FILE = Path(__file__).parent.parent.parent / "settings.json"


def load_settings_from_file() -> dict:
    """Load settings from JSON file if exists."""
    if SETTINGS_FILE.exists():
        try:
            with open(SETTINGS_FILE) as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError):
            pass
    return {}


class Settings(BaseSettings):
    # Storage
    database_url: str = "sqlite:///./chatrelay.db"

    # Default local provider (used when a model has no stored config)
    ollama_base_url: str = "http://localhost:11434"
    default_context_window: int = 16384
    openai_default_max_tokens: int = 4096

    # Upstream HTTP client: connect timeout only, reads are unbounded
    upstream_connect_timeout: float = 10.0

    # Credential vault (Fernet key, urlsafe base64)
    encryption_key: str = ""

    # Auth
    jwt_secret: str = "change-this-secret"
    jwt_algorithm: str = "HS256"
    allow_anonymous_chat: bool = False

    # Uploads
    upload_dir: str = "uploads"
    max_upload_files: int = 10
    max_upload_bytes: int = 50 * 1024 * 1024

    # Web search tool (SearXNG-compatible JSON endpoint, empty disables it)
    web_search_url: str = ""
    web_search_max_results: int = 5
    web_search_retries: int = 3
    web_search_backoff: float = 2.0

    # Server
    backend_port: int = 8000
    cors_origins: List[str] = ["http://localhost:5173"]
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"

    def __init__(self, **kwargs):
        # Load from settings file first
        file_settings = load_settings_from_file()

        # Merge: kwargs > file_settings > env vars (handled by pydantic)
        merged = {**file_settings, **kwargs}

        super().__init__(**merged)

        # Handle CORS_ORIGINS as JSON string from env
        cors_env = os.getenv("CORS_ORIGINS")
        if cors_env:
            try:
                self.cors_origins = json.loads(cors_env)
            except json.JSONDecodeError:
                pass

    @property
    def web_search_enabled(self) -> bool:
        return bool(self.web_search_url)


settings = Settings()
