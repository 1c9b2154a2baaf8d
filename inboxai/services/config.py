from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    model_powerful: str = "gpt-5.2"
    model_fast: str = "gpt-5-mini"
    llm_timeout_seconds: float = 90.0
    database_path: str = "./data/inbox.db"
    api_port: int = 8000
    frontend_url: str = "http://localhost:4200"
    log_level: str = "INFO"

    # Agent loop
    agent_max_iterations: int = 6
    tool_result_max_chars: int = 2000
    body_prompt_chars: int = 3000

    # Background processing
    batch_limit: int = 100
    precompute_reply: bool = True

    # Editing locks expire after this many minutes (last writer wins afterwards)
    lock_timeout_minutes: int = 15

    @property
    def resolved_database_path(self) -> Path:
        path = Path(self.database_path)
        if path.is_absolute():
            return path
        return Path(__file__).resolve().parents[2] / path


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def llm_enabled() -> bool:
    return bool(get_settings().openai_api_key)
