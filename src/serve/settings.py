"""
Service settings loaded from environment variables (or a local .env file).
"""
from __future__ import annotations
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # JSON file with EngineConfig overrides; defaults when unset
    telematics_config: Optional[str] = None


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance"""
    return Settings()
