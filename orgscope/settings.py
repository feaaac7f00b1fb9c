from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Settings for the visibility core.

    Notes:
    - Defaults are local and deterministic (sqlite file, no redis).
    - Every value can be overridden with an `ORGSCOPE_` environment variable.
    """

    model_config = SettingsConfigDict(env_prefix="ORGSCOPE_", extra="ignore")

    db_url: str | None = None
    redis_url: str | None = None

    cache_ttl_seconds: int = 300
    local_cache_ttl_seconds: int = 300
    local_cache_max_entries: int = 10_000
    cache_key_prefix: str = "orgscope:"

    entity_registry_path: str | None = None

    # Legacy behaviour: a context without tenant/actor sees everything.
    allow_unauthenticated_passthrough: bool = False

    log_level: str = "INFO"

    def resolved_db_url(self) -> str:
        if self.db_url:
            return self.db_url

        repo_root = Path(__file__).resolve().parents[1]
        db_path = repo_root / "orgscope.db"
        return f"sqlite:///{db_path}"

    def resolved_entity_registry_path(self) -> Path:
        if self.entity_registry_path:
            return Path(self.entity_registry_path)

        repo_root = Path(__file__).resolve().parents[1]
        return repo_root / "config" / "entities.yaml"


@lru_cache
def get_settings() -> Settings:
    return Settings()
