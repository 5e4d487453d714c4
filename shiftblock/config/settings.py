from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "ShiftBlock"
    debug: bool = True
    database_url: str = "sqlite:///./shiftblock.db"  # env DATABASE_URL
    redis_url: str = "redis://localhost:6379/0"  # env REDIS_URL
    cache_backend: str = "memory"  # memory | redis
    cache_ttl_seconds: int = 300
    edit_engine: str = "auto"  # auto | cascade | cpsat
    cpsat_time_limit_seconds: float = 10
    max_chain_depth: int = 4
    max_blocks_touched: int = 25
    default_max_days: int = 5
    default_max_hours: int = 8


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
