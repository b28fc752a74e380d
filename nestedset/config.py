import os
from functools import lru_cache
from typing import Literal

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

load_dotenv()


class Settings(BaseSettings):
    # Application
    app_name: str = "Nested Set Trees"
    environment: str = os.getenv("ENVIRONMENT", "production")
    log_level: str = "INFO"

    # Database
    database_url: str = os.environ["DATABASE_URL"]
    isolation_level: str | None = os.getenv("NESTEDSET_ISOLATION_LEVEL", None)

    # Scope serialization: "advisory" (postgres xact lock), "redis" or "none"
    scope_lock: Literal["advisory", "redis", "none"] = "advisory"
    lock_ttl: float = 30.0
    lock_blocking_timeout: float = 10.0

    # Redis (optional, only needed for the redis scope lock)
    redis_url: str | None = os.getenv("REDIS_URL", None)
    redis_key_prefix: str = os.getenv("REDIS_KEY_PREFIX", "nestedset:")

    model_config = {"env_file": ".env", "env_prefix": "NESTEDSET_"}

    @property
    def debug(self) -> bool:
        return self.environment == "development"


@lru_cache
def get_settings() -> Settings:
    return Settings()
