from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Every value can be overridden with a ``JOBFLOW_``-prefixed environment
    variable, e.g. ``JOBFLOW_STORAGE_BACKEND=memory``.
    """

    model_config = SettingsConfigDict(env_prefix="JOBFLOW_")

    # "file" keeps one JSON document per key under DATA_DIR
    STORAGE_BACKEND: Literal["file", "memory"] = "file"
    DATA_DIR: str = "data"

    # Install demo users and the demo template on first start
    SEED_DEMO_DATA: bool = True

    LOG_LEVEL: str = "INFO"

    CORS_ORIGINS: List[str] = ["http://localhost:5173"]


settings = Settings()
