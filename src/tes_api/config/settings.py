"""Application settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    service_name: str = "tes-api"
    service_doc: str = "Task Execution Service: runs batch tasks of sequential executors."
    # Storage locations advertised through ServiceInfo.
    storage_locations: list[str] = Field(default_factory=list)

    storage_backend: Literal["memory", "postgres"] = "memory"
    database_url: str = ""

    sandbox_backend: Literal["local", "docker"] = "local"
    docker_binary: str = "docker"
    work_dir: Path = PROJECT_ROOT / ".local" / "tes" / "work"
    keep_workspaces: bool = False

    max_workers: int = Field(default=4, ge=1)
    executor_log_tail_bytes: int = Field(default=10240, ge=1)
    max_input_contents_bytes: int = Field(default=1024 * 1024, ge=128 * 1024)
    page_token_secret: str = ""
    system_error_retries: int = Field(default=0, ge=0)
    poll_interval_s: float = Field(default=0.2, gt=0.0)
    http_fetch_timeout_s: float = Field(default=30.0, gt=0.0)

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="TES_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
