"""Settings, read from ``REPOTRACK_*`` environment variables and ``.env``."""

import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_ROOT = Path(__file__).parent.parent.parent

load_dotenv(_PROJECT_ROOT / ".env")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        env_prefix="REPOTRACK_",
        extra="ignore",
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Paths
    data_dir: Path | None = Field(
        default=None,
        description="Directory for the SQLite database. Defaults to ~/.repotrack/data",
    )

    # Database
    database_url: str | None = Field(default=None)

    # GitHub REST API
    github_token: str = Field(default="", description="Optional token for higher rate limits")
    github_api_url: str = Field(default="https://api.github.com")
    github_timeout_seconds: float = Field(
        default=10.0, description="Timeout for a single GitHub API request"
    )
    github_user_agent: str = Field(default="repotrack-api/0.1")

    # Refresh queue
    queue_url: str | None = Field(
        default=None,
        description="Queue backend URL. Defaults to SQLite in the project database. "
        "Examples: 'sqlite://', 'redis://localhost:6379/0'",
    )
    queue_timeout_seconds: float = Field(
        default=5.0, description="Timeout for a single queue backend operation"
    )
    refresh_max_attempts: int = Field(
        default=3, ge=1, description="Maximum delivery attempts for a refresh job"
    )
    refresh_backoff_base_seconds: float = Field(
        default=5.0, description="Base delay for exponential retry backoff"
    )
    refresh_backoff_max_seconds: float = Field(
        default=300.0, description="Upper bound for a single retry delay"
    )
    queue_cleanup_older_than_hours: int = Field(
        default=24, description="Remove finished jobs older than this many hours"
    )

    # Worker
    worker_enabled: bool = Field(
        default=True,
        description="Run the job worker inside the API process. Set to false when "
        "workers run as separate processes",
    )
    worker_concurrency: int = Field(
        default=4, ge=1, description="Number of concurrent jobs per worker process"
    )
    worker_poll_interval_seconds: float = Field(
        default=1.0, description="Interval between queue polls in seconds"
    )
    worker_visibility_timeout_seconds: float = Field(
        default=120.0,
        description="How long a claimed job stays locked before it is considered stalled",
    )
    worker_stall_check_interval_seconds: float = Field(
        default=30.0, description="Interval between stalled-job health checks"
    )
    worker_id_prefix: str = Field(default="worker", description="Prefix for worker IDs")
    job_timeout_seconds: float = Field(
        default=60.0, description="Maximum time for a single job execution"
    )

    @model_validator(mode="after")
    def _derive_locations(self) -> "Settings":
        if self.data_dir is None:
            self.data_dir = Path.home() / ".repotrack" / "data"
        if self.database_url is None:
            self.database_url = f"sqlite:///{self.data_dir}/repotrack.db"
        if self.queue_url is None:
            self.queue_url = "sqlite://"

        self.data_dir.mkdir(parents=True, exist_ok=True)
        if not os.access(self.data_dir, os.W_OK):
            raise PermissionError(
                f"Directory '{self.data_dir}' is not writable. "
                f"Please fix permissions with: chmod -R u+w {self.data_dir}"
            )
        return self


settings = Settings()
