"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "change-pipeline"
    app_env: str = "dev"
    log_level: str = "INFO"
    database_url: str = ""

    # Test harness
    max_test_attempts: int = Field(default=5, ge=1)
    backoff_step_s: float = Field(default=1.0, ge=0.0)
    step_timeout_ms: int = Field(default=15000, ge=1)
    step_timeout_increment_ms: int = Field(default=5000, ge=0)
    max_step_timeout_ms: int = Field(default=60000, ge=1)
    attempt_timeout_s: float = Field(default=120.0, gt=0.0)
    runner_stop_grace_s: float = Field(default=10.0, gt=0.0)
    target_base_url: str = "http://localhost:3000"
    artifact_base_url: str = "http://localhost:8888/api/pipeline/test"
    runner_login_email: str = "pipeline-runner@localhost"
    runner_login_password: SecretStr = SecretStr("pipeline-runner")
    runner_command: str = "npx playwright test"
    workspace_root: str = ""

    # Collaborators and storage
    collaborator_timeout_s: float = Field(default=30.0, gt=0.0)
    store_write_attempts: int = Field(default=3, ge=1)
    store_retry_backoff_s: float = Field(default=0.05, ge=0.0)
    lock_timeout_s: float = Field(default=30.0, gt=0.0)
    project_root: str = "."

    # Coordinator policy
    dedup_window_s: float = Field(default=60.0, gt=0.0)
    require_oldest_in_bulk_approve: bool = True

    # Code generation
    generator_mode: str = "deterministic"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=20.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    openai_api_key: str = ""

    model_config = SettingsConfigDict(
        env_prefix="CHANGE_PIPELINE_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("PIPELINE_DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")

    def resolved_workspace_root(self) -> Path | None:
        return Path(self.workspace_root) if self.workspace_root else None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
