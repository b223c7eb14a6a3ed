"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Wakeup scheduler configuration. All values come from environment variables."""

    # Database
    database_path: Path = Field(default=Path("data/wakeup.db"))

    # Turso (hosted libSQL): overrides database_path when set
    turso_database_url: str = Field(default="")
    turso_auth_token: str = Field(default="")

    # Remote wakeup service
    wakeup_service_url: str = Field(default="http://127.0.0.1:8765")
    wakeup_service_token: str = Field(default="")
    wakeup_request_timeout: float = Field(default=120.0)
    duplicate_wakeup_window_ms: int = Field(default=8000)

    # Targets
    wakeup_accounts: str = Field(default="")
    wakeup_models: str = Field(default="codex-hourly,codex-weekly")

    # Runs
    default_prompt: str = Field(default="hi")
    default_task_name: str = Field(default="Daily wakeup")
    next_run_preview_count: int = Field(default=5)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def get_wakeup_accounts(self) -> list[str]:
        """Parse WAKEUP_ACCOUNTS into a list of account ids."""
        if not self.wakeup_accounts.strip():
            return []
        return [name.strip() for name in self.wakeup_accounts.split(",") if name.strip()]

    def get_wakeup_models(self) -> list[str]:
        """Parse WAKEUP_MODELS into a list of model ids."""
        if not self.wakeup_models.strip():
            return []
        return [name.strip() for name in self.wakeup_models.split(",") if name.strip()]


settings = Settings()
