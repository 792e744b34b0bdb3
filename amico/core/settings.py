"""
Application settings.

Values come from environment variables or a ``.env`` file in the working
directory. API keys that are not set here are looked up in the OS keyring
(see ``amico.core.secrets``).
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    debug: bool = False

    data_dir: Path = Field(default=Path.home() / ".amico", alias="AMICO_DATA_DIR")

    # Tripo3D job queue
    tripo_api_key: Optional[str] = Field(default=None, alias="TRIPO_API_KEY")
    tripo_base_url: str = Field(default="https://api.tripo3d.ai/v2/openapi", alias="TRIPO_BASE_URL")

    # Style conversion (Gemini-compatible image endpoint)
    style_api_key: Optional[str] = Field(default=None, alias="STYLE_API_KEY")
    style_base_url: str = Field(default="https://generativelanguage.googleapis.com", alias="STYLE_BASE_URL")
    style_model: str = Field(default="gemini-3-pro-image-preview", alias="STYLE_MODEL")
    style_timeout_s: float = 120.0

    http_timeout_s: float = 30.0
    download_timeout_s: float = 120.0

    # Polling cadence and per-stage deadlines
    poll_interval_s: float = 4.0
    model_timeout_s: float = 180.0
    rig_timeout_s: float = 180.0
    animate_timeout_s: float = 180.0
    preset_timeout_s: float = 120.0
    status_timeout_s: float = 60.0

    expiry_leeway_s: int = 60

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: Optional[str] = Field(default=None, alias="LOG_FILE")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def database_path(self) -> Path:
        return self.data_dir / "amico.sqlite3"

    @property
    def handles_dir(self) -> Path:
        return self.data_dir / "handles"


settings = Settings()


def ensure_directories(config: Settings = settings) -> None:
    config.data_dir.mkdir(parents=True, exist_ok=True)
    config.handles_dir.mkdir(parents=True, exist_ok=True)
