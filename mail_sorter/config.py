"""Deployment settings, read from environment variables (or a local .env file).

Model and training hyper-parameters are not here; see ModelConfig in model.py
and TrainingConfig in train.py.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MAIL_SORTER_",
        case_sensitive=False,
        extra="ignore",
    )

    # === Artifacts ===
    MODEL_DIR: Path = Path("model")

    # === Gmail ===
    CREDENTIALS_PATH: Path = Path("credentials.json")
    TOKEN_PATH: Path = Path("token.json")
    LABELS_TO_TRAIN: list[str] = ["Primary", "Promotions", "Social"]
    EMAILS_PER_LABEL: int = 500
    PUBSUB_TOPIC: str = ""  # projects/<project>/topics/<topic>, needed for --watch
    REQUEST_TIMEOUT: float = 30.0  # seconds, per Gmail HTTP request

    # === Server ===
    HOST: str = "0.0.0.0"
    PORT: int = 3000

    # === Logging ===
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"


@lru_cache
def get_settings() -> Settings:
    return Settings()
