"""
Application configuration management using Pydantic Settings.
This file handles all environment variables and app settings.
"""
from pathlib import Path
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Pydantic will automatically read from .env file and environment variables.
    Priority: Environment variables > .env file > default values
    """

    # Application
    APP_NAME: str = "BranchChat"
    VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Server
    HOST: str = "127.0.0.1"
    PORT: int = 8000

    # CORS - Allow a local frontend to connect
    BACKEND_CORS_ORIGINS: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Local storage
    DATA_DIR: Path = Path.home() / ".branchchat"
    DATABASE_URL: Optional[str] = None

    # Crypto vault. Without SECRET_KEY a per-installation key file is used.
    SECRET_KEY: Optional[str] = None
    VAULT_KEY_FILE: Optional[Path] = None

    # Chat defaults
    DEFAULT_PROVIDER: str = "openai"
    DEFAULT_MODEL: str = "gpt-4o-mini"
    DEFAULT_TEMPERATURE: float = 0.7
    DEFAULT_MAX_TOKENS: int = 2000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="BRANCHCHAT_",
        case_sensitive=True
    )

    @model_validator(mode="after")
    def _fill_paths(self) -> "Settings":
        if self.DATABASE_URL is None:
            self.DATABASE_URL = f"sqlite+aiosqlite:///{self.DATA_DIR / 'chat.db'}"
        if self.VAULT_KEY_FILE is None:
            self.VAULT_KEY_FILE = self.DATA_DIR / "vault.key"
        return self


# Create a global settings instance
settings = Settings()
