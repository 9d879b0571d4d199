"""
Configuration management for memedex.

This module handles loading and validation of configuration settings
from environment variables and provides type-safe configuration objects.
"""

from pathlib import Path
from typing import List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(default="memedex", description="Application name")

    # Storage settings
    database_path: Path = Field(
        default=Path("./data/memedex.db"), description="SQLite database path"
    )
    upload_dir: Path = Field(
        default=Path("./data/memes/uploads"),
        description="Directory for uploaded images",
    )
    scan_directory: Path = Field(
        default=Path("/data/memes"), description="Default scan root directory"
    )
    image_extensions: List[str] = Field(
        default=["jpg", "jpeg", "png", "gif", "webp", "avif"],
        description="Image file extensions picked up by the scanner",
    )

    # Description (vision model) settings
    ollama_url: str = Field(
        default="http://localhost:11434", description="Ollama base URL"
    )
    ollama_model: str = Field(default="llava:7b", description="Vision model name")
    description_timeout: float = Field(
        default=120.0, description="Description request timeout in seconds"
    )

    # Embedding settings
    embedding_model_name: str = Field(
        default="sentence-transformers/all-MiniLM-L6-v2",
        description="Sentence embedding model name",
    )
    embedding_dimension: int = Field(
        default=384, description="Embedding vector dimension"
    )
    device: Literal["auto", "cpu", "cuda"] = Field(
        default="auto", description="Device for model inference"
    )
    warm_up_embedding: bool = Field(
        default=True, description="Load the embedding model at startup"
    )

    # Processing and search settings
    batch_limit: int = Field(
        default=1000, description="Maximum items processed per batch run"
    )
    search_limit_max: int = Field(
        default=200, description="Maximum search result limit"
    )

    # Server settings
    server_host: str = Field(default="0.0.0.0", description="Server host")
    server_port: int = Field(default=3000, description="Server port")
    log_level: str = Field(default="INFO", description="Log level")

    @field_validator("image_extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        """Lowercase extensions and strip leading dots."""
        return [ext.lower().lstrip(".") for ext in v if ext.strip()]

    @field_validator("ollama_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


def get_settings() -> Settings:
    """Get application settings instance."""
    return Settings()
