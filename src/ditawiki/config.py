"""Application configuration."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    content_dir: Path = Path("content")
    debug: bool = False
    app_title: str = "DitaWiki"
    max_concurrent: int = 5
    asset_url_prefix: str = "/content/assets"
    link_base_path: str = ""
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="DITAWIKI_",
        env_file=".env",
        env_file_encoding="utf-8",
    )


settings = Settings()
