from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Application configuration loaded from environment variables or .env.

    Env prefix: APP_
    Example: APP_DEFAULT_TARGET_ROW_HEIGHT=180
    """

    # App
    app_name: str = Field(default="Justified Layout API")
    app_version: str = Field(default="1.0.0")

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Layout defaults (used when a request omits them)
    default_target_row_height: float = Field(default=200.0, gt=0)
    default_gutter: float = Field(default=0.0, ge=0)
    default_snap_last_to_edge: bool = Field(default=False)
    default_last_row_cap_multiplier: Optional[float] = Field(default=None, gt=0)

    # Limits
    max_items: int = Field(default=5000, gt=0)
    max_container_width: float = Field(default=100_000.0, gt=0)
    max_canvas_pixels: int = Field(default=50_000_000)

    # Rate limiting
    rate_limit_requests: int = Field(default=120)
    rate_limit_window_seconds: int = Field(default=60)

    # Logging
    log_level: str = Field(default="INFO")
    log_to_file: bool = Field(default=False)
    log_file_path: Path = Field(default=Path("logs/layout.log"))
    log_max_bytes: int = Field(default=5 * 1024 * 1024)  # 5 MB
    log_backup_count: int = Field(default=3)

    # CORS
    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"])
    cors_allow_credentials: bool = Field(default=True)
    cors_allow_methods: List[str] = Field(default_factory=lambda: ["*"])
    cors_allow_headers: List[str] = Field(default_factory=lambda: ["*"])

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
