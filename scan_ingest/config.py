"""
Configuration management for the Image Scan Ingest service.
"""

import json
from pathlib import Path
from typing import Annotated, List, Union
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


KNOWN_TAG_TARGETS = ["Image", "Post", "Model"]


class Settings(BaseSettings):
    """Application settings with validation."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Database Configuration
    database_url: str = Field(default="sqlite:///scan_ingest.db")
    database_echo: bool = Field(default=False)

    # Webhook Configuration
    webhook_host: str = Field(default="0.0.0.0")
    webhook_port: int = Field(default=8000, ge=1, le=65535)
    webhook_path: str = Field(default="/api/webhooks/image-scan-result")
    max_workers: int = Field(default=8, gt=0, description="Threads available for concurrent scan events")

    # Tagging Configuration
    tag_targets: Annotated[List[str], NoDecode] = Field(default_factory=lambda: list(KNOWN_TAG_TARGETS))
    prewarm_tag_cache: bool = Field(default=False)

    # Logging Configuration
    log_level: str = Field(default="INFO")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Accept full URLs or bare SQLite file paths."""
        raw = v.strip()
        if not raw:
            raise ValueError("DATABASE_URL cannot be empty")
        if "://" not in raw:
            return f"sqlite:///{Path(raw).resolve()}"
        return raw

    @field_validator("webhook_path")
    @classmethod
    def validate_webhook_path(cls, v: str) -> str:
        """Ensure the webhook path is absolute."""
        if not v.startswith("/"):
            raise ValueError("WEBHOOK_PATH must start with /")
        return v.rstrip("/") or "/"

    @field_validator("tag_targets", mode="before")
    @classmethod
    def parse_tag_targets(cls, v: Union[str, List[str], None]) -> List[str]:
        """Parse tag targets from a JSON array or a comma-separated list."""
        if v is None or v == "":
            return list(KNOWN_TAG_TARGETS)
        if isinstance(v, str):
            if v.startswith("[") and v.endswith("]"):
                try:
                    v = json.loads(v)
                except json.JSONDecodeError:
                    raise ValueError("Invalid JSON format for TAG_TARGETS")
            else:
                v = [item.strip() for item in v.split(",") if item.strip()]

        targets = []
        for item in v:
            # Targets are matched case-insensitively but stored in canonical form
            match = next((known for known in KNOWN_TAG_TARGETS if known.lower() == str(item).lower()), None)
            if match is None:
                raise ValueError(f"TAG_TARGETS entries must be among: {KNOWN_TAG_TARGETS}")
            if match not in targets:
                targets.append(match)
        if not targets:
            raise ValueError("TAG_TARGETS must name at least one target")
        return targets

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure the log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of: {valid_levels}")
        return v.upper()


# Global settings instance
settings = Settings()
