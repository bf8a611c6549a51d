from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_MEDIA_TYPES = {"image/jpeg", "image/png"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="IMGOPTIM_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "imgoptim"
    environment: str = "production"
    log_level: str = "INFO"

    libraries_root: Path = Field(default=Path("/libraries"))
    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None

    min_quality: int = Field(default=40, ge=0, le=100)
    max_quality: int = Field(default=85, ge=0, le=100)
    accepted_media_types: list[str] = Field(default_factory=lambda: ["image/jpeg", "image/png"])

    job_lock_ttl_seconds: PositiveInt = 300
    upload_notice_ttl_seconds: PositiveInt = 30

    default_page_size: PositiveInt = 100
    max_page_size: PositiveInt = 1000

    @field_validator("libraries_root", "state_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path) -> Path:
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.libraries_root = self.libraries_root.resolve(strict=False)
        self.state_root = self.state_root.resolve(strict=False)
        self.state_root.mkdir(parents=True, exist_ok=True)

        if self.min_quality > self.max_quality:
            raise ValueError("min_quality must be less than or equal to max_quality")

        normalized_types = [item.lower().strip() for item in self.accepted_media_types]
        unsupported = sorted(set(normalized_types) - SUPPORTED_MEDIA_TYPES)
        if unsupported:
            raise ValueError(f"accepted_media_types must be a subset of {sorted(SUPPORTED_MEDIA_TYPES)}")
        self.accepted_media_types = normalized_types

        if self.max_page_size < self.default_page_size:
            raise ValueError("max_page_size must be greater than or equal to default_page_size")

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "imgoptim.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
