"""Application settings loaded from environment variables."""

from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[1]
DEFAULT_LOCAL_DATA_DIR = BASE_DIR / "data"


class Settings(BaseSettings):
    """Runtime configuration for the ClassMark backend."""

    model_config = SettingsConfigDict(env_prefix="CLASSMARK_", extra="ignore", populate_by_name=True)

    app_name: str = "ClassMark API"
    data_dir: str = Field(
        default=str(DEFAULT_LOCAL_DATA_DIR),
        validation_alias=AliasChoices("CLASSMARK_DATA_DIR", "DATA_DIR"),
    )
    sqlite_path: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CLASSMARK_SQLITE_PATH", "SQLITE_PATH"),
    )

    # CORS configuration
    cors_allow_origins: str = Field(
        default="*",
        validation_alias=AliasChoices("CLASSMARK_CORS_ALLOW_ORIGINS", "CORS_ALLOW_ORIGINS"),
    )

    # AI grading
    openai_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("CLASSMARK_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )
    ai_model: str = "gpt-4o-mini"
    ai_timeout_seconds: float = 30.0
    ai_temperature: float = 0.2
    ai_retry_backoffs: str = "1.0"

    # Who sees numeric scores, and when
    score_visibility: Literal["teacher_confirmed", "immediate"] = "teacher_confirmed"

    @model_validator(mode="after")
    def _set_sqlite_path(self) -> "Settings":
        if not self.sqlite_path:
            self.sqlite_path = str(Path(self.data_dir) / "classmark.db")
        return self

    @property
    def sqlite_url(self) -> str:
        return f"sqlite:///{self.sqlite_path}"

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    @property
    def cors_origin_list(self) -> list[str]:
        if self.cors_allow_origins.strip() == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]

    @property
    def ai_retry_backoff_list(self) -> tuple[float, ...]:
        backoffs: list[float] = []
        for item in self.ai_retry_backoffs.split(","):
            item = item.strip()
            if not item:
                continue
            try:
                backoffs.append(max(0.0, float(item)))
            except ValueError:
                continue
        return tuple(backoffs)


settings = Settings()
