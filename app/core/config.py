from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_UPLOAD_PART_SIZE_BYTES = 10 * 1024 * 1024


class Settings(BaseSettings):
    app_name: str = "DepoSim Analysis API"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    allowed_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    ]
    elevenlabs_webhook_secret: str = ""
    webhook_max_skew_seconds: int = 300
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    openai_api_url: str = "https://api.openai.com/v1"
    openai_api_timeout_seconds: float = 60.0
    aws_region: str = "us-east-1"
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    s3_bucket: str = ""
    s3_endpoint_url: str = ""
    presigned_url_ttl_seconds: int = 3600
    upload_part_size_bytes: int = DEFAULT_UPLOAD_PART_SIZE_BYTES
    stub_match_window_seconds: int = 300
    simulations_store: str = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "deposim"
    mongodb_simulations_collection: str = "simulations"
    mongodb_cases_collection: str = "cases"
    mongodb_prompts_collection: str = "score_prompts"
    mongodb_connect_timeout_ms: int = 2000

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("simulations_store", mode="before")
    @classmethod
    def normalize_simulations_store(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("openai_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_openai_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 60.0
        return parsed_value

    @field_validator("webhook_max_skew_seconds", mode="before")
    @classmethod
    def normalize_webhook_max_skew(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 300
        return parsed_value

    @field_validator("presigned_url_ttl_seconds", mode="before")
    @classmethod
    def normalize_presigned_url_ttl(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 3600
        return parsed_value

    @field_validator("upload_part_size_bytes", mode="before")
    @classmethod
    def normalize_upload_part_size(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return DEFAULT_UPLOAD_PART_SIZE_BYTES
        return parsed_value

    @field_validator("stub_match_window_seconds", mode="before")
    @classmethod
    def normalize_stub_match_window(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value < 0:
            return 300
        return parsed_value


@lru_cache
def get_settings() -> Settings:
    return Settings()
