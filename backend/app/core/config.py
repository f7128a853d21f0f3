import secrets
from typing import Any, List, Literal, Optional, Union

from pydantic import AnyHttpUrl, Field, PostgresDsn, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    API_V1_STR: str = "/api"
    SECRET_KEY: str = secrets.token_urlsafe(32)
    # 60 minutes * 24 hours * 8 days = 8 days
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 8
    PROJECT_NAME: str = "NebulaChat"
    LOG_LEVEL: str = "INFO"
    # CORS_ORIGINS is a JSON-formatted list of origins
    # e.g: '["http://localhost", "http://localhost:3000"]'
    CORS_ORIGINS: List[AnyHttpUrl] = ["http://localhost:3000"]

    @field_validator("CORS_ORIGINS", mode="before")
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    # Backends are picked here and nowhere else
    STORE_BACKEND: Literal["sql", "memory"] = "sql"
    REALTIME_BACKEND: Literal["redis", "memory"] = "redis"

    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "password"
    POSTGRES_DB: str = "nebulachat"
    SQLALCHEMY_DATABASE_URI: Optional[str] = Field(default=None, validate_default=True)
    DB_CREATE_TABLES: bool = True

    @field_validator("SQLALCHEMY_DATABASE_URI", mode="before")
    def assemble_db_connection(cls, v: Optional[str], info) -> Any:
        if isinstance(v, str):
            return v
        values = info.data
        return str(PostgresDsn.build(
            scheme="postgresql+asyncpg",
            username=values.get("POSTGRES_USER"),
            password=values.get("POSTGRES_PASSWORD"),
            host=values.get("POSTGRES_SERVER"),
            path=f"{values.get('POSTGRES_DB') or ''}",
        ))

    REDIS_URL: str = "redis://redis:6379/0"

    # Room lifecycle
    ROOM_CAPACITY: int = 10
    ROOM_ID_MAX_ATTEMPTS: int = 20
    ROOM_SECRET_LENGTH: int = 7

    # Typing indicators
    TYPING_STALE_SECONDS: int = 10
    TYPING_PURGE_SECONDS: int = 30
    TYPING_PURGE_INTERVAL_SECONDS: int = 30
    TYPING_PURGE_ENABLED: bool = True

    # Attachments
    UPLOAD_DIR: str = "uploads"
    UPLOAD_BASE_URL: str = "/uploads"
    MAX_UPLOAD_BYTES: int = 5 * 1024 * 1024  # 5MB
    ALLOWED_UPLOAD_TYPES: List[str] = ["image/jpeg", "image/png", "image/gif", "image/webp"]

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_PER_MINUTE: int = 120

    # Observability
    METRICS_ENABLED: bool = True
    OTEL_ENABLED: bool = False
    OTEL_SERVICE_NAME: str = "nebulachat-backend"
    OTLP_ENDPOINT: str = "http://localhost:4317"
    OTLP_INSECURE: bool = True

    model_config = {
        "case_sensitive": True,
        "env_file": ".env"
    }


settings = Settings()
