from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Broker CRM API"
    app_env: str = "local"
    app_debug: bool = True
    api_port: int = 8000
    storage_backend: str = "file"
    data_dir: str = "data"
    file_lock_timeout_seconds: float = 5.0
    mongo_url: str = "mongodb://localhost:27017"
    mongo_db: str = "gkf"
    id_allocation_attempts: int = 5
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    jwt_expiry_hours: int = 24
    auth_required: bool = True
    rate_limit_disabled: bool = False
    rate_limit_mutations_per_minute: int = 120
    metrics_enabled: bool = False
    otel_enabled: bool = False
    forms_webhook_secret: str | None = None
    otel_service_name: str = "broker-crm-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_console_exporter: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
