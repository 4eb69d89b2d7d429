from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Aether CRM Core"
    app_env: str = "local"
    app_debug: bool = True
    api_port: int = 8000
    database_url: str = "sqlite+pysqlite:///:memory:"
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    storage_backend: str = "local"
    rest_store_url: str = ""
    rest_store_api_key: str = ""
    rest_store_timeout_seconds: float = 10.0
    default_page_size: int = 25
    max_page_size: int = 500
    schema_sample_rows: int = 50
    metrics_enabled: bool = False
    otel_enabled: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
