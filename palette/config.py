from pydantic import Field, HttpUrl, MongoDsn, RedisDsn
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """
    Application configuration settings loaded from environment variables.
    Plugin-specific settings are merged in at startup (see ``palette.main``).
    """

    service_name: str = Field(default="palette", alias="SERVICE_NAME")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    json_logs: bool = Field(default=False, alias="JSON_LOGS")
    api_key: str = Field(..., alias="API_KEY")

    mongodb_url: MongoDsn = Field(..., alias="MONGODB_URL")
    mongodb_database: str = Field(default="palette", alias="MONGO_DATABASE")
    redis_url: RedisDsn = Field(..., alias="REDIS_URL")
    redis_password: str | None = Field(default=None, alias="REDIS_PASSWORD")

    replicate_api_token: str = Field(..., alias="REPLICATE_API_TOKEN")
    replicate_base_url: HttpUrl = Field(
        default="https://api.replicate.com/v1", alias="REPLICATE_BASE_URL"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )
