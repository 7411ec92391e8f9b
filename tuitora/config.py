from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_hostname: str = "localhost"
    database_port: str = "5432"
    database_password: str = "postgres"
    database_name: str = "tuitora"
    database_username: str = "postgres"
    database_ssl: bool = False
    database_echo: bool = False
    redis_url: str = "redis://localhost:6379/0"

    AFRICASTALKING_USERNAME: str = "sandbox"
    AFRICASTALKING_API_KEY: str = ""
    AFRICASTALKING_SENDER_ID: str | None = None
    AFRICASTALKING_FORCE_TLS12: bool = False

    USSD_SERVICE_CODE: str = "*384*38164#"
    SMS_SHORT_CODE: str = "38164"
    USSD_SESSION_TTL: int = 180  # seconds
    USSD_MAX_LENGTH: int = 182
    USSD_RATE_LIMIT_TIMES: int = 30
    USSD_RATE_LIMIT_SECONDS: int = 60
    SMS_RETRY_ATTEMPTS: int = 3

    DEFAULT_COUNTRY_CODE: str = "254"
    CURRENCY: str = "KES"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def database_url(self) -> str:
        """Build the async PostgreSQL connection URL dynamically."""
        return (
            f"postgresql+asyncpg://{self.database_username}:"
            f"{self.database_password}@{self.database_hostname}:"
            f"{self.database_port}/{self.database_name}"
        )

settings = Settings()
