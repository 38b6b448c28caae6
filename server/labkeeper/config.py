from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    PROJECT_NAME: str = "Labkeeper API"
    DATABASE_URL: str = "sqlite+pysqlite:///./labkeeper.db"

    # Caller identity (tokens are issued elsewhere, only verified here)
    SECRET_KEY: str = "labkeeper-dev-secret"
    ALGORITHM: str = "HS256"

    LOG_LEVEL: str = "INFO"

    SMTP_SERVER: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    FROM_EMAIL: str = "labkeeper@localhost"
    SEND_EMAILS: bool = False
    FRONTEND_URL: str = "http://localhost:5173"

    RAISED_EXPIRY_HOURS: int = 24
    APPROVED_EXPIRY_HOURS: int = 48
    MAX_EXTENSION_MONTHS: int = 2

    SCHEDULER_ENABLED: bool = True
    SWEEPER_HOUR: int = 18
    SWEEPER_MINUTE: int = 0

    STOCK_RETRY_ATTEMPTS: int = 3


settings = Settings()
