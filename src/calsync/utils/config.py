from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # Google Calendar settings
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_TOKEN_URI: str = "https://oauth2.googleapis.com/token"

    # Microsoft Graph settings
    MS_CLIENT_ID: str = ""
    MS_CLIENT_SECRET: str = ""
    MS_TENANT_ID: str = ""
    MS_GRAPH_URL: str = "https://graph.microsoft.com/v1.0"

    # Redis settings for the record store
    REDIS_HOST: str = ""
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""

    # File storage fallback
    STORAGE_PATH: str = "./storage"

    # Sync policy
    SYNC_WINDOW_PAST_MONTHS: int = 3
    SYNC_WINDOW_FUTURE_MONTHS: int = 12
    GOOGLE_MAX_RESULTS: int = 2500
    HTTP_TIMEOUT_SECONDS: float = 30.0
    ICS_USER_AGENT: str = "calsync/0.1"

    # IANA zone used for all-day dates; empty means the host zone
    LOCAL_TIMEZONE: str = ""
    DEFAULT_CALENDAR_COLOR: str = "#3B82F6"

    LOG_LEVEL: str = "INFO"


# Create settings instance
settings = Settings()
