from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # App
    APP_NAME: str = "Inbox Triage"
    BASE_URL: str = "http://localhost:8000"
    SECRET_KEY: str = "change-me"  # signs the session cookie + encrypts OAuth tokens (see crypto.py)
    DATABASE_URL: str = "sqlite:///./inbox_triage.db"
    LOG_LEVEL: str = "INFO"
    SESSION_MAX_AGE_DAYS: int = 30

    # Google OAuth
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_REDIRECT_PATH: str = "/auth/google/callback"

    # OpenAI
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"

    # Sync behavior
    SYNC_QUERY: str = "is:inbox newer_than:1d"
    SYNC_MAX_PER_INBOX: int = 10
    CRON_SECRET: str = ""
    INTERNAL_SYNC_CRON_ENABLED: bool = False
    INTERNAL_SYNC_CRON_INTERVAL_SECONDS: int = 5

    # Unsubscribe automation
    UNSUBSCRIBE_USER_AGENT: str = "InboxTriage/1.0 (best-effort unsubscribe)"
    UNSUBSCRIBE_TIMEOUT_SECONDS: float = 20.0

settings = Settings()
