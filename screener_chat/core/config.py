from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_ENV: str = "dev"
    API_VERSION: str = "v1.4.0"
    DATABASE_URL: str = "sqlite:///./screener.db"
    LOG_LEVEL: str = "INFO"

    JWT_ISSUER: str = "screener-chat"
    JWT_AUDIENCE: str = "screener-chat-web"
    JWT_ACCESS_TTL_SECONDS: int = 3600
    JWT_SECRET: str = "change_me_super_secret"

    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_CHAT_MODEL: str = "gpt-4o"
    OPENAI_EXTRACTION_MODEL: str = "gpt-4o-mini"
    OPENAI_TIMEOUT_SECONDS: int = 30

    CHAT_TEMPERATURE: float = 0.4
    EXTRACTION_TEMPERATURE: float = 0.1
    CHAT_MAX_TOKENS: int = 500

    # transcript window sent to the model
    MAX_CONTEXT_MESSAGES: int = 20
    SEQUENCE_WRITE_RETRIES: int = 5

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
