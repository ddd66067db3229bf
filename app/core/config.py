from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    # Separate login with SELECT-only grants for generated SQL, if available
    READONLY_DATABASE_URL: Optional[str] = None

    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Chat-completions endpoint (Azure OpenAI / AI Foundry or OpenAI-compatible)
    LLM_ENDPOINT: Optional[str] = None
    LLM_API_KEY: Optional[str] = None
    LLM_DEPLOYMENT: str = "gpt-4o-mini"
    LLM_API_VERSION: Optional[str] = "2024-06-01"
    LLM_TIMEOUT_SECONDS: float = 60.0

    # Exact path
    SQL_MAX_ATTEMPTS: int = 3
    SQL_ROW_LIMIT: int = 200
    SQL_TIMEOUT_SECONDS: float = 15.0
    QUERYABLE_TABLES: List[str] = ["daily_changes_snapshot"]

    # Insight path
    RETRIEVAL_TOP_K: int = 5
    CHUNK_SIZE_WORDS: int = 120
    CHUNK_OVERLAP_WORDS: int = 20

    HISTORY_MESSAGES: int = 6
    LOG_LEVEL: str = "INFO"

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Create a single instance of the settings to use everywhere
settings = Settings()
