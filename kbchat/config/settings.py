from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, computed_field

load_dotenv()


class Settings(BaseSettings):
    """Base settings for the application."""

    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application settings
    APP_NAME: str = "KB Chat Backend"
    APP_VERSION: str = "1.0.0"
    APP_DESCRIPTION: str = "Cited question answering over an admin-curated tabular knowledge base"
    APP_AUTHOR: str = "KB Chat Development Team"
    LOG_LEVEL: str = "INFO"

    # Storage settings
    STORAGE_BACKEND: str = Field(default="auto", description="auto | supabase | sql")
    DATABASE_URL: str = ""
    LOCAL_SQLITE_PATH: str = "sqlite+aiosqlite:///./local.db"

    # Supabase settings
    SUPABASE_URL: str = Field(default="", description="Supabase project URL (https://xxx.supabase.co)")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(default="", description="Supabase service role key (for admin operations)")

    # Token validation
    LOCAL_AUTH_SECRET: str = "JWT_SECRET_KEY"
    LOCAL_AUTH_TOKEN_EXP_SECONDS: int = 3600
    AUTH_JWT_AUDIENCE: str = ""

    # Completion service settings
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_TEMPERATURE: float = 0.2
    OPENAI_MAX_TOKENS: int = 1024
    OPENAI_MAX_RETRIES: int = 0
    COMPLETION_TIMEOUT_SECONDS: float = 60.0

    # Embedding service settings
    EMBEDDING_API_KEY: str = ""
    EMBEDDING_BASE_URL: str = ""
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_DIMENSIONS: int = 1536
    EMBEDDING_TIMEOUT_SECONDS: float = 10.0

    # Retrieval settings
    RETRIEVAL_MODE: str = Field(default="auto", description="auto | vector | keyword")
    KEYWORD_TOP_K: int = 6
    KEYWORD_CANDIDATE_LIMIT: int = 12
    VECTOR_TOP_K: int = 5
    VECTOR_MATCH_THRESHOLD: float = 0.3

    # Ingestion settings
    KNOWLEDGE_BASE_DOC_ID: str = "csv-kb"
    INGEST_BATCH_SIZE: int = 50
    TEXT_CHUNK_SIZE: int = 2000
    TEXT_CHUNK_OVERLAP: int = 200

    # Streaming settings
    STREAM_STRATEGY: str = Field(default="passthrough", description="passthrough | replay")
    REPLAY_SLICE_CHARS: int = 6
    REPLAY_DELAY_SECONDS: float = 0.015
    SSE_HEARTBEAT_SECONDS: float = Field(
        default=15.0, description="Keep-alive comment interval while waiting on upstream (0 disables)"
    )

    @computed_field
    @property
    def effective_database_url(self) -> str:
        """Resolve the SQL database URL.

        Priority:
        1. Explicit DATABASE_URL (Postgres, SQLite, etc.)
        2. Local SQLite fallback for development: LOCAL_SQLITE_PATH
        """
        if self.DATABASE_URL and self.DATABASE_URL.strip():
            return self.DATABASE_URL.strip()
        if self.LOCAL_SQLITE_PATH and self.LOCAL_SQLITE_PATH.strip():
            return self.LOCAL_SQLITE_PATH.strip()
        return "sqlite+aiosqlite:///./local.db"

    @computed_field
    @property
    def effective_storage_backend(self) -> str:
        """Supabase when its REST credentials are present, SQL otherwise."""
        backend = self.STORAGE_BACKEND.strip().lower()
        if backend in ("supabase", "sql"):
            return backend
        if self.SUPABASE_URL.strip() and self.SUPABASE_SERVICE_ROLE_KEY.strip():
            return "supabase"
        return "sql"

    @computed_field
    @property
    def effective_retrieval_mode(self) -> str:
        """Vector retrieval only when an embedding key is configured."""
        mode = self.RETRIEVAL_MODE.strip().lower()
        if mode in ("vector", "keyword"):
            return mode
        return "vector" if self.EMBEDDING_API_KEY.strip() else "keyword"

    @property
    def embedding_api_key(self) -> str:
        return self.EMBEDDING_API_KEY or self.OPENAI_API_KEY

    @property
    def embedding_base_url(self) -> str:
        return self.EMBEDDING_BASE_URL or self.OPENAI_BASE_URL


settings = Settings()
