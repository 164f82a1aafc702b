"""
Application Settings.

Centralized configuration using Pydantic Settings with environment variable loading.
Settings are loaded once at startup and passed explicitly to every adapter and
provider constructor.

Backend availability:
    - PostgreSQL is only considered configured when host, port, database,
      user and password are all present. Otherwise the embedded SQLite file
      is used until an upgrade succeeds.
    - Neo4j and Pinecone are optional. Missing credentials disable that
      store only; the rest of the system runs degraded.
"""

from functools import lru_cache
from typing import Literal
from urllib.parse import quote_plus

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Embedded relational store (SQLite)
    # -------------------------------------------------------------------------
    sqlite_path: str = Field(
        default="./mnemo_memory.db",
        description="Path of the embedded SQLite database file",
    )

    # -------------------------------------------------------------------------
    # Networked relational store (PostgreSQL)
    # -------------------------------------------------------------------------
    postgres_host: str | None = Field(default=None, description="PostgreSQL host")
    postgres_port: int | None = Field(default=None, description="PostgreSQL port")
    postgres_db: str | None = Field(default=None, description="PostgreSQL database name")
    postgres_user: str | None = Field(default=None, description="PostgreSQL user")
    postgres_password: SecretStr | None = Field(default=None, description="PostgreSQL password")
    postgres_pool_size: int = Field(default=10, description="Connection pool size")
    postgres_connect_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for opening a PostgreSQL connection",
    )

    # -------------------------------------------------------------------------
    # Neo4j (Graph Store)
    # -------------------------------------------------------------------------
    neo4j_uri: str | None = Field(default=None, description="Neo4j connection URI (bolt://)")
    neo4j_user: str | None = Field(default=None, description="Neo4j username")
    neo4j_password: SecretStr | None = Field(default=None, description="Neo4j password")
    neo4j_database: str = Field(default="neo4j", description="Neo4j database name")

    # -------------------------------------------------------------------------
    # Pinecone (Vector Store)
    # -------------------------------------------------------------------------
    pinecone_api_key: SecretStr | None = Field(default=None, description="Pinecone API key")
    pinecone_index_name: str = Field(
        default="mnemo-memories",
        description="Pinecone index name",
    )
    pinecone_namespace: str = Field(default="", description="Pinecone namespace")

    # -------------------------------------------------------------------------
    # OpenAI (Embeddings for the vector store)
    # -------------------------------------------------------------------------
    openai_api_key: SecretStr | None = Field(default=None, description="OpenAI API key for embeddings")
    embedding_model: str = Field(
        default="text-embedding-3-small",
        description="OpenAI embedding model",
    )
    embedding_dimension: int = Field(default=1536, description="Embedding dimension")

    # -------------------------------------------------------------------------
    # Model provider (classification / relation extraction)
    # -------------------------------------------------------------------------
    llm_provider: Literal["ollama", "anthropic"] = Field(
        default="ollama",
        description="Model provider used for enrichment. Switching is a configuration action.",
    )
    ollama_base_url: str = Field(default="http://localhost:11434", description="Ollama endpoint")
    ollama_model: str = Field(default="llama3.1:latest", description="Ollama model name")
    anthropic_api_key: SecretStr | None = Field(
        default=None, description="Anthropic API key for Claude"
    )
    anthropic_model: str = Field(
        default="claude-3-5-haiku-latest",
        description="Anthropic model name",
    )
    provider_timeout_seconds: float = Field(
        default=60.0,
        description="Timeout for a single provider call",
    )
    provider_max_input_chars: int = Field(
        default=4000,
        description="Longest text accepted by a single provider call",
    )

    # -------------------------------------------------------------------------
    # Enrichment pipeline
    # -------------------------------------------------------------------------
    pipeline_batch_size: int = Field(default=8, ge=1, description="Max memories per batch")
    pipeline_batch_window_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="How long to wait for a batch to fill before dispatching",
    )
    pipeline_max_attempts: int = Field(default=3, ge=1, description="Attempts per job")
    pipeline_backoff_base_seconds: float = Field(default=1.0, description="First retry delay")
    pipeline_backoff_max_seconds: float = Field(default=60.0, description="Retry delay ceiling")
    store_timeout_seconds: float = Field(default=10.0, description="Timeout for a store write")
    relation_context_size: int = Field(
        default=5,
        ge=0,
        description="Recent enriched memories added as context for relation extraction",
    )
    relation_min_confidence: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Relations below this confidence are discarded",
    )

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------
    reconcile_interval_seconds: int = Field(
        default=300,
        description="Interval of the periodic reconciliation sweep",
    )
    reconcile_batch_limit: int = Field(default=200, description="Memories scanned per sweep")
    index_max_attempts: int = Field(
        default=3,
        description="Index attempts before an incomplete memory is reported as a consistency gap",
    )

    # -------------------------------------------------------------------------
    # Application Settings
    # -------------------------------------------------------------------------
    app_env: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment",
    )
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    api_host: str = Field(default="127.0.0.1", description="HTTP bind host")
    api_port: int = Field(default=8000, description="HTTP bind port")

    # -------------------------------------------------------------------------
    # Security Settings
    # -------------------------------------------------------------------------
    api_key: SecretStr | None = Field(
        default=None,
        description="API key for authentication. If set, all requests require X-API-Key header.",
    )
    api_key_enabled: bool = Field(
        default=False,
        description="Enable API key authentication. Set True for production.",
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env == "development"

    @property
    def postgres_configured(self) -> bool:
        """True only if every PostgreSQL connection value is present."""
        return all(
            [
                self.postgres_host and self.postgres_host.strip(),
                self.postgres_port,
                self.postgres_db and self.postgres_db.strip(),
                self.postgres_user and self.postgres_user.strip(),
                self.postgres_password and self.postgres_password.get_secret_value(),
            ]
        )

    @property
    def postgres_url(self) -> str | None:
        """SQLAlchemy URL for the networked store, or None if incomplete."""
        if not self.postgres_configured:
            return None
        password = quote_plus(self.postgres_password.get_secret_value())
        return (
            f"postgresql+asyncpg://{quote_plus(self.postgres_user)}:{password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def sqlite_url(self) -> str:
        """SQLAlchemy URL for the embedded store."""
        return f"sqlite+aiosqlite:///{self.sqlite_path}"

    @property
    def neo4j_configured(self) -> bool:
        return bool(self.neo4j_uri and self.neo4j_user and self.neo4j_password)

    @property
    def pinecone_configured(self) -> bool:
        return bool(self.pinecone_api_key and self.openai_api_key)

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Refuse to start a production deployment without API key auth."""
        if not self.is_production:
            return self
        problems = []
        if not self.api_key_enabled:
            problems.append("api_key_enabled must be True in production")
        elif self.api_key is None:
            problems.append("api_key must be set when api_key_enabled is True")
        if self.debug:
            problems.append("debug must be False in production")
        if problems:
            raise ValueError(f"Production configuration errors: {'; '.join(problems)}")
        return self

    @model_validator(mode="after")
    def validate_backoff(self) -> "Settings":
        if self.pipeline_backoff_max_seconds < self.pipeline_backoff_base_seconds:
            raise ValueError("pipeline_backoff_max_seconds must be >= pipeline_backoff_base_seconds")
        return self


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload settings if needed.
    """
    return Settings()
