"""Configuration management for Mailroom components."""
import os
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field


class ServiceIdentity(BaseModel):
    """Service identity for telemetry."""

    name: str
    version: str
    team: str = "mail"
    domain: str = "mail"


class PostgresConfig(BaseModel):
    """Postgres connection configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "mailroom"
    user: str = "mailroom"
    password: str = ""

    @classmethod
    def from_env(cls) -> "PostgresConfig":
        """Load from environment variables."""
        return cls(
            host=os.getenv("POSTGRES_HOST", "localhost"),
            port=int(os.getenv("POSTGRES_PORT", "5432")),
            database=os.getenv("POSTGRES_DB", "mailroom"),
            user=os.getenv("POSTGRES_USER", "mailroom"),
            password=os.getenv("POSTGRES_PASSWORD", ""),
        )

    @property
    def connection_string(self) -> str:
        """Build psycopg connection string."""
        return (
            f"host={self.host} port={self.port} dbname={self.database} "
            f"user={self.user} password={self.password}"
        )


class SyncConfig(BaseModel):
    """Tuning knobs for the mailbox sync engine."""

    initial_fetch_window: int = Field(default=50, ge=1)
    concurrency_limit: int = Field(default=3, ge=1)
    connect_timeout_seconds: float = 30.0
    socket_timeout_seconds: float = 30.0
    min_background_interval_seconds: float = 60.0
    snippet_length: int = 200
    on_parse_error: Literal["skip", "abort"] = "skip"

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Load from environment variables."""
        return cls(
            initial_fetch_window=int(os.getenv("SYNC_INITIAL_FETCH_WINDOW", "50")),
            concurrency_limit=int(os.getenv("SYNC_CONCURRENCY_LIMIT", "3")),
            connect_timeout_seconds=float(os.getenv("IMAP_CONNECT_TIMEOUT", "30")),
            socket_timeout_seconds=float(os.getenv("IMAP_SOCKET_TIMEOUT", "30")),
            min_background_interval_seconds=float(
                os.getenv("SYNC_MIN_BACKGROUND_INTERVAL", "60")
            ),
            on_parse_error=os.getenv("SYNC_ON_PARSE_ERROR", "skip"),  # type: ignore[arg-type]
        )


class MailroomConfig(BaseModel):
    """Main configuration for Mailroom components."""

    env: str = Field(default="dev")
    service: ServiceIdentity
    postgres: PostgresConfig
    sync: SyncConfig
    log_level: str = "INFO"


@lru_cache
def get_config() -> MailroomConfig:
    """Load configuration from environment variables."""
    return MailroomConfig(
        env=os.getenv("ENV", "dev"),
        service=ServiceIdentity(
            name=os.getenv("SERVICE_NAME", "mailroom-sync"),
            version=os.getenv("SERVICE_VERSION", "0.1.0"),
            team=os.getenv("TEAM", "mail"),
            domain=os.getenv("DOMAIN", "mail"),
        ),
        postgres=PostgresConfig.from_env(),
        sync=SyncConfig.from_env(),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
