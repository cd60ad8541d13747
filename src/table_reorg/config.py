import logging
from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Target database holding the tables being reorganized (and the admin metadata tables)
    database_url: str = Field("sqlite:///./table_reorg.db", alias="DATABASE_URL")
    # Audit log connection; separate pool so audit writes never share the caller's transaction
    audit_database_url: str | None = Field(None, alias="AUDIT_DATABASE_URL")
    sql_dialect: str | None = Field(None, alias="SQL_DIALECT")  # oracle|postgresql, inferred from DATABASE_URL when unset

    # Audit log
    audit_logging_enabled: bool = Field(True, alias="AUDIT_LOGGING_ENABLED")
    audit_retention_days: int = Field(90, alias="AUDIT_RETENTION_DAYS")

    # Engine tuning
    loader_checkpoint_batches: int = Field(10, alias="LOADER_CHECKPOINT_BATCHES")
    max_parallel_degree: int = Field(16, alias="MAX_PARALLEL_DEGREE")
    keep_backup: bool = Field(True, alias="KEEP_BACKUP")
    default_hash_partitions: int = Field(4, alias="DEFAULT_HASH_PARTITIONS")

    # Scheduling
    redis_url: str = Field("redis://localhost:6379/0", alias="REDIS_URL")
    job_poll_interval_seconds: int = Field(300, alias="JOB_POLL_INTERVAL_SECONDS")
    audit_purge_interval_seconds: int = Field(86400, alias="AUDIT_PURGE_INTERVAL_SECONDS")
    # Cross-process table locks for Celery workers share the broker Redis
    object_lock_timeout_seconds: int = Field(86400, alias="OBJECT_LOCK_TIMEOUT_SECONDS")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"  # Allow extra environment variables


@lru_cache
def get_settings() -> Settings:
    return Settings()


def reset_settings():
    """Clear cached settings (useful in tests when env vars change)."""
    get_settings.cache_clear()  # type: ignore[attr-defined]


def resolve_dialect_name(settings: Settings) -> str:
    """Explicit SQL_DIALECT wins; otherwise derive it from the database URL scheme."""
    if settings.sql_dialect:
        return settings.sql_dialect.strip().lower()
    scheme = settings.database_url.split(":", 1)[0].split("+", 1)[0].lower()
    if scheme in ("postgresql", "postgres"):
        return "postgresql"
    return "oracle" if scheme == "oracle" else scheme


def configure_logging(settings: Settings) -> None:
    """Apply LOG_LEVEL to the package loggers."""
    level = logging.getLevelName(settings.log_level.strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown LOG_LEVEL {settings.log_level!r}")
    logging.getLogger("table_reorg").setLevel(level)
