"""Application settings: single file, Pydantic-based.

DB selection:
  - DATABASE_URL set and non-empty -> PostgreSQL
  - DATABASE_URL absent/empty -> SQLite (DB_SQLITE_PATH, default data/raffle.db)

Cache / broker selection:
  - CACHE_REDIS_URL / BROKER_REDIS_URL set -> Redis
  - absent/empty -> in-process store (single node, dev and tests)
"""

import re
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _project_root() -> Path:
    """Project root. config.py lives at the root."""
    return Path(__file__).resolve().parent


def _ensure_env_loaded() -> None:
    """Load .env from the project root (then its parent). Idempotent."""
    root: Path = _project_root()
    for candidate in (root / ".env", root.parent / ".env"):
        if candidate.exists():
            load_dotenv(candidate, override=False)


_ensure_env_loaded()

_ENV_FILES: tuple[str, str] = (str(_project_root() / ".env"), ".env")


def _redact(url: str) -> str:
    return re.sub(r":([^:@/]+)@", r":***@", url) if url else ""


class DatabaseSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DB_",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str | None = Field(
        default=None,
        description="PostgreSQL DSN; when set, uses Postgres.",
        validation_alias="DATABASE_URL",
    )
    sqlite_path: str | None = Field(default="data/raffle.db")
    partition_urls: list[str] = Field(
        default_factory=list,
        description=(
            "Databases holding award records and outbox tasks, routed by user id. "
            "Empty means a single partition on the main database."
        ),
    )
    pool_size: int = Field(default=5)
    pool_timeout: int = Field(default=30)
    pool_recycle: int = Field(default=1800)

    def _use_postgres(self) -> bool:
        return bool((self.database_url or "").strip())

    def _resolved_sqlite_path(self) -> Path:
        raw: str = (self.sqlite_path or "data/raffle.db").strip()
        path: Path = Path(raw)
        if not path.is_absolute():
            path = (_project_root() / path).resolve()
        return path

    @property
    def url(self) -> str:
        if self._use_postgres():
            return (self.database_url or "").strip()
        path = self._resolved_sqlite_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{path.as_posix()}"

    def db_info_for_logging(self) -> str:
        if self._use_postgres():
            return f"PostgreSQL @ {_redact((self.database_url or '').strip())}"
        return f"SQLite @ {self._resolved_sqlite_path().as_posix()}"


class CacheSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CACHE_",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    redis_url: str | None = Field(default=None, description="Redis URL; empty uses the in-process store.")
    key_prefix: str = Field(default="raffle")
    config_ttl_seconds: int | None = Field(
        default=None,
        description="TTL for read-through config entries; None keeps them until re-armory.",
    )
    socket_timeout: float = Field(default=2.0)

    def use_redis(self) -> bool:
        return bool((self.redis_url or "").strip())


class BrokerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="BROKER_",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    redis_url: str | None = Field(default=None, description="Redis URL for stream publishing.")
    award_topic: str = Field(default="send_award")
    stream_maxlen: int = Field(default=100_000)

    def use_redis(self) -> bool:
        return bool((self.redis_url or "").strip())


class JobSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="JOB_",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    stock_sync_interval_seconds: int = Field(default=5)
    stock_sync_max_events: int = Field(default=10_000)
    outbox_scan_interval_seconds: int = Field(default=5)
    outbox_batch_limit: int = Field(default=100)
    outbox_grace_seconds: int = Field(default=60)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RAFFLE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    data_dir: Path = Field(default=Path("data"))

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    broker: BrokerSettings = Field(default_factory=BrokerSettings)
    jobs: JobSettings = Field(default_factory=JobSettings)

    def model_post_init(self, _context: object) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    return Settings()
