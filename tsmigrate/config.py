"""
Configuration settings for tsmigrate.

Uses Pydantic Settings to load environment variables for the database
connection, logging, and the defaults that shape a table migration (window
size, lookback horizon, compression layout, cutover flags).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache
from typing import Any, Dict, Literal, Mapping, Optional, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tsmigrate.domain.models import TableNames

DEFAULT_CUTOVER_CONFIG: Dict[str, Any] = {
    "db_extension": "timescaledb",
    "hk_history_global": 1,
    "hk_trends_global": 1,
    "compression_status": 1,
    "compress_older": "7d",
}


class Settings(BaseSettings):
    # Database
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field("postgres", alias="DB_USER")
    db_password: str = Field("postgres", alias="DB_PASSWORD")
    db_name: str = Field("zabbix", alias="DB_NAME")
    db_statement_timeout_ms: int = Field(0, alias="DB_STATEMENT_TIMEOUT_MS")
    db_pool_max_size: int = Field(4, alias="DB_POOL_MAX_SIZE")

    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    # Window plan
    window_size: timedelta = Field(timedelta(weeks=1), alias="MIGRATION_WINDOW_SIZE")
    horizon: timedelta = Field(timedelta(weeks=4), alias="MIGRATION_HORIZON")
    safety_margin: timedelta = Field(timedelta(days=1), alias="MIGRATION_SAFETY_MARGIN")
    partition_interval: timedelta = Field(
        timedelta(days=1), alias="MIGRATION_PARTITION_INTERVAL"
    )

    # Table layout
    time_column: str = Field("clock", alias="MIGRATION_TIME_COLUMN")
    segment_by: str = Field("itemid", alias="MIGRATION_SEGMENT_BY")
    order_by: str = Field("clock,ns", alias="MIGRATION_ORDER_BY")
    index_columns: str = Field("itemid,clock", alias="MIGRATION_INDEX_COLUMNS")
    target_suffix: str = Field("_new", alias="MIGRATION_TARGET_SUFFIX")
    buffer_suffix: str = Field("_tmp", alias="MIGRATION_BUFFER_SUFFIX")
    old_suffix: str = Field("_old", alias="MIGRATION_OLD_SUFFIX")

    # Execution
    lock_timeout_ms: int = Field(5000, alias="MIGRATION_LOCK_TIMEOUT_MS")
    retry_attempts: int = Field(3, alias="MIGRATION_RETRY_ATTEMPTS")
    retry_backoff_seconds: float = Field(1.0, alias="MIGRATION_RETRY_BACKOFF_SECONDS")
    compression_failure_policy: Literal["strict", "tolerant"] = Field(
        "strict", alias="MIGRATION_COMPRESSION_FAILURE_POLICY"
    )

    # Cutover configuration store
    config_table: str | None = Field("config", alias="MIGRATION_CONFIG_TABLE")
    cutover_config: Dict[str, Any] = Field(
        default_factory=lambda: dict(DEFAULT_CUTOVER_CONFIG),
        alias="MIGRATION_CUTOVER_CONFIG",
    )
    state_table: str = Field("tsmigrate_state", alias="MIGRATION_STATE_TABLE")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("config_table", mode="before")
    @classmethod
    def _blank_config_table(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


def _columns(value: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class MigrationConfig:
    """
    Per-migration knobs, derived from Settings once and threaded through every
    phase.

    Attributes
    ----------
    window_size : timedelta
        Width of each bulk-copy window.
    horizon : timedelta
        How far back from StartTime history is copied.
    safety_margin : timedelta
        Data newer than ``window_end - safety_margin`` is never compressed.
    compression_failure_policy : str
        "strict" fails the migration when compression keeps failing,
        "tolerant" records the segments and carries on.
    """

    window_size: timedelta = timedelta(weeks=1)
    horizon: timedelta = timedelta(weeks=4)
    safety_margin: timedelta = timedelta(days=1)
    partition_interval: timedelta = timedelta(days=1)
    time_column: str = "clock"
    segment_by: str = "itemid"
    order_by: Tuple[str, ...] = ("clock", "ns")
    index_columns: Tuple[str, ...] = ("itemid", "clock")
    target_suffix: str = "_new"
    buffer_suffix: str = "_tmp"
    old_suffix: str = "_old"
    lock_timeout_ms: int = 5000
    retry_attempts: int = 3
    retry_backoff_seconds: float = 1.0
    compression_failure_policy: str = "strict"
    cutover_config: Mapping[str, Any] = field(
        default_factory=lambda: dict(DEFAULT_CUTOVER_CONFIG)
    )

    @property
    def key_columns(self) -> Tuple[str, ...]:
        """Columns that identify one sample: segment-by key plus ordering."""
        keys = [self.segment_by]
        keys.extend(col for col in self.order_by if col not in keys)
        return tuple(keys)

    def table_names(self, source: str) -> TableNames:
        return TableNames.for_source(
            source,
            target_suffix=self.target_suffix,
            buffer_suffix=self.buffer_suffix,
            old_suffix=self.old_suffix,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> MigrationConfig:
        settings = settings or get_settings()
        return cls(
            window_size=settings.window_size,
            horizon=settings.horizon,
            safety_margin=settings.safety_margin,
            partition_interval=settings.partition_interval,
            time_column=settings.time_column,
            segment_by=settings.segment_by,
            order_by=_columns(settings.order_by),
            index_columns=_columns(settings.index_columns),
            target_suffix=settings.target_suffix,
            buffer_suffix=settings.buffer_suffix,
            old_suffix=settings.old_suffix,
            lock_timeout_ms=settings.lock_timeout_ms,
            retry_attempts=settings.retry_attempts,
            retry_backoff_seconds=settings.retry_backoff_seconds,
            compression_failure_policy=settings.compression_failure_policy,
            cutover_config=dict(settings.cutover_config),
        )


__all__ = ["DEFAULT_CUTOVER_CONFIG", "MigrationConfig", "Settings", "get_settings"]
