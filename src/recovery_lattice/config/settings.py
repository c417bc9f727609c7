"""
Configuration for the lattice engine with Pydantic Settings.

All values can be overridden through ``LATTICE_``-prefixed environment
variables, using ``__`` for nesting (``LATTICE_SNAPSHOTS__MAX_SNAPSHOTS=500``).
The snapshot buffer settings are clamped into their supported ranges instead
of being rejected.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_SNAPSHOTS = 8
MAX_SNAPSHOTS = 2000
MIN_FLUSH_INTERVAL_MS = 5


class EngineConfig(BaseModel):
    """Configuration for planning and stage execution."""

    default_template: str = Field("synthetic", description="Stage template used when none is given")
    default_plugin_timeout_ms: int = Field(1000, gt=0)
    parallel_stages: bool = Field(False, description="Fan out plugins within a stage")
    max_plugins: int | None = Field(None, gt=0, description="Default plan size cap")
    run_deadline_ms: int | None = Field(None, gt=0, description="Run-level deadline")


class SnapshotConfig(BaseModel):
    """Bounds for the per-run snapshot buffer."""

    max_snapshots: int = Field(240)
    flush_interval_ms: int = Field(25)

    @field_validator("max_snapshots")
    @classmethod
    def clamp_max_snapshots(cls, v: int) -> int:
        return max(MIN_SNAPSHOTS, min(MAX_SNAPSHOTS, v))

    @field_validator("flush_interval_ms")
    @classmethod
    def clamp_flush_interval(cls, v: int) -> int:
        return max(MIN_FLUSH_INTERVAL_MS, v)


class StoreConfig(BaseModel):
    """Run store backend selection."""

    backend: Literal["memory", "artifacts"] = Field("memory")
    artifacts_root: Path = Field(Path("./artifacts"))
    save_audit_trace: bool = Field(True, description="Write a trace artifact per run")


class ObservabilityConfig(BaseModel):
    """Configuration for logging, tracing and metrics."""

    enable_tracing: bool = Field(True)
    enable_metrics: bool = Field(True)
    log_level: str = Field("INFO")
    otlp_endpoint: str | None = Field(None)
    service_name: str = Field("recovery-lattice")
    service_version: str = Field("0.4.0")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}")
        return v.upper()


class Settings(BaseSettings):
    """Main application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="LATTICE_", env_nested_delimiter="__", case_sensitive=False, extra="ignore"
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    snapshots: SnapshotConfig = Field(default_factory=SnapshotConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    environment: str = Field(
        "development", description="Environment: development, staging, production"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
