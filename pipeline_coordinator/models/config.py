"""Configuration models loaded from YAML."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class StageConfig(BaseModel):
    name: str = Field(min_length=1)
    requires_gate: bool = False
    description: str = ""
    predecessor: Optional[str] = Field(
        default=None,
        description="Defaults to the previously listed stage; the first stage has none.",
    )
    executor: Optional[str] = Field(
        default=None,
        description="Dotted path 'package.module:attribute' resolving to a StageExecutor or a factory returning one.",
    )


class RetrySettings(BaseModel):
    max_retries: int = Field(ge=0, le=50, default=3)
    base_delay: float = Field(gt=0.0, default=1.0, description="Seconds.")
    max_delay: float = Field(gt=0.0, default=30.0, description="Seconds.")
    jitter_ratio: float = Field(ge=0.0, le=1.0, default=0.25)
    transient_status_codes: List[int] = Field(
        default_factory=lambda: [408, 429, 500, 502, 503, 504]
    )


class GateSettings(BaseModel):
    notify_after_hours: float = Field(gt=0.0, default=24.0)


class DatabaseSettings(BaseModel):
    path: str = "data/pipeline/checkpoints.db"
    busy_timeout: float = Field(gt=0.0, default=30.0, description="Seconds to wait on a locked database.")
    stale_after_hours: float = Field(gt=0.0, default=24.0)


class LoggingSettings(BaseModel):
    level: str = "normal"
    log_dir: Optional[str] = None
    log_to_file: bool = False


class CoordinatorSettings(BaseModel):
    stages: List[StageConfig] = Field(min_length=1)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    gates: GateSettings = Field(default_factory=GateSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    error_history_size: int = Field(ge=1, le=100, default=5)
