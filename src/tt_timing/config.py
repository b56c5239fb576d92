"""Engine configuration, from code or from TT_* environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tt_timing.models import ResetPolicy

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "tt" / "executions.db"

# Canonical timezone of the application (JST)
DEFAULT_UTC_OFFSET_MINUTES = 9 * 60


class EngineConfig(BaseSettings):
    """Settings for TimingEngine.

    Every field can be set from the environment with a TT_ prefix, e.g.
    TT_DB_PATH or TT_RESET_POLICY=reject. Keyword arguments win over the
    environment.
    """

    model_config = SettingsConfigDict(env_prefix="TT_", extra="ignore")

    db_path: Path = DEFAULT_DB_PATH
    utc_offset_minutes: int = Field(default=DEFAULT_UTC_OFFSET_MINUTES, ge=-12 * 60, le=14 * 60)
    device_type: str = "desktop"
    reset_policy: ResetPolicy = ResetPolicy.AUTO_STOP
    at_risk_threshold: float = Field(default=0.0, ge=0.0, le=1.0)
    executions_count_as_completion: bool = True
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.5, ge=0.0)

    @field_validator("db_path")
    @classmethod
    def _expand_home(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("device_type")
    @classmethod
    def _known_device(cls, value: str) -> str:
        if value not in ("desktop", "mobile"):
            raise ValueError(f"device_type must be 'desktop' or 'mobile', got {value!r}")
        return value
