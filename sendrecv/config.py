"""Application configuration loaded from environment variables.

Variables use the ``SENDRECV_`` prefix and ``__`` between section and field,
e.g. ``SENDRECV_SIGNALLING__SERVER`` or ``SENDRECV_SYSTEM__LOG_LEVEL``.
A ``.env`` file in the working directory is read as well.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sendrecv.core.constants import PipelineConstants, ProtocolConstants


class SignallingConfig(BaseModel):
    """Signalling server connection."""

    server: str = Field(default=ProtocolConstants.DEFAULT_SERVER)
    open_timeout: float = Field(default=10.0, gt=0)
    verify_tls: bool = Field(default=True)
    response_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        description="Seconds to wait for each server/peer reply; unset waits forever.",
    )
    id_min: int = Field(default=ProtocolConstants.ID_MIN, ge=0)
    id_max: int = Field(default=ProtocolConstants.ID_MAX)

    @model_validator(mode="after")
    def check_id_range(self) -> "SignallingConfig":
        if self.id_max <= self.id_min:
            raise ValueError(f"id_max ({self.id_max}) must be greater than id_min ({self.id_min})")
        return self


class MediaConfig(BaseModel):
    """Local media pipeline."""

    profile_file: Optional[Path] = Field(
        default=None, description="Optional YAML call profile."
    )
    stun_server: Optional[str] = Field(
        default=None,
        description=f"Overrides the profile STUN server (default {PipelineConstants.STUN_SERVER}).",
    )


class SystemConfig(BaseModel):
    """Logging."""

    log_level: str = Field(default="INFO")
    log_format: Literal["console", "json"] = Field(default="console")
    log_dir: Optional[Path] = Field(
        default=None, description="Also write logs to a timestamped file in this directory."
    )


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SENDRECV_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    signalling: SignallingConfig = Field(default_factory=SignallingConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    system: SystemConfig = Field(default_factory=SystemConfig)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
