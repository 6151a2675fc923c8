"""Configuration loading and validation for Veilgate."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from veilgate.detector import DetectorConfig
from veilgate.errors import ConfigError

REDIRECT_ENV_VAR = "REDIRECT_URL"


class RedirectConfig(BaseModel):
    """Where allowed visitors are sent."""

    target: str | None = Field(
        default=None,
        description="Downstream URL revealed to visitors judged human. "
        "Overridden by the REDIRECT_URL environment variable.",
    )


class ServerConfig(BaseModel):
    """Configuration for the FastAPI server."""

    host: str = "0.0.0.0"
    port: int = 3000
    detector_script: str | None = Field(
        default=None,
        description="Path to the client detector script served under each page's script name",
    )


class LimitsConfig(BaseModel):
    """Rate limiting and ephemeral state bounds."""

    window_seconds: float = Field(default=60.0, gt=0)
    max_requests: int = Field(default=10, ge=1)
    sweep_probability: float = Field(default=0.01, ge=0.0, le=1.0)
    fingerprint_max_age_seconds: float = Field(default=24 * 60 * 60, gt=0)
    max_body_bytes: int = Field(default=10 * 1024, ge=1)


class PowConfig(BaseModel):
    """Proof-of-work challenge parameters."""

    difficulty: int = Field(default=4, ge=0, le=64)
    freshness_ms: float = Field(default=30_000, gt=0)


class LoggingConfig(BaseModel):
    """Configuration for logging output."""

    level: str = "info"


class VeilgateConfig(BaseModel):
    """Top-level Veilgate configuration."""

    redirect: RedirectConfig = Field(default_factory=RedirectConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    pow: PowConfig = Field(default_factory=PowConfig)
    detector: DetectorConfig = Field(default_factory=DetectorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: str | Path | None = None) -> VeilgateConfig:
    """Load Veilgate configuration from a YAML file and the environment.

    Args:
        path: Path to the YAML config file. If None, uses 'veilgate.yaml'
              in the current directory, falling back to defaults.

    Returns:
        A validated VeilgateConfig instance.
    """
    path = Path("veilgate.yaml") if path is None else Path(path)

    raw: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    config = VeilgateConfig.model_validate(raw)

    env_target = os.environ.get(REDIRECT_ENV_VAR)
    if env_target:
        config.redirect.target = env_target
    return config


def require_redirect_target(config: VeilgateConfig) -> str:
    """Return the configured redirect target.

    Raises:
        ConfigError: If no target is configured. The service cannot start
            without one.
    """
    target = (config.redirect.target or "").strip()
    if not target:
        raise ConfigError(
            f"{REDIRECT_ENV_VAR} is not set. "
            f"Set it with: export {REDIRECT_ENV_VAR}=https://your-destination.com"
        )
    return target
