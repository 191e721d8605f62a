"""
Pipeline configuration.

All knobs live on one explicit PipelineConfig object that is passed into
constructors, so the pipeline can be exercised without mutating the process
environment. PipelineConfig.from_env() is the only place that reads env vars.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent
DEFAULT_ENV_FILE = ".env.local"

# Backing store pages are capped at 1000 rows per query
MAX_PAGE_SIZE = 1000


class ConfigurationError(ValueError):
    """Raised when required configuration is missing or invalid."""


def _parse_env_int(name: str, default: int, min_val: int, max_val: int) -> int:
    """Parse an integer environment variable with bounds checking.

    Args:
        name: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value (inclusive)
        max_val: Maximum allowed value (inclusive)

    Returns:
        Parsed integer within bounds, or default if invalid
    """
    try:
        val = int(os.getenv(name, str(default)))
        if not (min_val <= val <= max_val):
            logger.warning(f"{name}={val} out of bounds [{min_val}, {max_val}], using {default}")
            return default
        return val
    except ValueError:
        logger.warning(f"{name} invalid, using {default}")
        return default


def _parse_env_float(name: str, default: float, min_val: float, max_val: float) -> float:
    """Float counterpart of _parse_env_int."""
    try:
        val = float(os.getenv(name, str(default)))
        if not (min_val <= val <= max_val):
            logger.warning(f"{name}={val} out of bounds [{min_val}, {max_val}], using {default}")
            return default
        return val
    except ValueError:
        logger.warning(f"{name} invalid, using {default}")
        return default


class PipelineConfig(BaseModel):
    """Settings for one analysis run."""

    # Analysis service
    analysis_endpoint: str
    chatflow_id: str
    api_token: Optional[str] = None
    request_timeout: float = Field(default=60.0, gt=0)  # hard wall-clock cap per record, seconds

    # Oversized transcript fallback: on a 5xx for a transcript longer than
    # truncate_threshold, retry once with the first truncated_length characters
    truncate_threshold: int = Field(default=1000, gt=0)
    truncated_length: int = Field(default=1000, gt=0)

    # Storage
    database_url: str = "postgresql://localhost:5432/call_analysis"
    data_source_id: Optional[str] = None

    # Batching
    batch_size: int = Field(default=20, gt=0)
    max_concurrency: int = Field(default=5, gt=0)
    page_size: int = Field(default=MAX_PAGE_SIZE, gt=0, le=MAX_PAGE_SIZE)
    batch_delay: float = Field(default=0.0, ge=0)  # courtesy pause between batches, seconds

    @field_validator("analysis_endpoint")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v:
            raise ValueError("analysis_endpoint must not be empty")
        return v

    @property
    def prediction_url(self) -> str:
        return f"{self.analysis_endpoint}/prediction/{self.chatflow_id}"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, **overrides) -> "PipelineConfig":
        """Build a config from environment variables.

        Loads `env_file` (or $ENV_FILE, or .env.local) relative to the project
        root first. Values in `overrides` win over the environment.

        Raises:
            ConfigurationError: if the analysis endpoint or chatflow is missing
        """
        env_name = env_file or os.getenv("ENV_FILE", DEFAULT_ENV_FILE)
        env_path = Path(env_name)
        if not env_path.is_absolute():
            env_path = PROJECT_ROOT / env_path
        if env_path.exists():
            logger.info(f"Loading environment from: {env_path}")
            load_dotenv(env_path)

        endpoint = os.getenv("ANSWERAI_ENDPOINT")
        chatflow = os.getenv("ANSWERAI_ANALYSIS_CHATFLOW")
        if not overrides.get("analysis_endpoint", endpoint) or not overrides.get("chatflow_id", chatflow):
            raise ConfigurationError(
                "ANSWERAI_ENDPOINT and ANSWERAI_ANALYSIS_CHATFLOW must be set"
            )

        values = {
            "analysis_endpoint": endpoint,
            "chatflow_id": chatflow,
            "api_token": os.getenv("ANSWERAI_TOKEN"),
            "database_url": os.getenv("DATABASE_URL", "postgresql://localhost:5432/call_analysis"),
            "data_source_id": os.getenv("ANALYSIS_DATA_SOURCE_ID"),
            "request_timeout": _parse_env_float("ANALYSIS_REQUEST_TIMEOUT", 60.0, 1.0, 600.0),
            "batch_size": _parse_env_int("ANALYSIS_BATCH_SIZE", 20, 1, 500),
            "max_concurrency": _parse_env_int("ANALYSIS_MAX_CONCURRENCY", 5, 1, 50),
            "page_size": _parse_env_int("ANALYSIS_PAGE_SIZE", MAX_PAGE_SIZE, 1, MAX_PAGE_SIZE),
            "batch_delay": _parse_env_float("ANALYSIS_BATCH_DELAY", 0.0, 0.0, 60.0),
        }
        values.update(overrides)
        return cls(**values)
