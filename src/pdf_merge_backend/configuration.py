from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "defaults.yaml"

# Hard upper bound on concurrent downloads inside one group; every in-flight
# buffer is held fully in memory.
MAX_DOWNLOAD_CONCURRENCY = 10


class Settings(BaseModel):
    database_path: Path
    batch_storage_path: Path
    base_url: str
    admin_api_key: str = ""

    batch_file_ttl: float = Field(86400, gt=0)
    batch_cleanup_interval: float = Field(3600, gt=0)
    worker_poll_interval: float = Field(5, gt=0)
    stale_processing_after: float = Field(0, ge=0)
    worker_enabled: bool = True

    webhook_timeout: float = Field(10, gt=0)

    request_timeout: float = Field(10, gt=0)
    fetch_retries: int = Field(3, ge=0)
    fetch_retry_delay: float = Field(5, ge=0)
    download_concurrency: int = Field(1, ge=1, le=MAX_DOWNLOAD_CONCURRENCY)
    tls_verify: bool = True

    log_level: str = "INFO"

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    OmegaConf.set_struct(base, True)

    override_config = OmegaConf.create(overrides or {})
    return DictConfig(OmegaConf.merge(base, override_config))


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> Settings:
    """
    Build validated settings from defaults.yaml, the environment and overrides.

    Environment variables (optionally from a .env file) are resolved through
    the ``oc.env`` interpolations in defaults.yaml; explicit overrides win
    over both. Unknown override keys are rejected by the struct flag.

    Raises:
        pydantic.ValidationError: If a resolved value is out of bounds
    """
    load_dotenv()
    runtime_config = make_runtime_config(overrides)
    resolved = OmegaConf.to_container(runtime_config, resolve=True)
    settings = Settings(**resolved)  # type: ignore[arg-type]

    if not settings.tls_verify:
        logger.warning("TLS certificate verification is disabled for source downloads")
    return settings
