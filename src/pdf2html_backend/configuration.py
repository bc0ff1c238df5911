from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf
from pydantic import BaseModel, field_validator

CONFIG_PATH = Path(__file__).resolve().parent / "default_config.yaml"

MAX_PDF_BYTES = 100 * 1024 * 1024


class ApiSettings(BaseModel):
    prefix: str = "/api/v1"
    host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: List[str] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value


class RedisSettings(BaseModel):
    url: str


class JobStoreSettings(BaseModel):
    backend: Literal["redis", "memory"] = "redis"
    key_prefix: str = "job:"
    ttl_seconds: Optional[int] = None


class QueueSettings(BaseModel):
    backend: Literal["rabbitmq", "memory"] = "rabbitmq"
    url: str
    name: str = "pdf.text.conversion"
    prefetch_count: int = 1
    dead_letter_exchange: Optional[str] = None
    dead_letter_queue: Optional[str] = None
    poll_interval_seconds: float = 0.5


class StorageSettings(BaseModel):
    endpoint_url: Optional[str] = None
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    bucket: str
    region: str = "us-east-1"
    create_bucket: bool = True
    presign_expiry_seconds: int = 3600
    connect_timeout_seconds: float = 10
    read_timeout_seconds: float = 60


class OcrSettings(BaseModel):
    api_key: Optional[str] = None
    base_url: str = "https://api.mistral.ai"
    model: str = "mistral-ocr-latest"
    include_images: bool = True
    timeout_seconds: float = 300


class FetchSettings(BaseModel):
    timeout_seconds: float = 30
    max_bytes: int = MAX_PDF_BYTES


class UrlGuardSettings(BaseModel):
    resolve_dns: bool = False


class WorkerSettings(BaseModel):
    embedded: bool = False
    job_timeout_seconds: Optional[float] = 600
    requeue_delay_seconds: float = 5


class ClientSettings(BaseModel):
    base_url: str
    poll_interval_seconds: float = 2.0
    snapshot_path: Path


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s %(message)s"


class Settings(BaseModel):
    api: ApiSettings
    redis: RedisSettings
    job_store: JobStoreSettings
    queue: QueueSettings
    storage: StorageSettings
    ocr: OcrSettings
    fetch: FetchSettings
    url_guard: UrlGuardSettings
    worker: WorkerSettings
    client: ClientSettings
    logging: LoggingSettings


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> Settings:
    """
    Build validated settings from the packaged defaults plus overrides.

    Environment variables referenced by the defaults are read at call time,
    after ``.env`` has been loaded. Overrides are merged in struct mode, so a
    misspelled section or key fails loudly instead of being ignored.

    Args:
        overrides: Nested mapping of values to replace, e.g.
            ``{"queue": {"backend": "memory"}}``

    Returns:
        Settings with every interpolation resolved
    """
    load_dotenv()
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    merged = OmegaConf.merge(base, OmegaConf.create(overrides or {}))
    resolved = OmegaConf.to_container(merged, resolve=True, enum_to_str=True)
    return Settings.model_validate(resolved)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return make_runtime_config()


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.logging.level.upper(), format=settings.logging.format)
