"""
Pipeline configuration.

Non-secret settings live in config/config.yaml; secrets (internal keys,
database credentials) come from the environment / .env.  Environment
variables win over the YAML file.
"""
from __future__ import annotations

import os
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from legal_ingest.schemas import JobType

DEFAULT_CONFIG_PATH = "config/config.yaml"

DEFAULT_WORKER_ENDPOINTS = {
    JobType.CHUNK.value: "/api/workers/chunk",
    JobType.EMBED.value: "/api/workers/embed",
    JobType.ENRICH.value: "/api/workers/enrich",
}

# env var -> settings field
_ENV_OVERRIDES = {
    "INTERNAL_INGEST_KEY": "internal_ingest_key",
    "CRON_WORKER_KEY": "cron_worker_key",
    "DATABASE_URL": "database_url",
    "WORKER_BASE_URL": "worker_base_url",
    "LOG_LEVEL": "log_level",
}


class PipelineSettings(BaseModel):
    """Everything the orchestrator, the stage workers and the server need."""

    database_url: str = "sqlite:///data/pipeline.db"

    # Shared internal secrets (either one authenticates a trigger)
    internal_ingest_key: Optional[str] = None
    cron_worker_key: Optional[str] = None

    # Stage worker endpoints
    worker_base_url: str = "http://localhost:8000"
    worker_endpoints: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_WORKER_ENDPOINTS))
    worker_timeout_s: float = 120.0
    worker_retry_attempts: int = 3

    # Scheduling
    concurrency_docs: int = 25
    max_concurrency_docs: int = 50
    max_attempts: int = 5
    lease_minutes: int = 5
    backoff_base_s: int = 60
    backoff_max_s: int = 3600

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = "logs/pipeline.log"
    log_json: bool = False

    @property
    def lease(self) -> timedelta:
        return timedelta(minutes=self.lease_minutes)

    @property
    def backoff_base(self) -> timedelta:
        return timedelta(seconds=self.backoff_base_s)

    @property
    def backoff_max(self) -> timedelta:
        return timedelta(seconds=self.backoff_max_s)

    def worker_url(self, job_type: JobType) -> str:
        path = self.worker_endpoints.get(job_type.value, DEFAULT_WORKER_ENDPOINTS[job_type.value])
        if path.startswith(("http://", "https://")):
            return path
        return self.worker_base_url.rstrip("/") + "/" + path.lstrip("/")


def _flatten(cfg: dict) -> dict:
    """Map the sectioned YAML layout onto PipelineSettings fields."""
    database = cfg.get("database", {})
    workers = cfg.get("workers", {})
    pipeline = cfg.get("pipeline", {})
    log_cfg = cfg.get("logging", {})

    flat: dict = {}
    if "url" in database:
        flat["database_url"] = database["url"]
    for key, field in (
        ("base_url", "worker_base_url"),
        ("endpoints", "worker_endpoints"),
        ("timeout_s", "worker_timeout_s"),
        ("retry_attempts", "worker_retry_attempts"),
    ):
        if key in workers:
            flat[field] = workers[key]
    for key in (
        "concurrency_docs",
        "max_concurrency_docs",
        "max_attempts",
        "lease_minutes",
        "backoff_base_s",
        "backoff_max_s",
    ):
        if key in pipeline:
            flat[key] = pipeline[key]
    if "level" in log_cfg:
        flat["log_level"] = log_cfg["level"]
    if "file" in log_cfg:
        flat["log_file"] = log_cfg["file"]
    if "json" in log_cfg:
        flat["log_json"] = log_cfg["json"]
    return flat


def load_settings(path: str | Path = DEFAULT_CONFIG_PATH) -> PipelineSettings:
    """Read YAML (if present) plus .env / environment overrides."""
    load_dotenv()

    cfg: dict = {}
    config_path = Path(path)
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}

    values = _flatten(cfg)
    for env_name, field in _ENV_OVERRIDES.items():
        env_value = os.getenv(env_name)
        if env_value:
            values[field] = env_value

    return PipelineSettings(**values)


@lru_cache(maxsize=1)
def get_settings() -> PipelineSettings:
    """Load settings once per process."""
    return load_settings(os.getenv("PIPELINE_CONFIG", DEFAULT_CONFIG_PATH))
