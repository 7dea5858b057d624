import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

from trending.constants import (
    SCHEDULED_EMBEDDING_BATCH,
    STALE_CLAIM_TIMEOUT_SECONDS,
    TRIGGER_NEW_ARTICLE_WINDOW_HOURS,
)
from trending.models import ClusterSettings

CONFIG_DIR = Path.home() / ".config" / "trending"
CONFIG_FILE = CONFIG_DIR / "config.json"


def config_path() -> Path:
    override = os.environ.get("TRENDING_CONFIG")
    return Path(override) if override else CONFIG_FILE


def load_config() -> dict:
    path = config_path()
    if not path.exists():
        return {}
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def save_config(key: str, value: Any):
    path = config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    config = load_config()
    config[key] = value
    with open(path, "w") as f:
        json.dump(config, f, indent=2)


@dataclass
class PipelineSettings:
    embedding_batch_size: int = SCHEDULED_EMBEDDING_BATCH
    stale_claim_timeout_seconds: float = STALE_CLAIM_TIMEOUT_SECONDS
    trigger_window_hours: float = TRIGGER_NEW_ARTICLE_WINDOW_HOURS
    database_url: Optional[str] = None
    ai_jobs_secret: Optional[str] = None
    log_level: str = "INFO"
    cluster: ClusterSettings = field(default_factory=ClusterSettings)


def _known(cls: type, raw: object) -> dict[str, Any]:
    if not isinstance(raw, dict):
        return {}
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in raw.items() if k in names and v is not None}


def load_settings(config: Optional[dict] = None) -> PipelineSettings:
    """Defaults, overridden by the JSON config, overridden by the environment."""
    config = load_config() if config is None else config
    values = _known(PipelineSettings, config)
    values.pop("cluster", None)
    settings = PipelineSettings(
        **values, cluster=ClusterSettings(**_known(ClusterSettings, config.get("cluster")))
    )

    if os.environ.get("DATABASE_URL"):
        settings.database_url = os.environ["DATABASE_URL"]
    if os.environ.get("AI_JOBS_SECRET"):
        settings.ai_jobs_secret = os.environ["AI_JOBS_SECRET"]
    if os.environ.get("LOG_LEVEL"):
        settings.log_level = os.environ["LOG_LEVEL"].upper()
    return settings
