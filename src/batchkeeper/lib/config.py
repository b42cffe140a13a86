"""JSON configuration loading.

Example config.json:

    {
      "database": "sqlite:///batchkeeper.db",
      "database_schema_hash": "a1b2c3",
      "maintenance_retry_interval": 10,
      "task_max_attempts": 3,
      "lock_expiration": {"maintenance": 3600, "batch": 600, "task": 600, "document": 60},
      "import_sources": [
        {"name": "Production", "hostName": "docs.example.com", "apiKey": "secret", "allowUnsecure": false}
      ]
    }
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_DATABASE = "sqlite:///batchkeeper.db"
DEFAULT_LOCK_EXPIRATION = {"maintenance": 3600, "batch": 600, "task": 600, "document": 60}


@dataclass
class ImportSource:
    name: str
    host_name: str
    api_key: str = ""
    allow_unsecure: bool = False

    @property
    def base_url(self) -> str:
        scheme = "http" if self.allow_unsecure else "https"
        return f"{scheme}://{self.host_name}"

    def to_batch_params(self) -> dict:
        """Source description stored on a batch. Never includes the API key."""
        return {"name": self.name, "hostName": self.host_name, "allowUnsecure": self.allow_unsecure}


@dataclass
class Settings:
    database: str = DEFAULT_DATABASE
    database_schema_hash: str = ""
    maintenance_retry_interval: float = 10
    task_max_attempts: Optional[int] = 3
    lock_expiration: dict = field(default_factory=lambda: dict(DEFAULT_LOCK_EXPIRATION))
    import_sources: list = field(default_factory=list)

    def get_import_source(self, name_or_host: str) -> Optional[ImportSource]:
        for source in self.import_sources:
            if name_or_host in (source.name, source.host_name):
                return source
        return None


def load_config(path: Optional[str]) -> dict[str, Any]:
    """Read a JSON config file. A missing path yields an empty config."""
    if not path:
        return {}
    p = Path(path)
    if not p.exists():
        logger.debug("Config file %s does not exist", p)
        return {}

    logger.info("Loading config from %s", p)
    with p.open("r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError(f"Config file {p} must contain a JSON object")
    return data


def _to_number(value, default, cast):
    if value is None:
        return default
    try:
        number = cast(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid config value %r", value)
        return default
    return number if number >= 0 else default


def _parse_import_source(raw) -> Optional[ImportSource]:
    if not isinstance(raw, dict):
        return None
    host_name = raw.get("hostName") or raw.get("host_name")
    if not host_name:
        logger.warning("Ignoring import source without hostName: %r", raw.get("name"))
        return None
    return ImportSource(
        name=str(raw.get("name") or host_name),
        host_name=str(host_name),
        api_key=str(raw.get("apiKey") or raw.get("api_key") or ""),
        allow_unsecure=bool(raw.get("allowUnsecure", raw.get("allow_unsecure", False))),
    )


def normalize_config(cfg: dict) -> Settings:
    settings = Settings()
    settings.database = os.environ.get("BATCHKEEPER_DB") or cfg.get("database") or DEFAULT_DATABASE
    settings.database_schema_hash = str(cfg.get("database_schema_hash") or "")
    settings.maintenance_retry_interval = _to_number(cfg.get("maintenance_retry_interval"), 10, float)
    if "task_max_attempts" in cfg and cfg["task_max_attempts"] is None:
        # null retries failing tasks forever
        settings.task_max_attempts = None
    else:
        settings.task_max_attempts = max(1, _to_number(cfg.get("task_max_attempts"), 3, int))

    expirations = cfg.get("lock_expiration")
    if isinstance(expirations, dict):
        for family, default in DEFAULT_LOCK_EXPIRATION.items():
            value = expirations.get(family, default)
            # null means the lock never expires
            settings.lock_expiration[family] = None if value is None else _to_number(value, default, int)

    sources = cfg.get("import_sources")
    if isinstance(sources, list):
        settings.import_sources = [s for s in (_parse_import_source(raw) for raw in sources) if s is not None]
    return settings


def find_config_path(explicit: Optional[str] = None) -> Optional[str]:
    """CLI override > config.json in the working directory."""
    if explicit:
        return explicit
    candidate = Path.cwd() / "config.json"
    return str(candidate) if candidate.exists() else None
