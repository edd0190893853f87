"""
Queue configuration.

Loads conf/queue.yml (optional) and applies environment overrides:
- QUEUE_STORAGE_PATH         where the job list is persisted
- QUEUE_START_PAUSED         1/true to start paused
- QUEUE_PAUSED_INTERVAL_S    poll interval while paused
- QUEUE_DISCONNECTED_INTERVAL_S  poll interval while no service is connected
- QUEUE_IDLE_INTERVAL_S      poll interval while nothing is pending
- QUEUE_DEDUPE_INTERVAL_S    wait after skipping an already-processed job
- QUEUE_LOG_LEVEL            logging level name
"""

import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "conf/queue.yml"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _bool_env(value: str) -> bool:
    return value.lower() in ("1", "true", "yes", "on")


@dataclass
class QueueSettings:
    storage_path: str = "data/queue.json"
    start_paused: bool = False
    paused_interval_s: float = 0.5
    disconnected_interval_s: float = 1.0
    idle_interval_s: float = 0.5
    dedupe_interval_s: float = 0.1
    log_level: str = "INFO"

    def validate(self) -> None:
        for name in (
            "paused_interval_s",
            "disconnected_interval_s",
            "idle_interval_s",
            "dedupe_interval_s",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if not self.storage_path:
            raise ValueError("storage_path must not be empty")
        if self.log_level.upper() not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {_LOG_LEVELS}, got {self.log_level!r}")

    def processor_kwargs(self) -> Dict[str, float]:
        return {
            "paused_interval_s": self.paused_interval_s,
            "disconnected_interval_s": self.disconnected_interval_s,
            "idle_interval_s": self.idle_interval_s,
            "dedupe_interval_s": self.dedupe_interval_s,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _coerce(name: str, raw: Any, default: Any) -> Any:
    try:
        if isinstance(default, bool):
            return _bool_env(raw) if isinstance(raw, str) else bool(raw)
        if isinstance(default, float):
            return float(raw)
        return str(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid value for {name}: {raw!r}")


def load_queue_settings(
    config_path: Optional[str] = None,
    environ: Optional[Dict[str, str]] = None,
) -> QueueSettings:
    """Build settings from defaults, then the YAML file, then the environment."""
    environ = os.environ if environ is None else environ
    path = Path(config_path or environ.get("QUEUE_CONFIG", DEFAULT_CONFIG_PATH))

    defaults = QueueSettings()
    values: Dict[str, Any] = defaults.to_dict()

    if path.exists():
        logger.info(f"[QueueConfig] Loading configuration from {path}")
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path} must contain a mapping")
        section = data.get("queue", data)
        if not isinstance(section, dict):
            raise ValueError(f"{path}: 'queue' must be a mapping")
        known = {f.name for f in fields(QueueSettings)}
        for key, raw in section.items():
            if key not in known:
                logger.warning(f"[QueueConfig] Ignoring unknown key '{key}'")
                continue
            values[key] = _coerce(key, raw, getattr(defaults, key))

    for f in fields(QueueSettings):
        env_name = f"QUEUE_{f.name.upper()}"
        if env_name in environ:
            values[f.name] = _coerce(env_name, environ[env_name], getattr(defaults, f.name))

    settings = QueueSettings(**values)
    settings.log_level = settings.log_level.upper()
    settings.validate()
    return settings


_settings: Optional[QueueSettings] = None


def get_queue_settings() -> QueueSettings:
    """Get global queue settings (loaded on first use)."""
    global _settings
    if _settings is None:
        _settings = load_queue_settings()
    return _settings


def reload_queue_settings() -> QueueSettings:
    global _settings
    _settings = load_queue_settings()
    return _settings
