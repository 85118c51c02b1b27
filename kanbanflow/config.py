# kanbanflow: configuration
# Override paths and endpoints via kanbanflow.yaml or KANBANFLOW_* environment variables.

import logging
import os
import sys
import yaml
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Optional

CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "kanbanflow.yaml"

LOG_FORMAT = "%(asctime)s [kanbanflow] %(levelname)s: %(message)s"

# env var → field
_ENV_OVERRIDES = {
    "KANBANFLOW_DB": "db_path",
    "KANBANFLOW_AUDIT_LOG": "audit_log",
    "KANBANFLOW_NOTIFICATION_URL": "notification_url",
    "KANBANFLOW_LOG_LEVEL": "log_level",
}


class ConfigError(Exception):
    """Config file exists but cannot be read or parsed."""


@dataclass
class Config:
    """Runtime configuration for the workflow engine."""

    # Storage
    db_path: str = "~/.local/share/kanbanflow/workflow.db"
    audit_log: str = "~/.local/share/kanbanflow/audit.jsonl"

    # Notification service (None = JSONL fallback only)
    notification_url: Optional[str] = None
    notification_timeout: float = 2.0
    notification_fallback_path: str = "~/.local/share/kanbanflow/notifications.jsonl"
    notification_channels: List[str] = field(default_factory=list)

    # Telegram (disabled when no chat ids)
    telegram_token_env: str = "KANBANFLOW_TELEGRAM_TOKEN"
    telegram_chat_ids: List[int] = field(default_factory=list)

    log_level: str = "INFO"

    def resolve_paths(self):
        """Expand ~ in every path field."""
        self.db_path = str(Path(self.db_path).expanduser())
        self.audit_log = str(Path(self.audit_log).expanduser())
        self.notification_fallback_path = str(Path(self.notification_fallback_path).expanduser())

    def apply_env(self, environ=None):
        """Environment variables win over the file."""
        environ = os.environ if environ is None else environ
        for var, name in _ENV_OVERRIDES.items():
            value = environ.get(var)
            if value:
                setattr(self, name, value)

    @classmethod
    def load(cls, path: Optional[str] = None, environ=None) -> "Config":
        """Load config from YAML file, falling back to defaults."""
        cfg_path = Path(path) if path else CONFIG_PATH
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"Cannot read config {cfg_path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Config {cfg_path} must be a mapping, got {type(data).__name__}")
            cfg = cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})
        else:
            cfg = cls()
        cfg.apply_env(environ)
        cfg.resolve_paths()
        return cfg


def setup_logging(level: str = "INFO"):
    """Configure root logging the same way for the library, scripts and tests."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
