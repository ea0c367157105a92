"""
Application configuration: YAML on disk, environment on top.

    ~/.taskroulette/config.yaml

    sync:
      backend: firestore
      project_id: my-project
      push_debounce_seconds: 5
      pull_interval_seconds: 300

FIREBASE_PROJECT_ID and FIREBASE_API_KEY override whatever the file
says, so secrets can stay out of the home directory.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from . import TASKROULETTE_HOME

logger = logging.getLogger("taskroulette.config")

CONFIG_FILE = "config.yaml"
DB_FILE = "taskroulette.db"


class RemoteBackendType(str, Enum):
    """Supported remote document stores."""

    FIRESTORE = "firestore"
    LOCAL = "local"
    NONE = "none"


class SyncConfig(BaseModel):
    """Remote store selection and sync scheduling knobs."""

    backend: RemoteBackendType = RemoteBackendType.FIRESTORE
    project_id: Optional[str] = None
    api_key: Optional[str] = None
    local_path: Optional[Path] = None
    local_uid: str = "local"

    push_debounce_seconds: float = 5.0
    pull_interval_seconds: float = 300.0
    token_refresh_margin_seconds: float = 60.0
    request_timeout_seconds: float = 30.0
    batch_size: int = Field(default=500, ge=1, le=500)
    page_size: int = Field(default=300, ge=1)

    @property
    def is_configured(self) -> bool:
        """True if the selected backend has what it needs to talk to a remote."""
        if self.backend == RemoteBackendType.FIRESTORE:
            return bool(self.project_id)
        if self.backend == RemoteBackendType.LOCAL:
            return self.local_path is not None
        return False


class AppConfig(BaseModel):
    """Top-level configuration."""

    home: Path = Path(TASKROULETTE_HOME)
    sync: SyncConfig = Field(default_factory=SyncConfig)

    @property
    def db_path(self) -> Path:
        return self.home / DB_FILE


def resolve_home(home: Optional[Path] = None) -> Path:
    """Expand the given home, or the TASKROULETTE_HOME default."""
    return Path(home or TASKROULETTE_HOME).expanduser()


def load_config(home: Optional[Path] = None) -> AppConfig:
    """Load configuration from <home>/config.yaml plus environment.

    A missing or unreadable file yields the defaults.

    Args:
        home: TaskRoulette home directory.

    Returns:
        AppConfig with env overrides applied.
    """
    home_path = resolve_home(home)
    config_file = home_path / CONFIG_FILE
    data: dict = {}
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            logger.warning("Failed to parse %s: %s", config_file, exc)
            data = {}
        if not isinstance(data, dict):
            logger.warning("Ignoring %s: top level is not a mapping", config_file)
            data = {}

    try:
        sync = SyncConfig(**(data.get("sync") or {}))
    except (TypeError, ValueError) as exc:
        logger.warning("Invalid sync config, using defaults: %s", exc)
        sync = SyncConfig()

    project_id = os.environ.get("FIREBASE_PROJECT_ID")
    if project_id:
        sync.project_id = project_id
    api_key = os.environ.get("FIREBASE_API_KEY")
    if api_key:
        sync.api_key = api_key
    if sync.local_path is not None:
        sync.local_path = sync.local_path.expanduser()

    return AppConfig(home=home_path, sync=sync)


def save_config(config: AppConfig) -> Path:
    """Persist the sync section to <home>/config.yaml.

    The API key is never written back; it belongs in the environment.

    Returns:
        Path to the written file.
    """
    config.home.mkdir(parents=True, exist_ok=True)
    config_file = config.home / CONFIG_FILE
    data = {"sync": config.sync.model_dump(mode="json", exclude={"api_key"})}
    config_file.write_text(
        yaml.dump(data, default_flow_style=False), encoding="utf-8"
    )
    return config_file
