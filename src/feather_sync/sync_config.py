"""Configuration for the sync engine.

Settings live in ``sync.yaml`` inside the data directory (``~/.feather_sync``
unless ``FEATHER_SYNC_DATA_DIR`` points elsewhere). Any field can also be
overridden with a ``FEATHER_SYNC_<FIELD>`` environment variable. Secrets are
never part of this file; see :mod:`feather_sync.credential_manager`.
"""

import os
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .sync_models import SyncProvider


logger = logging.getLogger(__name__)

DATA_DIR_ENV = "FEATHER_SYNC_DATA_DIR"

MIN_INTERVAL_MINUTES = 5
MAX_INTERVAL_MINUTES = 720


def get_data_dir() -> Path:
    """Get the data directory holding settings and the offline queue."""
    override = os.getenv(DATA_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".feather_sync"


class SyncSettings(BaseSettings):
    """Persisted sync preferences."""

    model_config = SettingsConfigDict(
        env_prefix="FEATHER_SYNC_",
        extra="ignore",
        validate_assignment=True,
    )

    active_provider: Optional[SyncProvider] = None
    # Non-secret provider fields only (server URL, username, client id)
    provider_config: Dict[str, str] = Field(default_factory=dict)

    background_sync_enabled: bool = False
    background_sync_interval_minutes: int = 15
    selected_note_ids: List[int] = Field(default_factory=list)

    timeout_seconds: float = 30.0
    connectivity_probe_host: str = "google.com"
    status_reset_delay_seconds: float = 3.0

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings,
                                   dotenv_settings, file_secret_settings):
        # Environment wins over values read from sync.yaml
        return env_settings, init_settings

    @field_validator('background_sync_interval_minutes')
    @classmethod
    def validate_interval(cls, v):
        if v < MIN_INTERVAL_MINUTES or v > MAX_INTERVAL_MINUTES:
            raise ValueError(
                f'Background sync interval must be between {MIN_INTERVAL_MINUTES} '
                f'and {MAX_INTERVAL_MINUTES} minutes'
            )
        return v

    @field_validator('timeout_seconds', 'status_reset_delay_seconds')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError('Value must not be negative')
        return v


class SyncConfigManager:
    """Loads and saves :class:`SyncSettings` as YAML."""

    CONFIG_FILE = "sync.yaml"

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize config manager.

        Args:
            config_dir: Optional directory, defaults to the data directory
        """
        self.config_dir = config_dir or get_data_dir()
        self.config_file = self.config_dir / self.CONFIG_FILE
        self.settings = SyncSettings()
        self.logger = logging.getLogger(__name__)

        self.load()

    def load(self) -> SyncSettings:
        """Load settings from file, keeping defaults when absent or invalid."""
        if not self.config_file.exists():
            self.logger.debug("No sync config file found, using defaults")
            return self.settings

        try:
            with open(self.config_file, 'r') as f:
                data = yaml.safe_load(f) or {}
            data.pop('_metadata', None)
            self.settings = SyncSettings(**data)
            self.logger.debug(f"Loaded sync config from {self.config_file}")
        except (OSError, yaml.YAMLError, ValidationError) as e:
            self.logger.error(f"Failed to load sync config: {e}")
        return self.settings

    def save(self):
        """Save settings to file with an atomic rename."""
        data: Dict[str, Any] = self.settings.model_dump(mode='json')
        data['_metadata'] = {
            'version': '1.0',
            'updated_at': datetime.now(timezone.utc).isoformat(),
        }

        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.config_file.with_suffix('.tmp')
        try:
            with open(temp_file, 'w') as f:
                yaml.safe_dump(data, f, default_flow_style=False, indent=2, sort_keys=True)
            temp_file.replace(self.config_file)
            self.logger.debug(f"Saved sync config to {self.config_file}")
        except OSError as e:
            self.logger.error(f"Failed to save sync config: {e}")
            raise

    def update(self, **changes) -> SyncSettings:
        """Apply validated changes and persist them.

        Raises:
            pydantic.ValidationError: If a value is out of range
        """
        merged = self.settings.model_dump()
        merged.update(changes)
        self.settings = SyncSettings(**merged)
        self.save()
        return self.settings

    def reset_provider(self):
        """Forget the active provider and its non-secret configuration."""
        self.update(active_provider=None, provider_config={}, selected_note_ids=[])
