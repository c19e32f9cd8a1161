"""User settings persisted in the database settings table.

The engine never reads the settings table directly. Settings are accessed
through the two-method SettingsAccess protocol, which the storage layer
implements with DatabaseSettings.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import structlog

from netledger.config import StorageConfig
from netledger.retention import validate_retention
from netledger.storage import get_setting, open_database, set_setting

log = structlog.get_logger()

DATA_RETENTION_KEY = "dataRetention"


class SettingsAccess(Protocol):
    """Narrow key/value access to persisted settings."""

    def get_setting(self, key: str) -> str | None: ...

    def set_setting(self, key: str, value: str) -> None: ...


class DatabaseSettings:
    """SettingsAccess backed by the settings table.

    Opens a short-lived connection per call so it is safe from any thread.
    """

    def __init__(self, db_path: Path, storage: StorageConfig | None = None) -> None:
        self.db_path = db_path
        self.storage = storage

    def get_setting(self, key: str) -> str | None:
        with open_database(self.db_path, self.storage) as conn:
            return get_setting(conn, key)

    def set_setting(self, key: str, value: str) -> None:
        with open_database(self.db_path, self.storage) as conn:
            set_setting(conn, key, value)


@dataclass
class UserSettings:
    """Settings the user changes at runtime."""

    data_retention: int = 30

    @classmethod
    def load(cls, access: SettingsAccess, default_retention: int = 30) -> "UserSettings":
        """Load settings, falling back to defaults for missing or invalid values."""
        settings = cls(data_retention=default_retention)

        raw = access.get_setting(DATA_RETENTION_KEY)
        if raw:
            try:
                settings.data_retention = validate_retention(int(raw))
            except ValueError:
                log.warning("invalid_setting", key=DATA_RETENTION_KEY, value=raw)

        return settings

    def save(self, access: SettingsAccess) -> None:
        """Persist settings through the access protocol."""
        validate_retention(self.data_retention)
        access.set_setting(DATA_RETENTION_KEY, str(self.data_retention))
