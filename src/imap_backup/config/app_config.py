"""
Application configuration management for IMAP Backup.
"""

import os
import toml
from pathlib import Path
from typing import List, Literal, Optional
from pydantic import BaseModel, Field

from ..utils.logging_setup import get_logger

logger = get_logger(__name__)

CONFIG_DIR_ENV = "IMAP_BACKUP_CONFIG_DIR"


class BackupConfig(BaseModel):
    """Backup destination and naming settings."""

    backup_directory: str = Field(
        default=str(Path.home() / "Documents" / "IMAP Backups"),
        description="Root directory receiving one sub-directory per account"
    )
    timestamp_timezone: Literal["utc", "local"] = Field(
        default="utc",
        description="Timezone used for the timestamp part of saved file names"
    )
    skip_folders: List[str] = Field(default_factory=list, description="Folders never backed up")
    attention_days: int = Field(default=7, description="Days after which an account needs attention")


class ConnectionConfig(BaseModel):
    """IMAP transport settings."""

    timeout: int = Field(default=30, description="Timeout in seconds for server operations")
    default_port: int = Field(default=993, description="Port used when adding an account")
    use_ssl: bool = Field(default=True, description="Use implicit TLS for new accounts")


class LoggingConfig(BaseModel):
    """Logging settings."""

    level: str = Field(default="INFO", description="Log level")
    file: Optional[str] = Field(default=None, description="Log file path, default under the data dir")
    console: bool = Field(default=True, description="Also log to the console")


class AppConfig:
    """
    Main application configuration class.

    Manages loading, saving, and accessing configuration settings from TOML files.
    """

    def __init__(self, config_dir: Optional[Path] = None):
        """
        Initialize application configuration.

        Args:
            config_dir: Custom configuration directory. If None, uses default.
        """
        self.config_dir = config_dir or self._get_default_config_dir()
        self.config_file = self.config_dir / "imap_backup.toml"

        # Configuration sections
        self.backup = BackupConfig()
        self.connection = ConnectionConfig()
        self.logging = LoggingConfig()

        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.load()

    def _get_default_config_dir(self) -> Path:
        """
        Get the default configuration directory.

        Returns:
            Path: Default configuration directory.
        """
        override = os.environ.get(CONFIG_DIR_ENV)
        if override:
            return Path(override)

        if os.name == "posix":
            xdg_config = os.environ.get("XDG_CONFIG_HOME")
            if xdg_config:
                return Path(xdg_config) / "imap-backup"
            return Path.home() / ".config" / "imap-backup"
        return Path.home() / ".imap-backup"

    def load(self) -> None:
        """
        Load configuration from TOML file.

        Creates default configuration if file doesn't exist.
        """
        if not self.config_file.exists():
            self.save()
            return

        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                config_data = toml.load(f)

            if "backup" in config_data:
                self.backup = BackupConfig(**config_data["backup"])
            if "connection" in config_data:
                self.connection = ConnectionConfig(**config_data["connection"])
            if "logging" in config_data:
                self.logging = LoggingConfig(**config_data["logging"])

        except Exception as e:
            logger.warning(f"Failed to load configuration from {self.config_file}: {e}")
            # Keep default configuration

    def save(self) -> None:
        """
        Save current configuration to TOML file.
        """
        config_data = self.to_dict()

        try:
            with open(self.config_file, "w", encoding="utf-8") as f:
                toml.dump(config_data, f)
        except OSError as e:
            logger.warning(f"Failed to save configuration to {self.config_file}: {e}")

    def to_dict(self) -> dict:
        """Return the configuration as TOML-ready section dictionaries."""
        return {
            "backup": self.backup.model_dump(),
            "connection": self.connection.model_dump(),
            "logging": self.logging.model_dump(exclude_none=True),
        }

    @property
    def use_utc_timestamps(self) -> bool:
        return self.backup.timestamp_timezone == "utc"

    def get_backup_dir(self) -> Path:
        """Get the backup root directory with ``~`` expanded."""
        return Path(self.backup.backup_directory).expanduser()

    def set_backup_dir(self, path: Path) -> None:
        """Change the backup root directory and persist the change."""
        self.backup.backup_directory = str(Path(path).expanduser())
        self.save()

    def get_data_dir(self) -> Path:
        """
        Get the data directory holding the account database and logs.

        Returns:
            Path: Data directory path.
        """
        if os.name == "posix":
            xdg_data = os.environ.get("XDG_DATA_HOME")
            if xdg_data:
                data_dir = Path(xdg_data) / "imap-backup"
            else:
                data_dir = Path.home() / ".local" / "share" / "imap-backup"
        else:
            data_dir = Path.home() / ".imap-backup" / "data"

        data_dir.mkdir(parents=True, exist_ok=True)
        return data_dir

    def get_log_file(self) -> Path:
        """Get the log file path from the logging section or the data directory."""
        if self.logging.file:
            return Path(self.logging.file).expanduser()
        return self.get_data_dir() / "logs" / "imap_backup.log"
