"""Configuration module for Notevault."""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notevault import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: survives reinstalls, lives alongside the data
_USER_ENV = Path.home() / ".notevault" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

# Name of the reserved directory holding installation-wide documents
SYSTEM_DIR_NAME = "_system"


class NotevaultConfig(BaseModel):
    """Configuration for the note store."""

    # Base directory for the installation
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEVAULT_BASE_DIR", "."))
    )
    # Per-user stores and the system registry live here
    data_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEVAULT_DATA_DIR", "data"))
    )
    # One JSON document per share token
    shared_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEVAULT_SHARED_DIR", "shared"))
    )
    # Account records (username -> credential hash, admin flag)
    accounts_file: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTEVAULT_ACCOUNTS_FILE", "users.json")
        )
    )
    # Backup snapshots
    backup_dir: Path = Field(
        default_factory=lambda: Path(
            os.getenv(
                "NOTEVAULT_BACKUP_DIR", str(Path.home() / ".notevault" / "backups")
            )
        )
    )
    max_backups: int = Field(
        default_factory=lambda: int(os.getenv("NOTEVAULT_MAX_BACKUPS", "10"))
    )
    max_backup_age_days: int = Field(
        default_factory=lambda: int(os.getenv("NOTEVAULT_MAX_BACKUP_AGE_DAYS", "30"))
    )
    # Used to build share URLs handed out to clients
    public_url_base: str = Field(
        default_factory=lambda: os.getenv(
            "NOTEVAULT_PUBLIC_URL_BASE", "http://localhost:2452"
        )
    )
    # Preview length for list summaries and search results
    summary_length: int = Field(
        default_factory=lambda: int(os.getenv("NOTEVAULT_SUMMARY_LENGTH", "100"))
    )
    # Upload limit for a single media blob
    media_max_bytes: int = Field(
        default_factory=lambda: int(
            os.getenv("NOTEVAULT_MEDIA_MAX_BYTES", str(10 * 1024 * 1024))
        )
    )
    # Password of the admin account created on first start
    default_admin_password: str = Field(
        default_factory=lambda: os.getenv("NOTEVAULT_ADMIN_PASSWORD", "admin123")
    )
    # User the MCP server acts on behalf of
    default_user: str = Field(
        default_factory=lambda: os.getenv("NOTEVAULT_USER", "admin")
    )
    # Server configuration
    server_name: str = Field(default=os.getenv("NOTEVAULT_SERVER_NAME", "notevault"))
    server_version: str = Field(default=__version__)
    log_level: str = Field(
        default_factory=lambda: os.getenv("NOTEVAULT_LOG_LEVEL", "INFO")
    )

    @model_validator(mode="after")
    def _validate_limits(self) -> "NotevaultConfig":
        """Reject limits that would make listing or uploads meaningless."""
        if self.summary_length < 1:
            raise ValueError("summary_length must be >= 1")
        if self.media_max_bytes < 1:
            raise ValueError("media_max_bytes must be >= 1")
        if self.max_backups < 1:
            raise ValueError("max_backups must be >= 1")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_data_dir(self) -> Path:
        """Absolute path of the data directory."""
        return self.get_absolute_path(self.data_dir)

    def get_system_dir(self) -> Path:
        """Absolute path of the reserved system directory inside data_dir."""
        return self.get_data_dir() / SYSTEM_DIR_NAME

    def get_shared_dir(self) -> Path:
        """Absolute path of the share-token directory."""
        return self.get_absolute_path(self.shared_dir)

    def get_accounts_file(self) -> Path:
        """Absolute path of the accounts document."""
        return self.get_absolute_path(self.accounts_file)

    def get_backup_dir(self) -> Path:
        """Absolute path of the backup directory."""
        return self.get_absolute_path(self.backup_dir)


# Create a global config instance
config = NotevaultConfig()
