"""Storage layer for Notevault."""

from notevault.storage.account_repository import AccountRepository
from notevault.storage.legacy_reader import LegacyFormatReader
from notevault.storage.share_registry import ShareRegistry
from notevault.storage.system_registry import SystemRegistry
from notevault.storage.user_store import UserStore

__all__ = [
    "AccountRepository",
    "LegacyFormatReader",
    "ShareRegistry",
    "SystemRegistry",
    "UserStore",
]
