"""Common test fixtures for Notevault."""

import tempfile
from pathlib import Path

import pytest

from notevault.backup import BackupCodec, BackupManager
from notevault.config import config
from notevault.services.account_service import AccountService
from notevault.services.note_service import NoteService
from notevault.services.search_service import SearchService
from notevault.storage.account_repository import AccountRepository
from notevault.storage.share_registry import ShareRegistry
from notevault.storage.user_store import UserStore
from tests.fakes import FakePasswordHasher


@pytest.fixture
def temp_base_dir():
    """Create a temporary installation directory."""
    with tempfile.TemporaryDirectory() as base_dir:
        yield Path(base_dir)


@pytest.fixture
def test_config(temp_base_dir, monkeypatch):
    """Point the global config at a temp installation (auto-restored)."""
    monkeypatch.setattr(config, "base_dir", temp_base_dir)
    monkeypatch.setattr(config, "data_dir", Path("data"))
    monkeypatch.setattr(config, "shared_dir", Path("shared"))
    monkeypatch.setattr(config, "accounts_file", Path("users.json"))
    monkeypatch.setattr(config, "backup_dir", temp_base_dir / "backups")
    monkeypatch.setattr(config, "public_url_base", "http://notes.test")
    yield config


@pytest.fixture
def user_store(test_config):
    """Create a UserStore on the temp data directory."""
    return UserStore()


@pytest.fixture
def share_registry(test_config):
    return ShareRegistry()


@pytest.fixture
def account_repository(test_config):
    return AccountRepository()


@pytest.fixture
def fake_hasher():
    return FakePasswordHasher()


@pytest.fixture
def note_service(user_store, share_registry, fake_hasher):
    """Create a NoteService with a fast fake hasher."""
    return NoteService(store=user_store, shares=share_registry, hasher=fake_hasher)


@pytest.fixture
def search_service(user_store):
    return SearchService(store=user_store)


@pytest.fixture
def account_service(account_repository, user_store, fake_hasher):
    return AccountService(
        accounts=account_repository, store=user_store, hasher=fake_hasher
    )


@pytest.fixture
def backup_codec(user_store, account_repository, share_registry):
    return BackupCodec(
        store=user_store, accounts=account_repository, shares=share_registry
    )


@pytest.fixture
def backup_manager(backup_codec, test_config):
    return BackupManager(codec=backup_codec, max_backups=3, max_age_days=30)
