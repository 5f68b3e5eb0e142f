"""Tests for accounts and password hashing."""
import json

import pytest

from notevault.exceptions import (
    AccountError,
    ErrorCode,
    StorageError,
    UserNotFoundError,
    ValidationError,
)
from notevault.models.schema import Account
from notevault.security import BcryptHasher, hash_password, verify_password


class TestBcrypt:
    """The real hasher; kept few because bcrypt is slow by design."""

    def test_hash_and_verify(self):
        hashed = hash_password("secret1")
        assert hashed.startswith("$2")
        assert verify_password("secret1", hashed)
        assert not verify_password("secret2", hashed)

    def test_garbage_hash_never_matches(self):
        assert verify_password("secret1", "not-a-bcrypt-hash") is False
        assert BcryptHasher().verify("", "whatever") is False


class TestAccountRepository:
    def test_add_is_exclusive(self, account_repository):
        assert account_repository.add(Account(username="alice", password="h"))
        assert not account_repository.add(Account(username="alice", password="other"))
        assert account_repository.get("alice").password == "h"

    def test_hash_stored_verbatim(self, account_repository, test_config):
        account_repository.add(Account(username="alice", password="$2b$12$opaque"))
        stored = json.loads(test_config.get_accounts_file().read_text())
        assert stored["alice"]["password"] == "$2b$12$opaque"

    def test_merge_never_overwrites(self, account_repository):
        account_repository.add(Account(username="alice", password="local"))
        added = account_repository.merge(
            {
                "alice": {"password": "remote"},
                "bob": {"password": "b", "isAdmin": True},
                "../evil": {"password": "x"},
            }
        )
        assert added == ["bob"]
        assert account_repository.get("alice").password == "local"
        assert account_repository.get("bob").is_admin is True

    def test_malformed_file(self, account_repository, test_config):
        test_config.get_accounts_file().write_text("{nope")
        assert account_repository.list_all() == []
        with pytest.raises(StorageError):
            account_repository.add(Account(username="alice", password="h"))


class TestAccountService:
    """Tests for the AccountService class."""

    def test_create_account(self, account_service, fake_hasher, user_store):
        account = account_service.create_account("alice", "secret1")
        assert account.password == fake_hasher.hash("secret1")
        assert account.is_admin is False
        assert user_store.index_path("alice").exists()

    @pytest.mark.parametrize(
        "username,password",
        [("al", "secret1"), ("alice", "short"), ("../alice", "secret1"), ("_system", "secret1")],
    )
    def test_create_validates(self, account_service, username, password):
        with pytest.raises(ValidationError):
            account_service.create_account(username, password)

    def test_duplicate_refused(self, account_service):
        account_service.create_account("alice", "secret1")
        with pytest.raises(AccountError) as exc_info:
            account_service.create_account("alice", "secret2")
        assert exc_info.value.code == ErrorCode.ACCOUNT_EXISTS

    def test_authenticate(self, account_service):
        account_service.create_account("alice", "secret1")
        assert account_service.authenticate("alice", "secret1").username == "alice"
        for username, password in [("alice", "wrong1"), ("nobody", "secret1")]:
            with pytest.raises(AccountError) as exc_info:
                account_service.authenticate(username, password)
            assert exc_info.value.code == ErrorCode.AUTHENTICATION_FAILED

    def test_change_password(self, account_service):
        account_service.create_account("alice", "secret1")
        with pytest.raises(AccountError):
            account_service.change_password("alice", "wrong1", "newpass1")
        account_service.change_password("alice", "secret1", "newpass1")
        account_service.authenticate("alice", "newpass1")

    def test_list_hides_hashes(self, account_service):
        account_service.create_account("alice", "secret1")
        (view,) = account_service.list_accounts()
        assert view["username"] == "alice"
        assert "password" not in view

    def test_last_admin_keeps_rights(self, account_service):
        account_service.create_account("root1", "secret1", is_admin=True)
        with pytest.raises(AccountError):
            account_service.update_account("root1", is_admin=False)
        account_service.create_account("root2", "secret1", is_admin=True)
        assert account_service.update_account("root1", is_admin=False).is_admin is False

    def test_delete_keeps_notes(self, account_service, user_store, note_service):
        account_service.create_account("alice", "secret1")
        note_id = note_service.create_note("alice", title="Mine")
        account_service.delete_account("alice")
        with pytest.raises(UserNotFoundError):
            account_service.get("alice")
        assert note_service.get_note("alice", note_id).title == "Mine"

    def test_admin_cannot_be_deleted(self, account_service):
        account_service.create_account("root1", "secret1", is_admin=True)
        with pytest.raises(AccountError):
            account_service.delete_account("root1")

    def test_default_admin_only_on_first_start(self, account_service):
        admin = account_service.ensure_default_admin(password="bootstrap1")
        assert admin.username == "admin"
        assert admin.is_admin is True
        assert account_service.ensure_default_admin() is None
