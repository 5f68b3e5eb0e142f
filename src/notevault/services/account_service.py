"""Service layer for login accounts."""

import logging
from typing import Any, Dict, List, Optional

from notevault.config import SYSTEM_DIR_NAME, config
from notevault.exceptions import (
    AccountError,
    ErrorCode,
    UserNotFoundError,
    ValidationError,
)
from notevault.models.schema import Account, validate_safe_path_component
from notevault.security import BcryptHasher, PasswordHasher
from notevault.storage.account_repository import AccountRepository
from notevault.storage.user_store import UserStore

logger = logging.getLogger(__name__)

MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 6
DEFAULT_ADMIN_USERNAME = "admin"


class AccountService:
    """Account management. Deleting an account never deletes its notes."""

    def __init__(
        self,
        accounts: Optional[AccountRepository] = None,
        store: Optional[UserStore] = None,
        hasher: Optional[PasswordHasher] = None,
    ):
        self.accounts = accounts or AccountRepository()
        self.store = store or UserStore()
        self.hasher = hasher or BcryptHasher()

    @staticmethod
    def _validate_username(username: str) -> str:
        username = (username or "").strip()
        if len(username) < MIN_USERNAME_LENGTH:
            raise ValidationError(
                f"Username must be at least {MIN_USERNAME_LENGTH} characters",
                field="username",
                value=username,
            )
        if username == SYSTEM_DIR_NAME:
            raise ValidationError("Username is reserved", field="username", value=username)
        try:
            return validate_safe_path_component(username, "Username")
        except ValueError as e:
            raise ValidationError(str(e), field="username", value=username) from e

    @staticmethod
    def _validate_password(password: str) -> str:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
                field="password",
            )
        return password

    def _require(self, username: str) -> Account:
        account = self.accounts.get(username)
        if account is None:
            raise UserNotFoundError(username)
        return account

    def create_account(
        self, username: str, password: str, is_admin: bool = False
    ) -> Account:
        """Create an account and its (empty) note store.

        Raises:
            ValidationError: Username or password too short, or unsafe username.
            AccountError: The username is taken.
        """
        username = self._validate_username(username)
        self._validate_password(password)
        account = Account(
            username=username,
            password=self.hasher.hash(password),
            is_admin=is_admin,
        )
        if not self.accounts.add(account):
            raise AccountError(
                "Username already exists", username=username, code=ErrorCode.ACCOUNT_EXISTS
            )
        self.store.ensure(username)
        logger.info(f"Created account {username} (admin={is_admin})")
        return account

    def get(self, username: str) -> Account:
        return self._require(username)

    def list_accounts(self) -> List[Dict[str, Any]]:
        """Every account without its credential hash."""
        return [account.public_view() for account in self.accounts.list_all()]

    def authenticate(self, username: str, password: str) -> Account:
        """Return the account if ``password`` matches.

        Raises:
            AccountError: Unknown user or wrong password (indistinguishable).
        """
        account = self.accounts.get(username or "")
        if account is None or not self.hasher.verify(password or "", account.password):
            logger.info(f"Failed login for {username!r}")
            raise AccountError(
                "Invalid username or password",
                code=ErrorCode.AUTHENTICATION_FAILED,
            )
        self.store.ensure(account.username)
        return account

    def change_password(
        self, username: str, current_password: str, new_password: str
    ) -> None:
        account = self._require(username)
        if not self.hasher.verify(current_password or "", account.password):
            raise AccountError(
                "Current password is incorrect",
                username=username,
                code=ErrorCode.AUTHENTICATION_FAILED,
            )
        self._validate_password(new_password)
        self.accounts.put(
            account.model_copy(update={"password": self.hasher.hash(new_password)})
        )
        logger.info(f"Password changed for {username}")

    def update_account(
        self,
        username: str,
        password: Optional[str] = None,
        is_admin: Optional[bool] = None,
    ) -> Account:
        """Administrative update of password and/or admin flag.

        Raises:
            AccountError: Removing admin rights from the last administrator.
        """
        account = self._require(username)
        updates: Dict[str, Any] = {}
        if password:
            self._validate_password(password)
            updates["password"] = self.hasher.hash(password)
        if is_admin is not None and is_admin != account.is_admin:
            if not is_admin:
                admins = [a for a in self.accounts.list_all() if a.is_admin]
                if len(admins) <= 1:
                    raise AccountError(
                        "Cannot remove admin rights from the last administrator",
                        username=username,
                    )
            updates["is_admin"] = is_admin
        if not updates:
            return account
        updated = account.model_copy(update=updates)
        self.accounts.put(updated)
        logger.info(f"Updated account {username}: {', '.join(sorted(updates))}")
        return updated

    def delete_account(self, username: str) -> None:
        """Remove an account record. The user's notes stay on disk.

        Raises:
            AccountError: The account is an administrator.
        """
        account = self._require(username)
        if account.is_admin:
            raise AccountError("Cannot delete admin users", username=username)
        self.accounts.remove(username)
        logger.info(f"Deleted account {username}; note data retained")

    def ensure_default_admin(self, password: Optional[str] = None) -> Optional[Account]:
        """Create the ``admin`` account on first start.

        Returns:
            The new account, or None if any account already exists.
        """
        if self.accounts.list_all():
            return None
        account = self.create_account(
            DEFAULT_ADMIN_USERNAME,
            password or config.default_admin_password,
            is_admin=True,
        )
        logger.warning(
            f"Created default account '{DEFAULT_ADMIN_USERNAME}'; change its password"
        )
        return account
