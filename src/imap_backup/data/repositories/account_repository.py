"""
Account repository for IMAP Backup.

Handles database operations for backup accounts with secure credential
management integration.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...utils.logging_setup import get_logger
from ...core.mail.credential_manager import CredentialManager, CredentialStorageError
from ..models.accounts import Account, AuthType

logger = get_logger(__name__)

# Fields callers may change through update_account
UPDATABLE_FIELDS = {"name", "host", "port", "username", "use_ssl", "auth_type", "is_enabled"}


class AccountRepository:
    """
    Repository for account operations.

    Provides CRUD operations for accounts with secure credential handling
    and persistence of backup results.
    """

    def __init__(self, session: Session, credential_manager: CredentialManager):
        """
        Initialize the account repository.

        Args:
            session: SQLAlchemy session instance
            credential_manager: Keyring-backed secret store
        """
        self.session = session
        self.credential_manager = credential_manager
        self.logger = logger

    def create_account(self, account_data: Dict[str, Any]) -> Optional[Account]:
        """
        Create a new account, storing its password in the keyring if given.

        Args:
            account_data: Dictionary containing account information

        Returns:
            Account: Created account instance, or None if creation failed
        """
        try:
            for field in ("name", "host", "username"):
                if not account_data.get(field):
                    raise ValueError(f"Missing required field: {field}")

            auth_type = account_data.get("auth_type", AuthType.PASSWORD)
            if isinstance(auth_type, str):
                auth_type = AuthType(auth_type)

            account = Account(
                name=account_data["name"],
                host=account_data["host"],
                port=account_data.get("port", 993),
                username=account_data["username"],
                use_ssl=account_data.get("use_ssl", True),
                auth_type=auth_type,
                is_enabled=account_data.get("is_enabled", True),
                folder_structure=[]
            )

            self.session.add(account)
            self.session.flush()

            if account_data.get("password"):
                self.credential_manager.set_secret(account.host, account.username, account_data["password"])

            self.session.commit()

            self.logger.info(f"Created account: {account.name} ({account.username}@{account.host})")
            return account

        except Exception as e:
            self.session.rollback()
            self.logger.error(f"Failed to create account: {e}")
            return None

    def get_account(self, account_id: str) -> Optional[Account]:
        """
        Get an account by ID.

        Returns:
            Account: Account instance, or None if not found
        """
        try:
            return self.session.query(Account).filter(Account.id == account_id).first()
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to get account {account_id}: {e}")
            return None

    def get_account_by_name(self, name: str) -> Optional[Account]:
        """
        Get an account by its unique display name.

        Returns:
            Account: Account instance, or None if not found
        """
        try:
            return self.session.query(Account).filter(Account.name == name).first()
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to get account by name {name}: {e}")
            return None

    def get_all_accounts(self, enabled_only: bool = False) -> List[Account]:
        """
        Get all accounts in the order they were added.

        Args:
            enabled_only: If True, return only enabled accounts

        Returns:
            List[Account]: List of account instances
        """
        try:
            query = self.session.query(Account)

            if enabled_only:
                query = query.filter(Account.is_enabled == True)

            return query.order_by(Account.created_at, Account.name).all()

        except SQLAlchemyError as e:
            self.logger.error(f"Failed to get accounts: {e}")
            return []

    def update_account(self, account_id: str, updates: Dict[str, Any]) -> bool:
        """
        Update an account.

        A ``password`` entry replaces the stored secret; moving the account to
        another host or username moves the secret along with it.

        Args:
            account_id: Account ID
            updates: Dictionary of fields to update

        Returns:
            bool: True if successful, False otherwise
        """
        try:
            account = self.get_account(account_id)
            if not account:
                return False

            old_host, old_username = account.host, account.username

            for field, value in updates.items():
                if field not in UPDATABLE_FIELDS:
                    continue
                if field == "auth_type" and isinstance(value, str):
                    value = AuthType(value)
                setattr(account, field, value)

            self._update_account_credentials(account, old_host, old_username, updates)

            self.session.commit()
            self.logger.info(f"Updated account: {account.name}")
            return True

        except Exception as e:
            self.session.rollback()
            self.logger.error(f"Failed to update account {account_id}: {e}")
            return False

    def _update_account_credentials(
        self,
        account: Account,
        old_host: str,
        old_username: str,
        updates: Dict[str, Any]
    ) -> None:
        """Update the stored secret after an account change."""
        moved = (account.host, account.username) != (old_host, old_username)
        password = updates.get("password")

        if moved and not password:
            try:
                password = self.credential_manager.get_secret(old_host, old_username)
            except CredentialStorageError:
                password = None

        if password:
            self.credential_manager.set_secret(account.host, account.username, password)
        if moved:
            self.credential_manager.delete_secret(old_host, old_username)

    def set_password(self, account_id: str, password: str) -> bool:
        """
        Store or replace the secret of an account.

        Returns:
            bool: True if successful, False otherwise
        """
        account = self.get_account(account_id)
        if not account:
            return False
        try:
            self.credential_manager.set_secret(account.host, account.username, password)
            return True
        except CredentialStorageError as e:
            self.logger.error(f"Failed to set password for account {account.name}: {e}")
            return False

    def delete_account(self, account_id: str) -> bool:
        """
        Delete an account and its stored secret.

        Returns:
            bool: True if successful, False otherwise
        """
        try:
            account = self.get_account(account_id)
            if not account:
                return False

            name = account.name
            try:
                self.credential_manager.delete_secret(account.host, account.username)
            except CredentialStorageError as e:
                self.logger.warning(f"Failed to delete credential for {account.name}: {e}")

            self.session.delete(account)
            self.session.commit()

            self.logger.info(f"Deleted account: {name}")
            return True

        except SQLAlchemyError as e:
            self.session.rollback()
            self.logger.error(f"Failed to delete account {account_id}: {e}")
            return False

    def set_account_enabled(self, account_id: str, enabled: bool) -> bool:
        """
        Enable or disable an account.

        Returns:
            bool: True if successful, False otherwise
        """
        try:
            account = self.get_account(account_id)
            if not account:
                return False

            account.is_enabled = enabled
            self.session.commit()

            status = "enabled" if enabled else "disabled"
            self.logger.info(f"Account {account.name} {status}")
            return True

        except SQLAlchemyError as e:
            self.session.rollback()
            self.logger.error(f"Failed to set account {account_id} enabled={enabled}: {e}")
            return False

    def toggle_account_enabled(self, account_id: str) -> Optional[bool]:
        """
        Flip the enabled flag of an account.

        Returns:
            bool: The new enabled state, or None if the account was not found
        """
        account = self.get_account(account_id)
        if not account:
            return None
        new_state = not account.is_enabled
        if not self.set_account_enabled(account_id, new_state):
            return None
        return new_state

    def record_backup_result(
        self,
        account_id: str,
        new_emails: int,
        folders: Optional[Sequence[str]] = None,
        completed: bool = True,
        finished_at: Optional[datetime] = None
    ) -> bool:
        """
        Persist the outcome of one account's backup run.

        The cumulative count always grows by ``new_emails`` since those
        messages are on disk; the last-backup time only moves on a completed
        account.

        Args:
            account_id: Account ID
            new_emails: Messages saved in this run
            folders: Folder names seen on the server
            completed: Whether every folder of the account was processed
            finished_at: Completion time, defaults to now

        Returns:
            bool: True if successful, False otherwise
        """
        try:
            account = self.get_account(account_id)
            if not account:
                return False

            account.total_emails_backed_up = (account.total_emails_backed_up or 0) + new_emails
            account.new_emails_this_backup = new_emails
            if folders:
                account.folder_structure = list(folders)
            if completed:
                account.last_backup_date = finished_at or datetime.now(timezone.utc)

            self.session.commit()
            self.logger.info(f"Recorded backup of {account.name}: {new_emails} new emails")
            return True

        except SQLAlchemyError as e:
            self.session.rollback()
            self.logger.error(f"Failed to record backup result for {account_id}: {e}")
            return False

    def get_total_emails_backed_up(self) -> int:
        """Sum of the cumulative counts of all accounts."""
        try:
            total = self.session.query(func.sum(Account.total_emails_backed_up)).scalar()
            return int(total or 0)
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to sum backed up emails: {e}")
            return 0

    def get_accounts_needing_attention(self, days: int = 7) -> List[Account]:
        """
        Get enabled accounts never backed up or not backed up within ``days``.

        Args:
            days: Age in days after which a backup is considered stale

        Returns:
            List[Account]: Accounts needing attention
        """
        cutoff = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=days)
        try:
            return self.session.query(Account).filter(
                Account.is_enabled == True,
                or_(Account.last_backup_date.is_(None), Account.last_backup_date < cutoff)
            ).order_by(Account.created_at, Account.name).all()

        except SQLAlchemyError as e:
            self.logger.error(f"Failed to get accounts needing attention: {e}")
            return []

    def get_recently_backed_up(self, days: int = 7, limit: Optional[int] = None) -> List[Account]:
        """
        Get the accounts backed up within the last ``days``.

        Args:
            days: Age in days within which a backup counts as recent
            limit: Maximum number of results, all if None

        Returns:
            List[Account]: Accounts ordered by last backup, newest first
        """
        cutoff = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=days)
        try:
            query = self.session.query(Account).filter(
                Account.last_backup_date.isnot(None),
                Account.last_backup_date >= cutoff
            ).order_by(Account.last_backup_date.desc())

            if limit is not None:
                query = query.limit(limit)

            return query.all()

        except SQLAlchemyError as e:
            self.logger.error(f"Failed to get recently backed up accounts: {e}")
            return []
