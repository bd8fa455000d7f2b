"""
Backup manager for IMAP Backup.

Drives a backup run: accounts one at a time, folders one at a time, on a
single background worker thread. Each folder is deduplicated against the
metadata already on disk, new messages are written through the message
store, and progress is reported after every step. Cancellation is
cooperative and checked before every account, folder and message.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from ...utils.logging_setup import get_logger
from ...data.models.accounts import AccountSnapshot
from ..mail.imap_client import FolderInfo, MailboxConnectionError, MailboxError, MailboxSession
from .message_store import MessageStore, StorageError
from .progress import BackupProgress, RunState

logger = get_logger(__name__)


class CancellationToken:
    """Cooperative cancellation flag shared by the caller and the worker."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class AccountBackupResult:
    """Outcome of one account within a run, for the caller to persist."""
    account_id: str
    account_name: str
    new_emails: int = 0
    total_emails: int = 0
    bytes_processed: int = 0
    failed_emails: int = 0
    folders: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    is_complete: bool = False
    finished_at: Optional[datetime] = None

    @property
    def error(self) -> Optional[str]:
        return self.errors[-1] if self.errors else None


@dataclass
class BackupReport:
    """Outcome of a whole run."""
    state: RunState
    results: List[AccountBackupResult] = field(default_factory=list)

    @property
    def total_new_emails(self) -> int:
        return sum(r.new_emails for r in self.results)

    @property
    def has_errors(self) -> bool:
        return any(r.errors for r in self.results)


class _FolderCancelled(Exception):
    """Cancellation observed in the middle of a folder."""


class BackupManager:
    """
    Coordinates backup runs across accounts.

    Only one run can be in flight; a second start while running is ignored
    with a warning.
    """

    def __init__(
        self,
        connector,
        message_store: MessageStore,
        progress: Optional[BackupProgress] = None,
        skip_folders: Iterable[str] = ()
    ):
        """
        Initialize the backup manager.

        Args:
            connector: Object with ``connect(account) -> MailboxSession``
            message_store: Store used for dedup and persistence
            progress: Progress tracker shared with readers
            skip_folders: Folder names never backed up
        """
        self.connector = connector
        self.message_store = message_store
        self.progress = progress or BackupProgress()
        self.skip_folders = frozenset(skip_folders)
        self.logger = logger

        self._lock = threading.Lock()
        self._running = False
        self._token: Optional[CancellationToken] = None
        self._thread: Optional[threading.Thread] = None
        self._last_report: Optional[BackupReport] = None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def last_report(self) -> Optional[BackupReport]:
        return self._last_report

    def _begin_run(self) -> Optional[CancellationToken]:
        with self._lock:
            if self._running:
                self.logger.warning("Backup already running")
                return None
            self._running = True
            self._token = CancellationToken()
            return self._token

    def start(self, accounts: Sequence[AccountSnapshot], backup_root: Path) -> bool:
        """
        Start a run on the background worker thread.

        Returns:
            bool: False if a run was already in progress
        """
        token = self._begin_run()
        if token is None:
            return False

        self._thread = threading.Thread(
            target=self._run_guarded,
            args=(list(accounts), Path(backup_root), token),
            name="imap-backup-worker",
            daemon=True
        )
        self._thread.start()
        return True

    def run(self, accounts: Sequence[AccountSnapshot], backup_root: Path) -> Optional[BackupReport]:
        """
        Perform a run on the calling thread.

        Returns:
            BackupReport: Run outcome, or None if a run was already in progress
        """
        token = self._begin_run()
        if token is None:
            return None
        return self._run_guarded(list(accounts), Path(backup_root), token)

    def cancel(self) -> None:
        """Request cancellation of the current run."""
        with self._lock:
            token = self._token if self._running else None
        if token is not None:
            self.logger.info("Cancellation requested")
            token.cancel()

    def wait(self, timeout: Optional[float] = None) -> Optional[BackupReport]:
        """Wait for the background run to finish and return its report."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                return None
        return self._last_report

    def _run_guarded(self, accounts: List[AccountSnapshot], backup_root: Path, token: CancellationToken) -> BackupReport:
        try:
            report = self._perform_backup(accounts, backup_root, token)
            self._last_report = report
            return report
        finally:
            with self._lock:
                self._running = False

    def _perform_backup(self, accounts: List[AccountSnapshot], backup_root: Path, token: CancellationToken) -> BackupReport:
        enabled = [a for a in accounts if a.is_enabled]
        self.progress.start_run(enabled)
        self.logger.info(f"Starting backup for {len(enabled)} accounts into {backup_root}")

        report = BackupReport(state=RunState.RUNNING)
        for account in enabled:
            if token.is_cancelled:
                break

            self.logger.info(f"Starting backup for account: {account.name}")
            report.results.append(self._backup_account(account, backup_root, token))

        if token.is_cancelled:
            self.progress.cancel_run()
            report.state = RunState.CANCELLED
            self.logger.info("Backup cancelled")
        else:
            self.progress.complete_run()
            report.state = RunState.COMPLETED
            self.logger.info(f"Backup completed: {report.total_new_emails} new emails")
        return report

    def _record_error(self, result: AccountBackupResult, message: str) -> None:
        self.logger.error(f"[{result.account_name}] {message}")
        result.errors.append(message)
        self.progress.update_account(result.account_name, error=message)

    def _backup_account(self, account: AccountSnapshot, backup_root: Path, token: CancellationToken) -> AccountBackupResult:
        result = AccountBackupResult(account_id=account.id, account_name=account.name)

        try:
            account_dir = self.message_store.account_directory(backup_root, account.name)
        except StorageError as e:
            self._record_error(result, f"Failed to create backup directory: {e}")
            return result

        try:
            session = self.connector.connect(account)
        except MailboxError as e:
            self._record_error(result, f"Failed to connect: {e}")
            return result
        except Exception as e:
            self.logger.exception(f"Unexpected error while connecting {account.name}")
            self._record_error(result, f"Failed to connect: {e}")
            return result

        with session:
            try:
                finished = self._backup_folders(session, account, account_dir, result, token)
            except MailboxError as e:
                self._record_error(result, f"Failed to backup: {e}")
                return result
            except Exception as e:
                self.logger.exception(f"Unexpected error while backing up {account.name}")
                self._record_error(result, f"Failed to backup: {e}")
                return result

        if finished:
            result.is_complete = True
            result.finished_at = datetime.now(timezone.utc)
            self.progress.update_account(account.name, current_folder="", is_complete=True)
            self.logger.info(f"Completed backup for account: {account.name}, new emails: {result.new_emails}")
        return result

    def _backup_folders(
        self,
        session: MailboxSession,
        account: AccountSnapshot,
        account_dir: Path,
        result: AccountBackupResult,
        token: CancellationToken
    ) -> bool:
        """Back up every folder; returns False when cancelled part-way."""
        folders = [f for f in session.list_folders() if f.name not in self.skip_folders]
        result.folders = [f.name for f in folders]
        self.progress.update_account(account.name, total_folders=len(folders))

        completed_folders = 0
        for folder in folders:
            if token.is_cancelled:
                self.logger.info(f"[{account.name}] Cancelled before folder {folder.name}")
                return False

            self.logger.info(f"Processing folder: {folder.name}")
            self.progress.update_account(account.name, current_folder=folder.name)

            try:
                self._backup_folder(session, folder, account_dir, result, token)
            except _FolderCancelled:
                self.logger.info(f"[{account.name}] Cancelled during folder {folder.name}")
                return False

            completed_folders += 1
            self.progress.update_account(
                account.name,
                completed_folders=completed_folders,
                new_emails=result.new_emails,
                total_emails=result.total_emails
            )

        return True

    def _backup_folder(
        self,
        session: MailboxSession,
        folder: FolderInfo,
        account_dir: Path,
        result: AccountBackupResult,
        token: CancellationToken
    ) -> None:
        try:
            folder_dir = self.message_store.folder_directory(account_dir, folder.name, folder.delimiter)
        except StorageError as e:
            self._record_error(result, f"{folder.name}: {e}")
            return

        existing = self.message_store.existing_uids(folder_dir)
        result.total_emails += len(existing)

        try:
            messages = session.fetch_new(folder.name, existing)
        except MailboxConnectionError:
            raise
        except MailboxError as e:
            self._record_error(result, f"{folder.name}: {e}")
            return

        saved = 0
        failed = 0
        for message in messages:
            if token.is_cancelled:
                raise _FolderCancelled()

            try:
                saved_message = self.message_store.save(message, folder_dir)
            except StorageError as e:
                failed += 1
                self.logger.error(f"[{folder.name}] Failed to save UID {message.uid}: {e}")
                continue

            saved += 1
            result.new_emails += 1
            result.total_emails += 1
            result.bytes_processed += saved_message.bytes_written
            self.progress.update_account(
                result.account_name,
                new_emails=result.new_emails,
                total_emails=result.total_emails,
                bytes_processed=result.bytes_processed
            )

        if failed:
            result.failed_emails += failed
            self.progress.update_account(result.account_name, failed_emails=result.failed_emails)
            self._record_error(result, f"{folder.name}: failed to save {failed} message(s)")

        self.logger.info(f"Completed folder {folder.name}: {saved} new emails")
