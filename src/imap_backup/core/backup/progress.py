"""
Backup progress tracking for IMAP Backup.

A single writer (the backup worker) mutates the tracker; any number of
readers take immutable snapshots or subscribe to receive one after every
update.
"""

import enum
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ...utils.logging_setup import get_logger

logger = get_logger(__name__)

CANCELLED_MESSAGE = "Backup cancelled"


class RunState(enum.Enum):
    """Overall state of a backup run."""
    IDLE = "idle"
    RUNNING = "running"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


@dataclass(frozen=True)
class AccountProgress:
    """Progress of one account within a run."""
    name: str
    total_folders: int = 0
    completed_folders: int = 0
    current_folder: str = ""
    new_emails: int = 0
    total_emails: int = 0
    bytes_processed: int = 0
    failed_emails: int = 0
    is_complete: bool = False
    error: Optional[str] = None

    @property
    def progress(self) -> float:
        if self.total_folders <= 0:
            return 0.0
        return min(self.completed_folders / self.total_folders, 1.0)


def format_bytes(count: int) -> str:
    """Format a byte count with decimal units, e.g. ``1.5 MB``."""
    value = float(count)
    for unit in ("bytes", "KB", "MB", "GB", "TB"):
        if value < 1000 or unit == "TB":
            if unit == "bytes":
                return f"{int(value)} bytes"
            return f"{value:.1f} {unit}"
        value /= 1000
    return f"{count} bytes"


def format_duration(seconds: float) -> str:
    """Format seconds as ``1h 2m 3s``; ``Unknown`` when not positive."""
    if seconds <= 0:
        return "Unknown"
    total = int(round(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


@dataclass(frozen=True)
class ProgressSnapshot:
    """Immutable view of the progress state at one point in time."""
    state: RunState
    started_at: Optional[datetime]
    accounts: Tuple[AccountProgress, ...]
    current_account: str
    current_folder: str
    overall_progress: float
    estimated_time_remaining: float
    last_error: Optional[str]

    @property
    def is_running(self) -> bool:
        return self.state == RunState.RUNNING

    @property
    def total_accounts(self) -> int:
        return len(self.accounts)

    @property
    def completed_accounts(self) -> int:
        return sum(1 for a in self.accounts if a.is_complete)

    @property
    def total_new_emails(self) -> int:
        return sum(a.new_emails for a in self.accounts)

    @property
    def total_bytes_processed(self) -> int:
        return sum(a.bytes_processed for a in self.accounts)

    @property
    def formatted_bytes_processed(self) -> str:
        return format_bytes(self.total_bytes_processed)

    @property
    def formatted_time_remaining(self) -> str:
        return format_duration(self.estimated_time_remaining)

    def account(self, name: str) -> Optional[AccountProgress]:
        for progress in self.accounts:
            if progress.name == name:
                return progress
        return None


class BackupProgress:
    """
    Mutable, observable progress state for backup runs.

    Every mutation happens under a lock and replaces whole per-account
    records, so readers never see a partially updated account.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """
        Initialize the tracker.

        Args:
            clock: Monotonic clock used for elapsed time and estimates
        """
        self._clock = clock
        self._lock = threading.Lock()
        self._listeners: List[Callable[[ProgressSnapshot], None]] = []

        self._state = RunState.IDLE
        self._started_at: Optional[datetime] = None
        self._started_clock: Optional[float] = None
        self._accounts: Dict[str, AccountProgress] = {}
        self._current_account = ""
        self._current_folder = ""
        self._last_error: Optional[str] = None
        self._finished = False

    def subscribe(self, listener: Callable[[ProgressSnapshot], None]) -> None:
        """Register a callback receiving a snapshot after every update."""
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Callable[[ProgressSnapshot], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def start_run(self, accounts: Iterable) -> None:
        """
        Reset all counters and seed one zeroed record per account.

        Args:
            accounts: Account snapshots (or plain names) taking part in the run
        """
        with self._lock:
            self._state = RunState.RUNNING
            self._started_at = datetime.now(timezone.utc)
            self._started_clock = self._clock()
            self._current_account = ""
            self._current_folder = ""
            self._last_error = None
            self._finished = False
            self._accounts = {}
            for account in accounts:
                name = account if isinstance(account, str) else account.name
                self._accounts[name] = AccountProgress(name=name)
        self._publish()

    def update_account(
        self,
        name: str,
        *,
        total_folders: Optional[int] = None,
        completed_folders: Optional[int] = None,
        current_folder: Optional[str] = None,
        new_emails: Optional[int] = None,
        total_emails: Optional[int] = None,
        bytes_processed: Optional[int] = None,
        failed_emails: Optional[int] = None,
        is_complete: Optional[bool] = None,
        error: Optional[str] = None
    ) -> None:
        """
        Apply a partial update to one account; only supplied fields change.

        Args:
            name: Account name as seeded by start_run
            error: Recorded on the account and exposed as the run's last error
        """
        with self._lock:
            current = self._accounts.get(name)
            if current is None:
                logger.debug(f"Ignoring progress update for unknown account {name!r}")
                return

            changes = {}
            if total_folders is not None:
                changes["total_folders"] = total_folders
            if completed_folders is not None:
                changes["completed_folders"] = completed_folders
            if current_folder is not None:
                changes["current_folder"] = current_folder
                self._current_folder = current_folder
            if new_emails is not None:
                changes["new_emails"] = new_emails
            if total_emails is not None:
                changes["total_emails"] = total_emails
            if bytes_processed is not None:
                changes["bytes_processed"] = bytes_processed
            if failed_emails is not None:
                changes["failed_emails"] = failed_emails
            if is_complete is not None:
                changes["is_complete"] = is_complete
            if error is not None:
                changes["error"] = error
                self._last_error = error

            self._accounts[name] = replace(current, **changes)
            self._current_account = name
        self._publish()

    def complete_run(self) -> None:
        """Mark the run completed and force overall progress to 1.0."""
        with self._lock:
            self._state = RunState.COMPLETED
            self._finished = True
            self._current_account = ""
            self._current_folder = ""
        self._publish()

    def cancel_run(self) -> None:
        """Mark the run cancelled; per-account data is kept for inspection."""
        with self._lock:
            self._state = RunState.CANCELLED
            self._last_error = CANCELLED_MESSAGE
            self._current_account = ""
            self._current_folder = ""
        self._publish()

    def snapshot(self) -> ProgressSnapshot:
        """Return an immutable copy of the current state."""
        with self._lock:
            return self._snapshot_locked()

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._state

    def _overall_progress_locked(self) -> float:
        if self._finished:
            return 1.0
        if not self._accounts:
            return 0.0
        return sum(a.progress for a in self._accounts.values()) / len(self._accounts)

    def _snapshot_locked(self) -> ProgressSnapshot:
        overall = self._overall_progress_locked()

        remaining = 0.0
        if self._state == RunState.RUNNING and self._started_clock is not None and 0 < overall < 1:
            elapsed = self._clock() - self._started_clock
            remaining = elapsed * (1 / overall - 1)

        return ProgressSnapshot(
            state=self._state,
            started_at=self._started_at,
            accounts=tuple(self._accounts.values()),
            current_account=self._current_account,
            current_folder=self._current_folder,
            overall_progress=overall,
            estimated_time_remaining=remaining,
            last_error=self._last_error,
        )

    def _publish(self) -> None:
        with self._lock:
            if not self._listeners:
                return
            snapshot = self._snapshot_locked()
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Progress listener failed")
