"""
Unit tests for the backup manager.

Uses in-memory mailbox sessions and a real message store on a temporary
directory.
"""

import json
import threading
from datetime import datetime, timezone

from imap_backup.core.backup.backup_manager import BackupManager
from imap_backup.core.backup.message_store import MessageStore, StorageError
from imap_backup.core.backup.progress import CANCELLED_MESSAGE, BackupProgress, RunState
from imap_backup.core.mail.imap_client import (
    AuthError,
    FolderInfo,
    MailboxConnectionError,
    MailboxError,
    MailboxSession,
    Message,
)
from imap_backup.data.models.accounts import AccountSnapshot


def make_account(name, enabled=True):
    return AccountSnapshot(
        id=f"id-{name}",
        name=name,
        host="imap.example.com",
        username=f"{name.lower()}@example.com",
        is_enabled=enabled,
    )


def make_message(uid):
    return Message(
        uid=uid,
        flags=[],
        subject=f"Message {uid}",
        from_addr="Sender <sender@example.com>",
        to_addr="me@example.com",
        date=datetime(2024, 5, 1, 8, 0, uid % 60, tzinfo=timezone.utc),
        size=0,
        body=f"Subject: Message {uid}\r\n\r\nHello\r\n".encode(),
    )


class FakeSession(MailboxSession):
    """Mailbox session serving canned folders and messages."""

    def __init__(self, folders, messages=None, fetch_errors=None, on_fetch=None):
        self.folders = [FolderInfo(name=f) if isinstance(f, str) else f for f in folders]
        self.messages = messages or {}
        self.fetch_errors = fetch_errors or {}
        self.on_fetch = on_fetch
        self.fetch_calls = []
        self.disconnected = False

    def list_folders(self):
        return list(self.folders)

    def fetch_new(self, folder_name, excluding):
        self.fetch_calls.append((folder_name, set(excluding)))
        if folder_name in self.fetch_errors:
            raise self.fetch_errors[folder_name]
        if self.on_fetch:
            self.on_fetch(folder_name)
        return [m for m in self.messages.get(folder_name, []) if m.uid not in excluding]

    def disconnect(self):
        self.disconnected = True


class FakeConnector:
    """Connector handing out prepared sessions by account name."""

    def __init__(self, sessions, errors=None):
        self.sessions = sessions
        self.errors = errors or {}
        self.connected = []

    def connect(self, account):
        self.connected.append(account.name)
        if account.name in self.errors:
            raise self.errors[account.name]
        return self.sessions[account.name]


class FailingStore(MessageStore):
    """Message store that cannot save some uids."""

    def __init__(self, failing_uids):
        super().__init__()
        self.failing_uids = set(failing_uids)

    def save(self, message, folder_dir):
        if message.uid in self.failing_uids:
            raise StorageError(f"cannot write UID {message.uid}")
        return super().save(message, folder_dir)


class TestBackupRun:
    """Test synchronous backup runs."""

    def setup_method(self):
        self.progress = BackupProgress()

    def make_manager(self, connector, store=None, skip_folders=()):
        return BackupManager(connector, store or MessageStore(), self.progress, skip_folders=skip_folders)

    def test_empty_folders_complete(self, tmp_path):
        sessions = {
            "Work": FakeSession(["INBOX", "Sent"]),
            "Home": FakeSession(["INBOX", "Sent"]),
        }
        manager = self.make_manager(FakeConnector(sessions))

        report = manager.run([make_account("Work"), make_account("Home")], tmp_path)

        assert report.state == RunState.COMPLETED
        assert all(r.is_complete for r in report.results)
        assert report.total_new_emails == 0
        assert not report.has_errors

        snapshot = self.progress.snapshot()
        assert snapshot.state == RunState.COMPLETED
        assert snapshot.overall_progress == 1.0
        assert snapshot.completed_accounts == 2
        assert snapshot.account("Work").completed_folders == 2
        assert all(s.disconnected for s in sessions.values())

    def test_messages_saved(self, tmp_path):
        session = FakeSession(["INBOX"], messages={"INBOX": [make_message(1), make_message(2)]})
        manager = self.make_manager(FakeConnector({"Work": session}))

        report = manager.run([make_account("Work")], tmp_path)

        result = report.results[0]
        assert result.new_emails == 2
        assert result.total_emails == 2
        assert result.folders == ["INBOX"]
        assert result.bytes_processed > 0
        assert result.finished_at is not None

        inbox = tmp_path / "Work" / "INBOX"
        uids = {json.loads(p.read_text())["uid"] for p in inbox.glob("*.json")}
        assert uids == {1, 2}
        assert len(list(inbox.glob("*.eml"))) == 2

        account = self.progress.snapshot().account("Work")
        assert account.new_emails == 2
        assert account.bytes_processed == result.bytes_processed

    def test_second_run_is_incremental(self, tmp_path):
        session = FakeSession(["INBOX"], messages={"INBOX": [make_message(1), make_message(2)]})
        manager = self.make_manager(FakeConnector({"Work": session}))
        manager.run([make_account("Work")], tmp_path)

        session = FakeSession(["INBOX"], messages={"INBOX": [make_message(1), make_message(2), make_message(3)]})
        manager = self.make_manager(FakeConnector({"Work": session}))
        report = manager.run([make_account("Work")], tmp_path)

        result = report.results[0]
        assert session.fetch_calls == [("INBOX", {1, 2})]
        assert result.new_emails == 1
        assert result.total_emails == 3
        assert len(list((tmp_path / "Work" / "INBOX").glob("*.json"))) == 3

    def test_hierarchical_folders_nested(self, tmp_path):
        session = FakeSession(
            [FolderInfo(name="Archive.2023", delimiter=".")],
            messages={"Archive.2023": [make_message(5)]}
        )
        manager = self.make_manager(FakeConnector({"Work": session}))
        manager.run([make_account("Work")], tmp_path)

        assert len(list((tmp_path / "Work" / "Archive" / "2023").glob("*.json"))) == 1

    def test_connect_failure_moves_to_next_account(self, tmp_path):
        connector = FakeConnector(
            {"Home": FakeSession(["INBOX"])},
            errors={"Work": AuthError("Authentication failed for work@example.com")}
        )
        manager = self.make_manager(connector)

        report = manager.run([make_account("Work"), make_account("Home")], tmp_path)

        assert report.state == RunState.COMPLETED
        work, home = report.results
        assert not work.is_complete
        assert "Failed to connect" in work.error
        assert home.is_complete
        assert report.has_errors

        snapshot = self.progress.snapshot()
        assert snapshot.account("Work").error.startswith("Failed to connect")
        assert not snapshot.account("Work").is_complete
        assert snapshot.account("Home").is_complete
        assert snapshot.overall_progress == 1.0

    def test_unexpected_connect_error_moves_to_next_account(self, tmp_path):
        connector = FakeConnector(
            {"Home": FakeSession(["INBOX"], messages={"INBOX": [make_message(1)]})},
            errors={"Work": ValueError("encoding with 'idna' codec failed (label empty or too long)")}
        )
        manager = self.make_manager(connector)

        report = manager.run([make_account("Work"), make_account("Home")], tmp_path)

        assert report.state == RunState.COMPLETED
        work, home = report.results
        assert not work.is_complete
        assert "Failed to connect" in work.error
        assert home.is_complete
        assert home.new_emails == 1
        assert not manager.is_running

        snapshot = self.progress.snapshot()
        assert snapshot.state == RunState.COMPLETED
        assert snapshot.account("Work").error.startswith("Failed to connect")
        assert snapshot.account("Home").is_complete

    def test_folder_error_recorded_and_next_folder_processed(self, tmp_path):
        session = FakeSession(
            ["Broken", "INBOX"],
            messages={"INBOX": [make_message(1)]},
            fetch_errors={"Broken": MailboxError("SELECT refused")}
        )
        manager = self.make_manager(FakeConnector({"Work": session}))

        result = manager.run([make_account("Work")], tmp_path).results[0]

        assert result.is_complete
        assert result.new_emails == 1
        assert result.errors == ["Broken: SELECT refused"]
        assert self.progress.snapshot().account("Work").completed_folders == 2

    def test_connection_lost_abandons_account(self, tmp_path):
        session = FakeSession(
            ["INBOX", "Sent"],
            fetch_errors={"INBOX": MailboxConnectionError("Connection lost")}
        )
        manager = self.make_manager(FakeConnector({"Work": session}))

        result = manager.run([make_account("Work")], tmp_path).results[0]

        assert not result.is_complete
        assert "Connection lost" in result.error
        assert [call[0] for call in session.fetch_calls] == ["INBOX"]
        assert session.disconnected

    def test_listing_failure_recorded(self, tmp_path):
        class BrokenListing(FakeSession):
            def list_folders(self):
                raise MailboxError("LIST refused")

        session = BrokenListing([])
        manager = self.make_manager(FakeConnector({"Work": session}))

        result = manager.run([make_account("Work")], tmp_path).results[0]

        assert not result.is_complete
        assert "LIST refused" in result.error
        assert session.disconnected

    def test_message_save_failure_counted(self, tmp_path):
        session = FakeSession(["INBOX"], messages={"INBOX": [make_message(1), make_message(2), make_message(3)]})
        manager = self.make_manager(FakeConnector({"Work": session}), store=FailingStore({2}))

        result = manager.run([make_account("Work")], tmp_path).results[0]

        assert result.is_complete
        assert result.new_emails == 2
        assert result.failed_emails == 1
        assert "failed to save 1" in result.error
        assert self.progress.snapshot().account("Work").failed_emails == 1

    def test_skip_folders_excluded(self, tmp_path):
        session = FakeSession(["INBOX", "Trash"])
        manager = self.make_manager(FakeConnector({"Work": session}), skip_folders=["Trash"])

        result = manager.run([make_account("Work")], tmp_path).results[0]

        assert result.folders == ["INBOX"]
        assert [call[0] for call in session.fetch_calls] == ["INBOX"]
        assert self.progress.snapshot().account("Work").total_folders == 1

    def test_disabled_accounts_skipped(self, tmp_path):
        connector = FakeConnector({"Work": FakeSession(["INBOX"])})
        manager = self.make_manager(connector)

        report = manager.run([make_account("Work"), make_account("Off", enabled=False)], tmp_path)

        assert connector.connected == ["Work"]
        assert [r.account_name for r in report.results] == ["Work"]
        assert self.progress.snapshot().account("Off") is None


class TestCancellation:
    """Test cooperative cancellation."""

    def setup_method(self):
        self.progress = BackupProgress()

    def test_cancel_during_second_account(self, tmp_path):
        holder = {}

        def cancel_now(folder_name):
            holder["manager"].cancel()

        sessions = {
            "A": FakeSession(["INBOX"], messages={"INBOX": [make_message(1)]}),
            "B": FakeSession(["INBOX", "Sent"], messages={"INBOX": [make_message(2)]}, on_fetch=cancel_now),
            "C": FakeSession(["INBOX"]),
        }
        connector = FakeConnector(sessions)
        manager = BackupManager(connector, MessageStore(), self.progress)
        holder["manager"] = manager

        report = manager.run([make_account("A"), make_account("B"), make_account("C")], tmp_path)

        assert report.state == RunState.CANCELLED
        assert connector.connected == ["A", "B"]

        a, b = report.results
        assert a.is_complete and a.new_emails == 1
        assert not b.is_complete and b.new_emails == 0
        assert sessions["B"].disconnected
        assert [call[0] for call in sessions["B"].fetch_calls] == ["INBOX"]
        assert list((tmp_path / "B" / "INBOX").glob("*.json")) == []

        snapshot = self.progress.snapshot()
        assert snapshot.state == RunState.CANCELLED
        assert snapshot.last_error == CANCELLED_MESSAGE
        assert snapshot.account("A").is_complete
        assert not snapshot.account("B").is_complete
        assert snapshot.account("B").completed_folders == 0
        assert not snapshot.account("C").is_complete
        assert not manager.is_running

    def test_cancel_when_idle_is_noop(self):
        manager = BackupManager(FakeConnector({}), MessageStore(), self.progress)
        manager.cancel()
        assert not manager.is_running

    def test_background_run_and_single_flight(self, tmp_path):
        gate = threading.Event()
        entered = threading.Event()

        def block(folder_name):
            entered.set()
            gate.wait(5)

        session = FakeSession(["INBOX"], messages={"INBOX": [make_message(1)]}, on_fetch=block)
        manager = BackupManager(FakeConnector({"Work": session}), MessageStore(), self.progress)

        assert manager.start([make_account("Work")], tmp_path)
        assert entered.wait(5)
        assert manager.is_running
        assert not manager.start([make_account("Work")], tmp_path)
        assert manager.run([make_account("Work")], tmp_path) is None

        gate.set()
        report = manager.wait(5)

        assert report is not None
        assert report.state == RunState.COMPLETED
        assert report.results[0].new_emails == 1
        assert not manager.is_running
        assert manager.last_report is report

    def test_background_cancel(self, tmp_path):
        gate = threading.Event()
        entered = threading.Event()

        def block(folder_name):
            entered.set()
            gate.wait(5)

        session = FakeSession(["INBOX", "Sent"], messages={"INBOX": [make_message(1)]}, on_fetch=block)
        manager = BackupManager(FakeConnector({"Work": session}), MessageStore(), self.progress)

        manager.start([make_account("Work")], tmp_path)
        assert entered.wait(5)
        manager.cancel()
        gate.set()
        report = manager.wait(5)

        assert report.state == RunState.CANCELLED
        assert report.results[0].new_emails == 0
        assert self.progress.state == RunState.CANCELLED
