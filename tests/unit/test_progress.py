"""
Unit tests for backup progress tracking.
"""

import dataclasses

import pytest

from imap_backup.core.backup.progress import (
    CANCELLED_MESSAGE,
    BackupProgress,
    RunState,
    format_bytes,
    format_duration,
)


class TestBackupProgress:
    """Test the progress tracker state machine."""

    def setup_method(self):
        self.now = 0.0
        self.progress = BackupProgress(clock=lambda: self.now)

    def test_initial_state(self):
        snapshot = self.progress.snapshot()
        assert snapshot.state == RunState.IDLE
        assert snapshot.overall_progress == 0.0
        assert snapshot.accounts == ()

    def test_start_run_seeds_accounts(self):
        self.progress.start_run(["Work", "Home"])
        snapshot = self.progress.snapshot()

        assert snapshot.is_running
        assert snapshot.started_at is not None
        assert snapshot.total_accounts == 2
        assert snapshot.account("Work").new_emails == 0
        assert snapshot.overall_progress == 0.0

    def test_overall_progress_is_mean_of_accounts(self):
        self.progress.start_run(["Work", "Home"])
        self.progress.update_account("Work", total_folders=2, completed_folders=1)

        assert self.progress.snapshot().overall_progress == pytest.approx(0.25)

    def test_account_without_folders_counts_zero(self):
        self.progress.start_run(["Work"])
        self.progress.update_account("Work", total_folders=0, is_complete=True)
        assert self.progress.snapshot().overall_progress == 0.0

    def test_complete_run_forces_full_progress(self):
        self.progress.start_run(["Work", "Home"])
        self.progress.update_account("Work", is_complete=True)
        self.progress.update_account("Home", is_complete=True)
        self.progress.complete_run()

        snapshot = self.progress.snapshot()
        assert snapshot.state == RunState.COMPLETED
        assert snapshot.overall_progress == 1.0
        assert snapshot.completed_accounts == 2
        assert not snapshot.is_running

    def test_cancel_run_keeps_account_data(self):
        self.progress.start_run(["Work"])
        self.progress.update_account("Work", new_emails=3)
        self.progress.cancel_run()

        snapshot = self.progress.snapshot()
        assert snapshot.state == RunState.CANCELLED
        assert snapshot.last_error == CANCELLED_MESSAGE
        assert snapshot.account("Work").new_emails == 3
        assert snapshot.completed_accounts == 0

    def test_partial_update_keeps_other_fields(self):
        self.progress.start_run(["Work"])
        self.progress.update_account("Work", total_folders=4, new_emails=2)
        self.progress.update_account("Work", current_folder="INBOX")

        account = self.progress.snapshot().account("Work")
        assert account.total_folders == 4
        assert account.new_emails == 2
        assert account.current_folder == "INBOX"

    def test_current_location_tracked(self):
        self.progress.start_run(["Work"])
        self.progress.update_account("Work", current_folder="Sent")

        snapshot = self.progress.snapshot()
        assert snapshot.current_account == "Work"
        assert snapshot.current_folder == "Sent"

    def test_error_recorded_as_last_error(self):
        self.progress.start_run(["Work"])
        self.progress.update_account("Work", error="Failed to connect: refused")

        snapshot = self.progress.snapshot()
        assert snapshot.account("Work").error == "Failed to connect: refused"
        assert snapshot.last_error == "Failed to connect: refused"

    def test_unknown_account_ignored(self):
        self.progress.start_run(["Work"])
        self.progress.update_account("Other", new_emails=5)

        snapshot = self.progress.snapshot()
        assert snapshot.account("Other") is None
        assert snapshot.total_new_emails == 0

    def test_totals(self):
        self.progress.start_run(["Work", "Home"])
        self.progress.update_account("Work", new_emails=2, bytes_processed=1500)
        self.progress.update_account("Home", new_emails=3, bytes_processed=500)

        snapshot = self.progress.snapshot()
        assert snapshot.total_new_emails == 5
        assert snapshot.total_bytes_processed == 2000
        assert snapshot.formatted_bytes_processed == "2.0 KB"

    def test_estimated_time_remaining(self):
        self.progress.start_run(["Work"])
        self.progress.update_account("Work", total_folders=2, completed_folders=1)
        self.now = 10.0

        snapshot = self.progress.snapshot()
        assert snapshot.estimated_time_remaining == pytest.approx(10.0)
        assert snapshot.formatted_time_remaining == "10s"

    def test_no_estimate_without_progress(self):
        self.progress.start_run(["Work"])
        self.now = 10.0
        snapshot = self.progress.snapshot()
        assert snapshot.estimated_time_remaining == 0.0
        assert snapshot.formatted_time_remaining == "Unknown"

    def test_start_run_resets(self):
        self.progress.start_run(["Work"])
        self.progress.update_account("Work", new_emails=4, error="boom")
        self.progress.cancel_run()
        self.progress.start_run(["Home"])

        snapshot = self.progress.snapshot()
        assert snapshot.state == RunState.RUNNING
        assert snapshot.account("Work") is None
        assert snapshot.last_error is None
        assert snapshot.total_new_emails == 0

    def test_snapshot_is_immutable(self):
        self.progress.start_run(["Work"])
        snapshot = self.progress.snapshot()

        with pytest.raises(dataclasses.FrozenInstanceError):
            snapshot.overall_progress = 0.5
        with pytest.raises(dataclasses.FrozenInstanceError):
            snapshot.accounts[0].new_emails = 10

    def test_snapshot_not_affected_by_later_updates(self):
        self.progress.start_run(["Work"])
        before = self.progress.snapshot()
        self.progress.update_account("Work", new_emails=7)
        assert before.account("Work").new_emails == 0

    def test_subscribers_notified(self):
        received = []
        self.progress.subscribe(received.append)

        self.progress.start_run(["Work"])
        self.progress.update_account("Work", new_emails=1)
        self.progress.complete_run()

        assert [s.state for s in received] == [RunState.RUNNING, RunState.RUNNING, RunState.COMPLETED]
        assert received[1].account("Work").new_emails == 1

    def test_failing_subscriber_does_not_break_updates(self):
        def broken(snapshot):
            raise RuntimeError("listener bug")

        received = []
        self.progress.subscribe(broken)
        self.progress.subscribe(received.append)
        self.progress.start_run(["Work"])

        assert len(received) == 1

    def test_unsubscribe(self):
        received = []
        self.progress.subscribe(received.append)
        self.progress.unsubscribe(received.append)
        self.progress.start_run(["Work"])
        assert received == []


class TestFormatting:
    """Test human readable helpers."""

    def test_format_bytes(self):
        assert format_bytes(0) == "0 bytes"
        assert format_bytes(999) == "999 bytes"
        assert format_bytes(1500) == "1.5 KB"
        assert format_bytes(2_500_000) == "2.5 MB"
        assert format_bytes(3_000_000_000) == "3.0 GB"

    def test_format_duration(self):
        assert format_duration(0) == "Unknown"
        assert format_duration(-5) == "Unknown"
        assert format_duration(59) == "59s"
        assert format_duration(120) == "2m"
        assert format_duration(3725) == "1h 2m 5s"
