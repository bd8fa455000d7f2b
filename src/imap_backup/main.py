#!/usr/bin/env python3
"""
IMAP Backup - Command Line Entry Point

Backs up every enabled IMAP account into a local directory tree, one
``.eml`` and one ``.json`` file per message, and manages the account list.
"""

import argparse
import getpass
import sys
from pathlib import Path
from typing import List, Optional

import toml

from .config.app_config import AppConfig
from .utils.logging_setup import setup_logging, get_logger
from .core.backup.backup_manager import BackupManager, BackupReport
from .core.backup.message_store import MessageStore
from .core.backup.progress import BackupProgress, ProgressSnapshot, RunState, format_bytes
from .core.mail.credential_manager import CredentialManager, CredentialStorageError
from .core.mail.imap_client import IMAPConnector
from .data.database import DATABASE_FILENAME, create_session_factory
from .data.models.accounts import Account, AuthType
from .data.repositories.account_repository import AccountRepository

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130

POLL_INTERVAL = 0.5


def build_parser() -> argparse.ArgumentParser:
    """
    Build the argument parser for all sub-commands.

    Returns:
        argparse.ArgumentParser: Configured parser.
    """
    parser = argparse.ArgumentParser(prog="imap-backup", description="Back up IMAP mailboxes to local files.")
    parser.add_argument("--log-level", help="Override the configured log level (DEBUG, INFO, ...)")
    parser.add_argument("--config-dir", type=Path, help="Use another configuration directory")

    commands = parser.add_subparsers(dest="command", required=True)

    backup = commands.add_parser("backup", help="Back up enabled accounts")
    backup.add_argument("--account", action="append", dest="accounts", metavar="NAME",
                        help="Back up only this account (repeatable)")
    backup.add_argument("--dest", type=Path, help="Backup root directory for this run")
    backup.set_defaults(handler=cmd_backup)

    accounts = commands.add_parser("accounts", help="Manage accounts")
    account_commands = accounts.add_subparsers(dest="accounts_command", required=True)

    account_commands.add_parser("list", help="List accounts").set_defaults(handler=cmd_accounts_list)

    add = account_commands.add_parser("add", help="Add an account")
    add.add_argument("name")
    add.add_argument("--host", required=True)
    add.add_argument("--username", required=True)
    add.add_argument("--port", type=int)
    add.add_argument("--no-ssl", action="store_true", help="Use STARTTLS on a plain connection")
    add.add_argument("--auth-type", choices=[a.value for a in AuthType], default=AuthType.PASSWORD.value)
    add.add_argument("--password-stdin", action="store_true", help="Read the secret from stdin")
    add.set_defaults(handler=cmd_accounts_add)

    for name, handler, help_text in (
        ("remove", cmd_accounts_remove, "Remove an account and its stored secret"),
        ("enable", cmd_accounts_enable, "Enable an account"),
        ("disable", cmd_accounts_disable, "Disable an account"),
    ):
        sub = account_commands.add_parser(name, help=help_text)
        sub.add_argument("name")
        sub.set_defaults(handler=handler)

    set_password = account_commands.add_parser("set-password", help="Replace the stored secret")
    set_password.add_argument("name")
    set_password.add_argument("--password-stdin", action="store_true", help="Read the secret from stdin")
    set_password.set_defaults(handler=cmd_accounts_set_password)

    commands.add_parser("status", help="Show backup totals").set_defaults(handler=cmd_status)

    config = commands.add_parser("config", help="Show or change configuration")
    config_commands = config.add_subparsers(dest="config_command", required=True)
    config_commands.add_parser("show", help="Print the configuration").set_defaults(handler=cmd_config_show)
    set_dir = config_commands.add_parser("set-backup-dir", help="Change the backup root directory")
    set_dir.add_argument("path", type=Path)
    set_dir.set_defaults(handler=cmd_config_set_backup_dir)

    return parser


def _read_secret(args, auth_type: AuthType) -> str:
    if args.password_stdin:
        return sys.stdin.readline().rstrip("\r\n")
    prompt = "Access token: " if auth_type == AuthType.OAUTH2 else "Password: "
    return getpass.getpass(prompt)


def _find_account(repository: AccountRepository, name: str) -> Optional[Account]:
    account = repository.get_account_by_name(name)
    if account is None:
        print(f"No such account: {name}", file=sys.stderr)
    return account


def format_progress_line(snapshot: ProgressSnapshot) -> str:
    """Render a one-line progress summary."""
    parts = [f"{snapshot.overall_progress * 100:5.1f}%"]
    parts.append(f"accounts {snapshot.completed_accounts}/{snapshot.total_accounts}")
    parts.append(f"{snapshot.total_new_emails} new")
    parts.append(snapshot.formatted_bytes_processed)
    if snapshot.current_account:
        location = snapshot.current_account
        if snapshot.current_folder:
            location += f"/{snapshot.current_folder}"
        parts.append(location)
    if snapshot.estimated_time_remaining > 0:
        parts.append(f"ETA {snapshot.formatted_time_remaining}")
    return " | ".join(parts)


def _wait_for_backup(manager: BackupManager, progress: BackupProgress) -> Optional[BackupReport]:
    """Print progress until the run ends; the first Ctrl-C cancels the run."""
    last_line = ""
    while manager.is_running:
        try:
            manager.wait(POLL_INTERVAL)
        except KeyboardInterrupt:
            print("\nCancelling backup, finishing the current message...", file=sys.stderr)
            manager.cancel()
            continue

        line = format_progress_line(progress.snapshot())
        if line != last_line:
            print(line, flush=True)
            last_line = line

    return manager.wait()


def cmd_backup(args, config: AppConfig, repository: AccountRepository, credential_manager: CredentialManager) -> int:
    logger = get_logger(__name__)

    if args.accounts:
        accounts: List[Account] = []
        for name in args.accounts:
            account = _find_account(repository, name)
            if account is None:
                return EXIT_ERROR
            if not account.is_enabled:
                print(f"Account {name} is disabled and will be skipped", file=sys.stderr)
            accounts.append(account)
    else:
        accounts = repository.get_all_accounts(enabled_only=True)

    if not accounts:
        print("No enabled accounts to back up")
        return EXIT_OK

    backup_root = (args.dest or config.get_backup_dir()).expanduser()
    progress = BackupProgress()
    manager = BackupManager(
        connector=IMAPConnector(credential_manager, timeout=config.connection.timeout),
        message_store=MessageStore(use_utc=config.use_utc_timestamps),
        progress=progress,
        skip_folders=config.backup.skip_folders
    )

    logger.info(f"Backing up {len(accounts)} accounts to {backup_root}")
    manager.start([a.to_snapshot() for a in accounts], backup_root)
    report = _wait_for_backup(manager, progress)
    if report is None:
        print("Backup did not produce a report", file=sys.stderr)
        return EXIT_ERROR

    for result in report.results:
        repository.record_backup_result(
            result.account_id,
            result.new_emails,
            folders=result.folders,
            completed=result.is_complete,
            finished_at=result.finished_at
        )
        status = "done" if result.is_complete else "incomplete"
        print(f"{result.account_name}: {result.new_emails} new, {result.total_emails} total ({status})")
        for error in result.errors:
            print(f"  error: {error}")

    if report.state == RunState.CANCELLED:
        print("Backup cancelled")
        return EXIT_CANCELLED

    print(f"Backup completed: {report.total_new_emails} new emails")
    return EXIT_ERROR if report.has_errors else EXIT_OK


def cmd_accounts_list(args, config: AppConfig, repository: AccountRepository, credential_manager: CredentialManager) -> int:
    accounts = repository.get_all_accounts()
    if not accounts:
        print("No accounts configured")
        return EXIT_OK

    for account in accounts:
        enabled = "enabled" if account.is_enabled else "disabled"
        auth = (account.auth_type or AuthType.PASSWORD).display_name
        print(f"{account.name}\t{account.username}@{account.display_host}\t{auth}\t{enabled}\t{account.status_text}")
    return EXIT_OK


def cmd_accounts_add(args, config: AppConfig, repository: AccountRepository, credential_manager: CredentialManager) -> int:
    if repository.get_account_by_name(args.name) is not None:
        print(f"Account already exists: {args.name}", file=sys.stderr)
        return EXIT_ERROR

    auth_type = AuthType(args.auth_type)
    secret = _read_secret(args, auth_type)
    if not secret:
        print("A password or token is required", file=sys.stderr)
        return EXIT_ERROR

    account = repository.create_account({
        "name": args.name,
        "host": args.host,
        "username": args.username,
        "port": args.port or config.connection.default_port,
        "use_ssl": config.connection.use_ssl and not args.no_ssl,
        "auth_type": auth_type,
        "password": secret,
    })
    if account is None:
        print(f"Failed to add account {args.name}", file=sys.stderr)
        return EXIT_ERROR

    print(f"Added account {account.name}")
    return EXIT_OK


def cmd_accounts_remove(args, config: AppConfig, repository: AccountRepository, credential_manager: CredentialManager) -> int:
    account = _find_account(repository, args.name)
    if account is None or not repository.delete_account(account.id):
        return EXIT_ERROR
    print(f"Removed account {args.name}")
    return EXIT_OK


def _set_enabled(args, repository: AccountRepository, enabled: bool) -> int:
    account = _find_account(repository, args.name)
    if account is None or not repository.set_account_enabled(account.id, enabled):
        return EXIT_ERROR
    print(f"Account {args.name} {'enabled' if enabled else 'disabled'}")
    return EXIT_OK


def cmd_accounts_enable(args, config: AppConfig, repository: AccountRepository, credential_manager: CredentialManager) -> int:
    return _set_enabled(args, repository, True)


def cmd_accounts_disable(args, config: AppConfig, repository: AccountRepository, credential_manager: CredentialManager) -> int:
    return _set_enabled(args, repository, False)


def cmd_accounts_set_password(args, config: AppConfig, repository: AccountRepository, credential_manager: CredentialManager) -> int:
    account = _find_account(repository, args.name)
    if account is None:
        return EXIT_ERROR

    secret = _read_secret(args, account.auth_type or AuthType.PASSWORD)
    if not secret or not repository.set_password(account.id, secret):
        print(f"Failed to update the secret of {args.name}", file=sys.stderr)
        return EXIT_ERROR

    print(f"Updated secret for {args.name}")
    return EXIT_OK


def cmd_status(args, config: AppConfig, repository: AccountRepository, credential_manager: CredentialManager) -> int:
    accounts = repository.get_all_accounts()
    enabled = [a for a in accounts if a.is_enabled]

    print(f"Accounts: {len(accounts)} ({len(enabled)} enabled)")
    print(f"Emails backed up: {repository.get_total_emails_backed_up()}")
    print(f"Backup directory: {config.get_backup_dir()}")
    print(f"Backup size: {format_bytes(MessageStore.directory_size(config.get_backup_dir()))}")

    for account in enabled:
        if not credential_manager.has_secret(account.host, account.username):
            print(f"  {account.name}: no stored secret")

    stale = repository.get_accounts_needing_attention(config.backup.attention_days)
    if stale:
        print(f"Needing attention (no backup in {config.backup.attention_days} days):")
        for account in stale:
            print(f"  {account.name}: {account.status_text}")

    recent = repository.get_recently_backed_up(config.backup.attention_days)
    if recent:
        print(f"Backed up in the last {config.backup.attention_days} days:")
        for account in recent:
            print(f"  {account.name}: {account.status_text}, {account.new_emails_this_backup} new")
    return EXIT_OK


def cmd_config_show(args, config: AppConfig, repository: AccountRepository, credential_manager: CredentialManager) -> int:
    print(f"# {config.config_file}")
    print(toml.dumps(config.to_dict()), end="")
    return EXIT_OK


def cmd_config_set_backup_dir(args, config: AppConfig, repository: AccountRepository, credential_manager: CredentialManager) -> int:
    config.set_backup_dir(args.path)
    print(f"Backup directory set to {config.get_backup_dir()}")
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main application entry point.

    Returns:
        int: Exit code (0 for success, 1 for errors, 130 when cancelled).
    """
    args = build_parser().parse_args(argv)
    session = None

    try:
        config = AppConfig(config_dir=args.config_dir)
        setup_logging(
            log_level=args.log_level or config.logging.level,
            log_file=config.get_log_file(),
            console_output=config.logging.console
        )
        logger = get_logger(__name__)
        logger.debug(f"Running command: {args.command}")

        Session = create_session_factory(config.get_data_dir() / DATABASE_FILENAME)
        session = Session()

        credential_manager = CredentialManager()
        repository = AccountRepository(session, credential_manager)

        return args.handler(args, config, repository, credential_manager)

    except KeyboardInterrupt:
        return EXIT_CANCELLED

    except (CredentialStorageError, OSError) as e:
        print(f"imap-backup: {e}", file=sys.stderr)
        return EXIT_ERROR

    finally:
        if session is not None:
            session.close()


if __name__ == "__main__":
    sys.exit(main())
