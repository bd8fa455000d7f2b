"""
On-disk message store for IMAP Backup.

Layout per account::

    <backup_root>/<account>/<folder>/<base>.eml
    <backup_root>/<account>/<folder>/<base>.json
    <backup_root>/<account>/<folder>/attachments/<base>/<attachment>

The ``uid`` recorded in each metadata file is the only dedup key; file
names carry the sender and timestamp and are never parsed back.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from ...utils.logging_setup import get_logger
from ...utils.filename_sanitizer import (
    extract_sender_token,
    format_timestamp,
    safe_path_component,
    sanitize_attachment_filename,
)
from ..mail.imap_client import Message

logger = get_logger(__name__)

MESSAGE_SUFFIX = ".eml"
METADATA_SUFFIX = ".json"
ATTACHMENTS_DIR = "attachments"
MAX_UID = 0xFFFFFFFF


class StorageError(Exception):
    """Raised when a directory or file cannot be written."""

    def __init__(self, message: str, path: Optional[Path] = None):
        super().__init__(message)
        self.path = path


@dataclass
class SavedMessage:
    """Artifacts written for one message."""
    uid: int
    base_name: str
    eml_path: Path
    metadata_path: Path
    attachment_paths: List[Path] = field(default_factory=list)
    bytes_written: int = 0


def _write_atomic(path: Path, data: bytes) -> None:
    """Write to a hidden temporary sibling, then rename into place."""
    tmp_path = path.with_name(f".{path.name}.tmp")
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except OSError:
        if tmp_path.exists():
            tmp_path.unlink()
        raise


def _unique_path(directory: Path, filename: str) -> Path:
    """Return ``directory/filename``, adding ``_<index>`` before the extension on collision."""
    candidate = directory / filename
    if not candidate.exists():
        return candidate

    stem, extension = os.path.splitext(filename)
    index = 1
    while True:
        candidate = directory / f"{stem}_{index}{extension}"
        if not candidate.exists():
            return candidate
        index += 1


class MessageStore:
    """
    Reads and writes backed-up messages in per-folder directories.
    """

    def __init__(self, use_utc: bool = True):
        """
        Initialize the message store.

        Args:
            use_utc: Format base-name timestamps in UTC (True) or local time
        """
        self.use_utc = use_utc
        self.logger = logger

    def account_directory(self, backup_root: Path, account_name: str) -> Path:
        """
        Create (if missing) and return the directory of an account.

        Raises:
            StorageError: If the directory cannot be created
        """
        path = Path(backup_root) / safe_path_component(account_name)
        self._make_dirs(path)
        return path

    def folder_directory(self, account_dir: Path, folder_name: str, delimiter: Optional[str] = "/") -> Path:
        """
        Create (if missing) and return the directory mirroring a mailbox folder.

        Hierarchical names such as ``Archive/2023`` become nested directories.

        Raises:
            StorageError: If the directory cannot be created
        """
        parts = folder_name.split(delimiter) if delimiter else [folder_name]
        path = Path(account_dir)
        for part in parts:
            path = path / safe_path_component(part)
        self._make_dirs(path)
        return path

    def _make_dirs(self, path: Path) -> None:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create directory {path}: {e}", path) from e

    def existing_uids(self, folder_dir: Path) -> Set[int]:
        """
        Collect the uids of messages already saved in a folder directory.

        Only metadata files are read. Unreadable or corrupt files are skipped.

        Args:
            folder_dir: Folder directory to scan

        Returns:
            Set[int]: Uids recorded in the folder's metadata files
        """
        folder_dir = Path(folder_dir)
        uids: Set[int] = set()
        if not folder_dir.is_dir():
            return uids

        for path in folder_dir.glob(f"*{METADATA_SUFFIX}"):
            if path.name.startswith(".") or not path.is_file():
                continue
            try:
                with open(path, "r", encoding="utf-8") as f:
                    metadata = json.load(f)
            except (OSError, ValueError, RecursionError) as e:
                self.logger.warning(f"Skipping unreadable metadata file {path}: {e}")
                continue

            uid = metadata.get("uid") if isinstance(metadata, dict) else None
            if isinstance(uid, int) and not isinstance(uid, bool) and 0 <= uid <= MAX_UID:
                uids.add(uid)
            else:
                self.logger.warning(f"Skipping metadata file without a valid uid: {path}")

        return uids

    def base_name(self, message: Message) -> str:
        """Compute ``<sender>_<YYYY-MM-DD_HH_mm_ss>`` for a message."""
        sender = extract_sender_token(message.from_addr)
        return f"{sender}_{format_timestamp(message.date, self.use_utc)}"

    def _unique_base_name(self, folder_dir: Path, base: str) -> str:
        def taken(candidate: str) -> bool:
            return (
                (folder_dir / f"{candidate}{MESSAGE_SUFFIX}").exists()
                or (folder_dir / f"{candidate}{METADATA_SUFFIX}").exists()
                or (folder_dir / ATTACHMENTS_DIR / candidate).exists()
            )

        if not taken(base):
            return base
        index = 1
        while taken(f"{base}_{index}"):
            index += 1
        return f"{base}_{index}"

    def save(self, message: Message, folder_dir: Path) -> SavedMessage:
        """
        Persist one message: raw body, attachments, then metadata.

        The metadata file is written last, so an interrupted save leaves no
        metadata behind and the message is fetched again on the next run.

        Args:
            message: Message to persist
            folder_dir: Destination folder directory

        Returns:
            SavedMessage: Paths and byte count of what was written

        Raises:
            StorageError: If any file cannot be written
        """
        folder_dir = Path(folder_dir)
        self._make_dirs(folder_dir)

        base = self._unique_base_name(folder_dir, self.base_name(message))
        eml_path = folder_dir / f"{base}{MESSAGE_SUFFIX}"
        metadata_path = folder_dir / f"{base}{METADATA_SUFFIX}"
        attachment_paths: List[Path] = []
        bytes_written = 0

        try:
            _write_atomic(eml_path, message.body)
            bytes_written += len(message.body)

            if message.attachments:
                attachment_dir = folder_dir / ATTACHMENTS_DIR / base
                for attachment in message.attachments:
                    filename = sanitize_attachment_filename(attachment.filename)
                    if not filename:
                        self.logger.warning(
                            f"Skipping attachment with unusable name {attachment.filename!r} (UID {message.uid})"
                        )
                        continue
                    attachment_dir.mkdir(parents=True, exist_ok=True)
                    target = _unique_path(attachment_dir, filename)
                    _write_atomic(target, attachment.data)
                    attachment_paths.append(target)
                    bytes_written += len(attachment.data)

            metadata = self.build_metadata(message, [p.name for p in attachment_paths])
            payload = json.dumps(metadata, indent=2, ensure_ascii=False).encode("utf-8")
            _write_atomic(metadata_path, payload)

        except OSError as e:
            self._discard(eml_path, attachment_paths)
            raise StorageError(f"Failed to save UID {message.uid} in {folder_dir}: {e}", folder_dir) from e
        except (TypeError, ValueError) as e:
            self._discard(eml_path, attachment_paths)
            raise StorageError(f"Failed to encode metadata for UID {message.uid}: {e}", metadata_path) from e

        self.logger.debug(f"Saved UID {message.uid} as {base}")
        return SavedMessage(
            uid=message.uid,
            base_name=base,
            eml_path=eml_path,
            metadata_path=metadata_path,
            attachment_paths=attachment_paths,
            bytes_written=bytes_written,
        )

    def _discard(self, eml_path: Path, attachment_paths: List[Path]) -> None:
        """Remove the files of a save that did not reach its metadata write."""
        for path in [eml_path] + attachment_paths:
            try:
                if path.exists():
                    path.unlink()
            except OSError as e:
                self.logger.warning(f"Failed to remove partial file {path}: {e}")

        attachment_dir = eml_path.parent / ATTACHMENTS_DIR / eml_path.stem
        if attachment_dir.is_dir():
            try:
                if not any(attachment_dir.iterdir()):
                    attachment_dir.rmdir()
            except OSError as e:
                self.logger.warning(f"Failed to remove attachment directory {attachment_dir}: {e}")

    @staticmethod
    def directory_size(root: Path) -> int:
        """
        Total size in bytes of the files under a backup directory.

        Hidden files, such as temporaries of an unfinished write, are not counted.

        Args:
            root: Directory to measure

        Returns:
            int: Sum of file sizes, 0 if the directory does not exist
        """
        root = Path(root)
        if not root.is_dir():
            return 0

        total = 0
        for path in root.rglob("*"):
            if path.name.startswith("."):
                continue
            try:
                if path.is_file():
                    total += path.stat().st_size
            except OSError as e:
                logger.warning(f"Cannot stat {path}: {e}")
        return total

    @staticmethod
    def build_metadata(message: Message, attachment_names: List[str]) -> Dict[str, Any]:
        """Build the metadata document stored next to a message."""
        return {
            "uid": message.uid,
            "flags": list(message.flags),
            "subject": message.subject,
            "from": message.from_addr,
            "to": message.to_addr,
            "date": message.date.isoformat(),
            "size": message.size if message.size > 0 else len(message.body),
            "headers": dict(message.headers),
            "attachments": list(attachment_names),
        }
