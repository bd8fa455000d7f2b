"""
Account data models for IMAP Backup.

Defines the SQLAlchemy model used by the account registry and the immutable
snapshot handed to the backup engine for a single run.
"""

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Enum, JSON, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthType(enum.Enum):
    """Enumeration for authentication methods."""
    PASSWORD = "password"
    OAUTH2 = "oauth2"
    APP_PASSWORD = "app_password"

    @property
    def display_name(self) -> str:
        return {
            AuthType.PASSWORD: "Password",
            AuthType.OAUTH2: "OAuth2",
            AuthType.APP_PASSWORD: "App Password",
        }[self]


@dataclass(frozen=True)
class AccountSnapshot:
    """
    Immutable view of an account for the duration of one backup run.

    The backup engine never mutates accounts; counters and timestamps are
    reported back through progress and persisted by the caller.
    """
    id: str
    name: str
    host: str
    username: str
    port: int = 993
    use_ssl: bool = True
    auth_type: AuthType = AuthType.PASSWORD
    is_enabled: bool = True
    last_backup_date: Optional[datetime] = None
    total_emails_backed_up: int = 0
    new_emails_this_backup: int = 0
    folder_structure: Tuple[str, ...] = ()

    @property
    def display_host(self) -> str:
        return f"{self.host}:{self.port}"


class Account(Base):
    """
    Account entity representing one IMAP mailbox to back up.
    """
    __tablename__ = "accounts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Account identification
    name = Column(String(255), nullable=False, unique=True)

    # Server settings
    host = Column(String(255), nullable=False)
    port = Column(Integer, default=993)
    username = Column(String(255), nullable=False)
    use_ssl = Column(Boolean, default=True)
    auth_type = Column(Enum(AuthType), default=AuthType.PASSWORD)

    is_enabled = Column(Boolean, default=True)

    # Backup status, written back after every run
    last_backup_date = Column(DateTime)
    total_emails_backed_up = Column(Integer, default=0)
    new_emails_this_backup = Column(Integer, default=0)
    folder_structure = Column(JSON, default=list)

    # Metadata
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_account_enabled", "is_enabled"),
    )

    @property
    def display_host(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def status_text(self) -> str:
        if self.last_backup_date is None:
            return "Never backed up"
        return f"Last backup: {self.last_backup_date:%Y-%m-%d %H:%M}"

    def to_snapshot(self) -> AccountSnapshot:
        """
        Build the immutable snapshot the backup engine works with.

        Returns:
            AccountSnapshot: Frozen copy of this account's current values.
        """
        return AccountSnapshot(
            id=self.id,
            name=self.name,
            host=self.host,
            username=self.username,
            port=self.port if self.port is not None else 993,
            use_ssl=bool(self.use_ssl) if self.use_ssl is not None else True,
            auth_type=self.auth_type or AuthType.PASSWORD,
            is_enabled=bool(self.is_enabled) if self.is_enabled is not None else True,
            last_backup_date=self.last_backup_date,
            total_emails_backed_up=self.total_emails_backed_up or 0,
            new_emails_this_backup=self.new_emails_this_backup or 0,
            folder_structure=tuple(self.folder_structure or ()),
        )

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, name='{self.name}', host='{self.display_host}')>"
