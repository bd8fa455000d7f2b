"""
Data models for IMAP Backup.
"""

from .accounts import Account, AccountSnapshot, AuthType

# Base class for all models
from .accounts import Base

__all__ = [
    'Base',
    'Account',
    'AccountSnapshot',
    'AuthType',
]
