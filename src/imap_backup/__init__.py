"""
IMAP Backup

Incremental backup of IMAP mailboxes into a plain directory tree: one raw
``.eml`` file and one ``.json`` metadata file per message, attachments
extracted alongside.

Version: 0.1.0
"""

__version__ = "0.1.0"
__description__ = "Incremental IMAP mailbox backup to local files"

# Package level imports for convenience
from .config.app_config import AppConfig
from .utils.logging_setup import setup_logging

__all__ = [
    "AppConfig",
    "setup_logging",
]
