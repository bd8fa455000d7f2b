"""
Secure credential management for IMAP Backup.

Stores account secrets (passwords, app passwords, OAuth2 bearer tokens) in
the system keyring, keyed by server host and username.
"""

import keyring
import keyring.errors

from ...utils.logging_setup import get_logger

logger = get_logger(__name__)


class CredentialStorageError(Exception):
    """Exception raised when the keyring backend fails."""
    pass


class CredentialNotFoundError(CredentialStorageError):
    """Exception raised when no secret is stored for a host/username pair."""
    pass


class CredentialManager:
    """
    Manages account secrets using the system keyring.

    One keyring service per server host, with the account username as the
    keyring username, so the same login on two servers never collides.
    """

    SERVICE_PREFIX = "imap-backup"

    def __init__(self):
        """Initialize the credential manager."""
        self.logger = logger

    def _service_name(self, host: str) -> str:
        return f"{self.SERVICE_PREFIX}:{host.lower()}"

    def get_secret(self, host: str, username: str) -> str:
        """
        Retrieve the secret for an account.

        Args:
            host: IMAP server host
            username: Account username

        Returns:
            str: The stored secret

        Raises:
            CredentialNotFoundError: If nothing is stored for this account
            CredentialStorageError: If the keyring cannot be read
        """
        try:
            secret = keyring.get_password(self._service_name(host), username)
        except keyring.errors.KeyringError as e:
            self.logger.error(f"Failed to read credential for {username}@{host}: {e}")
            raise CredentialStorageError(f"Failed to read credential: {e}") from e

        if secret is None:
            raise CredentialNotFoundError(f"No credential stored for {username}@{host}")
        return secret

    def set_secret(self, host: str, username: str, secret: str) -> None:
        """
        Store or replace the secret for an account.

        Args:
            host: IMAP server host
            username: Account username
            secret: Password or token to store

        Raises:
            CredentialStorageError: If the secret cannot be stored
        """
        try:
            keyring.set_password(self._service_name(host), username, secret)
        except keyring.errors.KeyringError as e:
            self.logger.error(f"Failed to store credential for {username}@{host}: {e}")
            raise CredentialStorageError(f"Failed to store credential: {e}") from e

        self.logger.info(f"Stored credential for {username}@{host}")

    def delete_secret(self, host: str, username: str) -> None:
        """
        Delete the secret for an account. A missing entry is not an error.

        Raises:
            CredentialStorageError: If the keyring backend fails
        """
        try:
            keyring.delete_password(self._service_name(host), username)
            self.logger.info(f"Deleted credential for {username}@{host}")
        except keyring.errors.PasswordDeleteError:
            self.logger.debug(f"No credential to delete for {username}@{host}")
        except keyring.errors.KeyringError as e:
            self.logger.error(f"Failed to delete credential for {username}@{host}: {e}")
            raise CredentialStorageError(f"Failed to delete credential: {e}") from e

    def has_secret(self, host: str, username: str) -> bool:
        """Check whether a secret is stored without returning it."""
        try:
            return keyring.get_password(self._service_name(host), username) is not None
        except keyring.errors.KeyringError:
            return False
