"""
IMAP mailbox session for IMAP Backup.

Wraps one authenticated imaplib connection to one account and exposes the
two operations the backup engine needs: listing folders and fetching the
messages of a folder that are not already backed up.
"""

import abc
import email
import email.errors
import email.header
import email.policy
import email.utils
import enum
import imaplib
import re
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import AbstractSet, Dict, List, Optional, Tuple

from ...utils.logging_setup import get_logger
from ...data.models.accounts import AccountSnapshot, AuthType
from .credential_manager import CredentialManager, CredentialNotFoundError, CredentialStorageError

logger = get_logger(__name__)

FETCH_BATCH_SIZE = 50
FETCH_ITEMS = "(UID FLAGS INTERNALDATE RFC822.SIZE BODY.PEEK[])"
UNSELECTABLE_ATTRIBUTES = {"\\noselect", "\\nonexistent"}

_LIST_RE = re.compile(r'\((?P<flags>[^)]*)\)\s+(?P<delimiter>"(?:[^"\\]|\\.)*"|NIL)\s+(?P<name>.+)$', re.IGNORECASE)
_UID_RE = re.compile(rb"UID (\d+)")
_FLAGS_RE = re.compile(rb"FLAGS \(([^)]*)\)")
_INTERNALDATE_RE = re.compile(rb'INTERNALDATE "([^"]+)"')
_SIZE_RE = re.compile(rb"RFC822\.SIZE (\d+)")
_STATUS_RE = re.compile(r"(MESSAGES|UNSEEN) (\d+)")


@dataclass
class FolderInfo:
    """IMAP folder information as reported at listing time."""
    name: str
    delimiter: Optional[str] = "/"
    attributes: List[str] = field(default_factory=list)
    message_count: int = 0
    unseen_count: int = 0

    @property
    def is_selectable(self) -> bool:
        return not any(a.lower() in UNSELECTABLE_ATTRIBUTES for a in self.attributes)


@dataclass
class Attachment:
    """Email attachment with its decoded content."""
    filename: str
    content_type: str
    data: bytes = b""

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class Message:
    """A message fetched from the server, ready to be stored."""
    uid: int
    flags: List[str]
    subject: str
    from_addr: str
    to_addr: str
    date: datetime
    size: int
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    attachments: List[Attachment] = field(default_factory=list)


class MailboxError(Exception):
    """Base class for mailbox session errors."""
    pass


class MailboxConnectionError(MailboxError):
    """Network, TLS, handshake or timeout failure."""
    pass


class AuthError(MailboxError):
    """Credential missing or rejected by the server."""
    pass


class NotAuthenticatedError(MailboxConnectionError):
    """Operation issued before the session was authenticated."""
    pass


class NotConnectedError(MailboxConnectionError):
    """Operation issued after the session was disconnected."""
    pass


class SessionState(enum.Enum):
    """Mailbox session states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    LISTING = "listing"
    FETCHING = "fetching"
    CLOSED = "closed"


class MailboxSession(abc.ABC):
    """
    Contract between the backup engine and a mail transport.

    A session is owned by exactly one account's processing and is released
    with ``disconnect()`` (or by leaving a ``with`` block) on every exit path.
    """

    @abc.abstractmethod
    def list_folders(self) -> List[FolderInfo]:
        """Return the account's folders in server order."""

    @abc.abstractmethod
    def fetch_new(self, folder_name: str, excluding: AbstractSet[int]) -> List[Message]:
        """Return the messages of a folder whose uid is not in ``excluding``."""

    @abc.abstractmethod
    def disconnect(self) -> None:
        """Release the transport. Idempotent, never raises."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()


class IMAPMailboxSession(MailboxSession):
    """
    imaplib-backed mailbox session.

    State machine: disconnected -> connecting -> authenticated ->
    (listing | fetching)* -> closed.
    """

    def __init__(self, account: AccountSnapshot, credential_manager: CredentialManager, timeout: float = 30):
        """
        Initialize the session.

        Args:
            account: Account to connect to
            credential_manager: Source of the account secret
            timeout: Socket timeout in seconds for every server operation
        """
        self.account = account
        self.credential_manager = credential_manager
        self.timeout = timeout
        self.imap: Optional[imaplib.IMAP4] = None
        self.state = SessionState.DISCONNECTED
        self.logger = logger

    def connect(self) -> None:
        """
        Open the transport and authenticate.

        Raises:
            AuthError: Secret missing or rejected
            MailboxConnectionError: Network, TLS or handshake failure
            NotConnectedError: Session was already disconnected
        """
        if self.state == SessionState.CLOSED:
            raise NotConnectedError("Session has been disconnected")
        if self.state == SessionState.AUTHENTICATED:
            return

        account = self.account
        self.state = SessionState.CONNECTING
        self.logger.info(f"Connecting to {account.display_host} as {account.username}")

        try:
            secret = self.credential_manager.get_secret(account.host, account.username)
        except CredentialNotFoundError as e:
            self.state = SessionState.DISCONNECTED
            raise AuthError(f"No credential stored for {account.username}@{account.host}") from e
        except CredentialStorageError as e:
            self.state = SessionState.DISCONNECTED
            raise AuthError(f"Credential unavailable: {e}") from e

        try:
            self.imap = self._open_transport()
        except (OSError, imaplib.IMAP4.error, ValueError) as e:
            self.imap = None
            self.state = SessionState.DISCONNECTED
            raise MailboxConnectionError(f"Failed to connect to {account.display_host}: {e}") from e

        try:
            self._authenticate(secret)
        except imaplib.IMAP4.abort as e:
            self._drop_transport()
            raise MailboxConnectionError(f"Connection lost during login to {account.display_host}: {e}") from e
        except (imaplib.IMAP4.error, ValueError) as e:
            self._drop_transport()
            raise AuthError(f"Authentication failed for {account.username}: {e}") from e
        except OSError as e:
            self._drop_transport()
            raise MailboxConnectionError(f"Connection lost during login to {account.display_host}: {e}") from e

        self.state = SessionState.AUTHENTICATED
        self.logger.info(f"Authenticated to {account.display_host} as {account.username}")

    def _open_transport(self) -> imaplib.IMAP4:
        """Open a TLS (implicit or STARTTLS) connection with the configured timeout."""
        context = ssl.create_default_context()

        if self.account.use_ssl:
            return imaplib.IMAP4_SSL(
                self.account.host,
                self.account.port,
                ssl_context=context,
                timeout=self.timeout
            )

        imap = imaplib.IMAP4(self.account.host, self.account.port, timeout=self.timeout)
        if "STARTTLS" in imap.capabilities:
            imap.starttls(ssl_context=context)
        else:
            self.logger.warning(f"{self.account.display_host} does not offer STARTTLS, continuing unencrypted")
        return imap

    def _authenticate(self, secret: str) -> None:
        if self.account.auth_type == AuthType.OAUTH2:
            auth_string = f"user={self.account.username}\x01auth=Bearer {secret}\x01\x01"
            self.imap.authenticate("XOAUTH2", lambda _: auth_string.encode())
        else:
            self.imap.login(self.account.username, secret)

    def _drop_transport(self) -> None:
        if self.imap is not None:
            try:
                self.imap.shutdown()
            except OSError as e:
                self.logger.debug(f"Error closing transport: {e}")
        self.imap = None
        self.state = SessionState.DISCONNECTED

    def _require_authenticated(self) -> None:
        if self.state == SessionState.CLOSED:
            raise NotConnectedError("Session has been disconnected")
        if self.state != SessionState.AUTHENTICATED or self.imap is None:
            raise NotAuthenticatedError("Session is not authenticated")

    def list_folders(self) -> List[FolderInfo]:
        """
        List the selectable folders of the account.

        Returns:
            List[FolderInfo]: Folders in the order the server lists them

        Raises:
            NotAuthenticatedError: Called before connect()
            NotConnectedError: Called after disconnect()
            MailboxConnectionError: Transport failure
            MailboxError: Server refused the LIST command
        """
        self._require_authenticated()
        self.state = SessionState.LISTING

        try:
            status, data = self.imap.list()
            if status != "OK":
                raise MailboxError(f"Failed to list folders: {data}")

            folders = []
            for entry in data:
                folder = parse_list_entry(entry)
                if folder is None:
                    continue
                if not folder.is_selectable:
                    self.logger.debug(f"Skipping unselectable folder {folder.name}")
                    continue
                self._fill_status(folder)
                folders.append(folder)

            self.logger.info(f"Found {len(folders)} folders on {self.account.display_host}")
            return folders

        except imaplib.IMAP4.abort as e:
            raise MailboxConnectionError(f"Connection lost while listing folders: {e}") from e
        except OSError as e:
            raise MailboxConnectionError(f"Connection error while listing folders: {e}") from e
        finally:
            if self.state == SessionState.LISTING:
                self.state = SessionState.AUTHENTICATED

    def _fill_status(self, folder: FolderInfo) -> None:
        """Fill message/unseen counts from STATUS; servers may refuse it."""
        try:
            status, data = self.imap.status(quote_mailbox(folder.name), "(MESSAGES UNSEEN)")
        except imaplib.IMAP4.abort:
            raise
        except imaplib.IMAP4.error as e:
            self.logger.debug(f"STATUS failed for {folder.name}: {e}")
            return

        if status != "OK" or not data or data[0] is None:
            return

        text = data[0].decode("utf-8", errors="replace") if isinstance(data[0], bytes) else str(data[0])
        for key, value in _STATUS_RE.findall(text):
            if key == "MESSAGES":
                folder.message_count = int(value)
            else:
                folder.unseen_count = int(value)

    def fetch_new(self, folder_name: str, excluding: AbstractSet[int]) -> List[Message]:
        """
        Fetch every message of a folder whose uid is not excluded.

        Args:
            folder_name: Folder to select (read-only)
            excluding: Uids already backed up

        Returns:
            List[Message]: New messages in ascending uid order

        Raises:
            NotAuthenticatedError: Called before connect()
            NotConnectedError: Called after disconnect()
            MailboxConnectionError: Transport failure
            MailboxError: Server refused SELECT, SEARCH or FETCH
        """
        self._require_authenticated()
        self.state = SessionState.FETCHING

        try:
            status, data = self.imap.select(quote_mailbox(folder_name), readonly=True)
            if status != "OK":
                raise MailboxError(f"Failed to select folder {folder_name}: {data}")

            status, data = self.imap.uid("search", None, "ALL")
            if status != "OK":
                raise MailboxError(f"Search failed in {folder_name}: {data}")

            server_uids = set()
            if data and data[0]:
                server_uids = {int(u) for u in data[0].split() if u.isdigit()}

            wanted = sorted(server_uids - set(excluding))
            self.logger.info(
                f"[{folder_name}] {len(server_uids)} on server, "
                f"{len(server_uids) - len(wanted)} already saved, {len(wanted)} to fetch"
            )

            messages = []
            for i in range(0, len(wanted), FETCH_BATCH_SIZE):
                batch = wanted[i:i + FETCH_BATCH_SIZE]
                messages.extend(self._fetch_batch(folder_name, batch))

            messages.sort(key=lambda m: m.uid)
            return messages

        except imaplib.IMAP4.abort as e:
            raise MailboxConnectionError(f"Connection lost while fetching {folder_name}: {e}") from e
        except imaplib.IMAP4.error as e:
            raise MailboxError(f"Failed to fetch {folder_name}: {e}") from e
        except OSError as e:
            raise MailboxConnectionError(f"Connection error while fetching {folder_name}: {e}") from e
        finally:
            if self.state == SessionState.FETCHING:
                self.state = SessionState.AUTHENTICATED

    def _fetch_batch(self, folder_name: str, uids: List[int]) -> List[Message]:
        wanted = set(uids)
        uid_set = ",".join(str(u) for u in uids)
        status, data = self.imap.uid("fetch", uid_set, FETCH_ITEMS)
        if status != "OK":
            raise MailboxError(f"Fetch failed in {folder_name}: {data}")

        messages = []
        for meta, raw in group_fetch_response(data):
            message = parse_fetched_message(meta, raw)
            if message is None:
                self.logger.warning(f"[{folder_name}] Unparseable FETCH response skipped")
                continue
            # Servers may send unsolicited FETCH responses for other uids
            if message.uid not in wanted:
                continue
            wanted.discard(message.uid)
            messages.append(message)

        for uid in sorted(wanted):
            self.logger.warning(f"[{folder_name}] UID {uid} vanished before it could be fetched")
        return messages

    def disconnect(self) -> None:
        """Log out and release the transport. Safe to call repeatedly."""
        if self.state == SessionState.CLOSED:
            return

        if self.imap is not None:
            try:
                self.imap.logout()
            except (imaplib.IMAP4.error, OSError) as e:
                self.logger.debug(f"Error during logout from {self.account.display_host}: {e}")
            self.imap = None
            self.logger.info(f"Disconnected from {self.account.display_host}")

        self.state = SessionState.CLOSED


class IMAPConnector:
    """Opens authenticated IMAP sessions for accounts."""

    def __init__(self, credential_manager: CredentialManager, timeout: float = 30):
        self.credential_manager = credential_manager
        self.timeout = timeout

    def connect(self, account: AccountSnapshot) -> IMAPMailboxSession:
        """
        Connect and authenticate a new session for an account.

        Raises:
            AuthError: Secret missing or rejected
            MailboxConnectionError: Network, TLS or handshake failure
        """
        session = IMAPMailboxSession(account, self.credential_manager, self.timeout)
        session.connect()
        return session


def quote_mailbox(name: str) -> str:
    """Quote a mailbox name for use as an IMAP astring."""
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _unquote(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return re.sub(r'\\(.)', r'\1', value[1:-1])
    return value


def parse_list_entry(entry) -> Optional[FolderInfo]:
    """
    Parse one LIST response line: ``(flags) "delimiter" name``.

    imaplib returns a tuple when the name is sent as a literal.
    """
    if entry is None:
        return None

    if isinstance(entry, tuple):
        prefix = entry[0].decode("utf-8", errors="replace")
        literal = entry[1].decode("utf-8", errors="replace")
        prefix = re.sub(r"\{\d+\}$", "", prefix).rstrip()
        text = f"{prefix} {quote_mailbox(literal)}"
    elif isinstance(entry, bytes):
        text = entry.decode("utf-8", errors="replace")
    else:
        text = str(entry)

    match = _LIST_RE.match(text.strip())
    if not match:
        logger.debug(f"Unrecognized LIST response: {text!r}")
        return None

    attributes = [a for a in match.group("flags").split() if a]
    delimiter_token = match.group("delimiter")
    delimiter = None if delimiter_token.upper() == "NIL" else _unquote(delimiter_token)
    name = _unquote(match.group("name").strip())

    return FolderInfo(name=name, delimiter=delimiter, attributes=attributes)


def group_fetch_response(data) -> List[Tuple[bytes, bytes]]:
    """
    Group an imaplib FETCH response into (metadata, literal) pairs.

    Each message arrives as a ``(prefix, literal)`` tuple followed by bytes
    that may carry the remaining metadata (e.g. ``b' FLAGS (\\Seen))'``).
    """
    records = []
    for item in data or []:
        if isinstance(item, tuple) and len(item) >= 2:
            records.append([item[0], item[1]])
        elif isinstance(item, bytes) and records:
            records[-1][0] = records[-1][0] + b" " + item
    return [(meta, raw) for meta, raw in records]


def parse_fetched_message(meta: bytes, raw: bytes) -> Optional[Message]:
    """Build a Message from a FETCH metadata prefix and the raw RFC 5322 bytes."""
    uid_match = _UID_RE.search(meta)
    if not uid_match or raw is None:
        return None

    flags = []
    flags_match = _FLAGS_RE.search(meta)
    if flags_match:
        flags = [f.decode("utf-8", errors="replace") for f in flags_match.group(1).split()]

    internal_date = None
    date_match = _INTERNALDATE_RE.search(meta)
    if date_match:
        internal_date = parse_internal_date(date_match.group(1).decode("ascii", errors="replace"))

    size = 0
    size_match = _SIZE_RE.search(meta)
    if size_match:
        size = int(size_match.group(1))

    return parse_message(int(uid_match.group(1)), raw, flags, size=size, internal_date=internal_date)


def parse_internal_date(value: str) -> Optional[datetime]:
    """Parse an IMAP INTERNALDATE such as ``17-Jul-1996 02:44:25 -0700``."""
    try:
        return datetime.strptime(value.strip(), "%d-%b-%Y %H:%M:%S %z")
    except ValueError:
        return None


def decode_header_value(value) -> str:
    """Decode RFC 2047 encoded words and unfold a raw header value."""
    if value is None:
        return ""

    text = str(value)
    try:
        text = str(email.header.make_header(email.header.decode_header(text)))
    except (email.errors.HeaderParseError, LookupError, UnicodeDecodeError) as e:
        logger.debug(f"Keeping undecodable header as-is: {e}")
    return " ".join(_restore_8bit(text).split())


def _restore_8bit(text: str) -> str:
    """Turn surrogate-escaped 8-bit bytes back into UTF-8 text."""
    try:
        return text.encode("utf-8", "surrogateescape").decode("utf-8", "replace")
    except UnicodeEncodeError:
        return text.encode("utf-8", "replace").decode("utf-8")


def _header_items(mime: EmailMessage) -> List[Tuple[str, str]]:
    """Decoded, unfolded ``(name, value)`` pairs in message order."""
    items = []
    for name, raw_value in mime.raw_items():
        try:
            value = str(mime.policy.header_fetch_parse(name, raw_value))
            value = " ".join(value.split())
        except Exception as e:  # the header parser raises assorted errors on malformed input
            logger.debug(f"Falling back to raw decoding of {name} header: {e}")
            value = decode_header_value(raw_value)
        items.append((name, value))
    return items


def parse_message(
    uid: int,
    raw: bytes,
    flags: List[str],
    size: int = 0,
    internal_date: Optional[datetime] = None
) -> Message:
    """
    Parse raw message bytes into a Message.

    Headers may be RFC 2047 encoded or raw UTF-8 (RFC 6532); both come out
    as text.

    Args:
        uid: Folder-scoped unique identifier
        raw: Full RFC 5322 message
        flags: IMAP flags
        size: Declared size (RFC822.SIZE)
        internal_date: Server arrival date, used when the Date header is unusable

    Returns:
        Message: Parsed message including decoded attachments
    """
    mime = email.message_from_bytes(raw, policy=email.policy.default)

    headers: Dict[str, str] = {}
    by_name: Dict[str, str] = {}
    for name, value in _header_items(mime):
        headers.setdefault(name, value)
        by_name.setdefault(name.lower(), value)

    date = _parse_date(by_name.get("date")) or internal_date or datetime.now(timezone.utc)
    if date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)

    return Message(
        uid=uid,
        flags=list(flags),
        subject=by_name.get("subject", ""),
        from_addr=by_name.get("from", ""),
        to_addr=by_name.get("to", ""),
        date=date,
        size=size,
        body=raw,
        headers=headers,
        attachments=_extract_attachments(mime),
    )


def _parse_date(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return email.utils.parsedate_to_datetime(str(value))
    except (TypeError, ValueError, IndexError):
        return None


def _extract_attachments(mime: EmailMessage) -> List[Attachment]:
    attachments = []
    for part in mime.walk():
        if part.is_multipart():
            continue

        disposition = part.get_content_disposition()
        filename = part.get_filename()
        if disposition != "attachment" and not filename:
            continue

        if filename:
            filename = " ".join(str(filename).split())
        else:
            filename = f"attachment_{len(attachments) + 1}"

        payload = part.get_payload(decode=True)
        if not isinstance(payload, bytes):
            payload = b""

        attachments.append(Attachment(filename=filename, content_type=part.get_content_type(), data=payload))
    return attachments
