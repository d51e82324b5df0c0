"""IMAP client and mock mail source."""

from __future__ import annotations

import imaplib
import json
import logging
import random
import re
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Generator

from mailsweep.email_parser import EmailParser
from mailsweep.models import MailMessage

if TYPE_CHECKING:
    from mailsweep.config import ImapConfig

logger = logging.getLogger(__name__)

_LIST_RESPONSE = re.compile(rb'\((?P<flags>[^)]*)\) (?P<delimiter>"[^"]*"|NIL) (?P<name>.+)')


def parse_list_response(line: bytes) -> tuple[set[str], str] | None:
    """Parse one LIST response line into (flags, folder name)."""
    match = _LIST_RESPONSE.match(line)
    if not match:
        return None
    flags = {flag.lower() for flag in match.group("flags").decode().split()}
    name = match.group("name").decode("utf-8", errors="replace").strip()
    if name.startswith('"') and name.endswith('"'):
        name = name[1:-1].replace('\\"', '"')
    return flags, name


def _quote(folder: str) -> str:
    return '"' + folder.replace("\\", "\\\\").replace('"', '\\"') + '"'


class IMAPClient:
    """IMAP mailbox access for scans, imports and trashing.

    Used either as a context manager holding one connection, or call by
    call, in which case each operation connects and logs out on its own.
    """

    def __init__(self, config: ImapConfig, parser: EmailParser | None = None):
        """Initialize the IMAP client.

        Args:
            config: IMAP server and folder settings
            parser: Parser for raw RFC 822 messages
        """
        self.config = config
        self.parser = parser or EmailParser()
        self._connection: imaplib.IMAP4_SSL | None = None
        self._selected_folder: str | None = None

    def connect(self) -> None:
        """Connect to the IMAP server.

        Raises:
            ConnectionError: If unable to connect to the IMAP server
            ValueError: If authentication fails
        """
        logger.info(json.dumps({"event": "connecting", "host": self.config.host, "port": self.config.port}))

        try:
            self._connection = imaplib.IMAP4_SSL(
                self.config.host,
                self.config.port,
                timeout=self.config.timeout,
            )
        except OSError as e:
            error_msg = (
                f"Cannot connect to {self.config.host}:{self.config.port} - "
                "Check host, port, and network connection"
            )
            logger.error(error_msg)
            raise ConnectionError(error_msg) from e

        try:
            self._connection.login(self.config.username, self.config.get_password())
            logger.info(json.dumps({"event": "logged_in", "username": self.config.username}))
        except imaplib.IMAP4.error as e:
            self._connection = None
            error_str = str(e)
            if "AUTHENTICATIONFAILED" in error_str or "authentication" in error_str.lower():
                error_msg = (
                    f"Authentication failed for {self.config.username} - "
                    "Check username and password in config.yml"
                )
            else:
                error_msg = f"IMAP error during login: {e}"
            logger.error(error_msg)
            raise ValueError(error_msg) from e

    def disconnect(self) -> None:
        """Disconnect from the IMAP server."""
        if self._connection:
            try:
                self._connection.logout()
            except (imaplib.IMAP4.error, OSError) as e:
                logger.warning(f"Error during logout: {e}")
            finally:
                self._connection = None
                self._selected_folder = None

    def __enter__(self) -> IMAPClient:
        self.connect()
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.disconnect()

    @contextmanager
    def _session(self) -> Generator[imaplib.IMAP4_SSL, None, None]:
        """Yield the open connection, or connect for the duration of one call."""
        if self._connection:
            yield self._connection
            return
        self.connect()
        try:
            yield self._connection
        finally:
            self.disconnect()

    def select_folder(self, folder: str, readonly: bool = True) -> int:
        """Select a folder and return its message count.

        Args:
            folder: Folder name, unquoted
            readonly: Open with EXAMINE semantics so flags are left alone
        """
        if not self._connection:
            raise RuntimeError("Not connected")

        status, data = self._connection.select(_quote(folder), readonly=readonly)
        if status != "OK":
            raise RuntimeError(f"Failed to select folder {folder}: {data}")

        self._selected_folder = folder
        return int(data[0]) if data and data[0] else 0

    def list_folders(self) -> list[str]:
        """List selectable folders, minus the configured skip list."""
        with self._session() as conn:
            status, data = conn.list()
            if status != "OK":
                raise RuntimeError(f"Failed to list folders: {data}")

        folders = []
        for line in data:
            if not isinstance(line, bytes):
                continue
            parsed = parse_list_response(line)
            if parsed is None:
                logger.debug(f"Unparsable LIST line: {line!r}")
                continue
            flags, name = parsed
            if "\\noselect" in flags or name in self.config.skip_folders:
                continue
            folders.append(name)
        return folders

    def fetch_messages(self, limit: int = 50) -> list[MailMessage]:
        """Fetch the newest ``limit`` messages from the inbox, newest first."""
        messages = self._fetch(self.config.inbox_folder, limit)
        messages.sort(key=lambda m: m.date.timestamp() if m.date else 0, reverse=True)
        return messages[:limit]

    def fetch_folder(self, folder: str) -> list[MailMessage]:
        """Fetch every message in a folder."""
        return self._fetch(folder, None)

    def _fetch(self, folder: str, limit: int | None) -> list[MailMessage]:
        with self._session() as conn:
            self.select_folder(folder)
            status, data = conn.uid("SEARCH", None, "ALL")
            if status != "OK":
                logger.error(json.dumps({"event": "search_failed", "folder": folder, "data": str(data)}))
                return []

            uids = data[0].split() if data and data[0] else []
            if limit is not None:
                uids = uids[-limit:]
            logger.info(json.dumps({"event": "fetching", "folder": folder, "count": len(uids)}))

            messages = []
            for uid in uids:
                message = self._fetch_message(conn, folder, uid.decode())
                if message:
                    messages.append(message)
            return messages

    def _fetch_message(
        self, conn: imaplib.IMAP4_SSL, folder: str, uid: str
    ) -> MailMessage | None:
        """Fetch a single message by UID without marking it as seen."""
        status, data = conn.uid("FETCH", uid, "(BODY.PEEK[])")
        if status != "OK" or not data or not isinstance(data[0], tuple):
            logger.warning(f"Failed to fetch message UID {uid} in {folder}")
            return None

        try:
            return self.parser.parse(data[0][1], fallback_id=f"uid-{folder}-{uid}")
        except (ValueError, TypeError, UnicodeError) as e:
            logger.error(f"Error parsing message UID {uid} in {folder}: {e}")
            return None

    def move_to_trash(self, message_id: str) -> bool:
        """Move the inbox message with this Message-ID to the trash folder.

        Args:
            message_id: Message-ID header value to search for

        Returns:
            True if the message was found and moved
        """
        with self._session() as conn:
            self.select_folder(self.config.inbox_folder, readonly=False)

            status, data = conn.uid("SEARCH", None, "HEADER", "Message-ID", _quote(message_id))
            uids = data[0].split() if status == "OK" and data and data[0] else []
            if not uids:
                logger.warning(f"Message not found: {message_id}")
                return False

            uid_set = b",".join(uids).decode()
            status, data = conn.uid("COPY", uid_set, _quote(self.config.trash_folder))
            if status != "OK":
                logger.error(f"Failed to copy {message_id} to {self.config.trash_folder}: {data}")
                return False

            status, data = conn.uid("STORE", uid_set, "+FLAGS", r"(\Deleted)")
            if status != "OK":
                logger.error(f"Failed to mark {message_id} as deleted: {data}")
                return False

            conn.expunge()
            logger.info(f"Moved {message_id} to {self.config.trash_folder}")
            return True


MOCK_SPAM = [
    ("winner@lottery-intl.com", "YOU WON $5,000,000!!! Claim Now!!!",
     "Congratulations! You have been selected as winner of our international lottery. "
     "Send your bank details to claim your prize immediately!"),
    ("prince.abubakar@nigeria-royal.net", "Urgent Business Proposal - $15M Transfer",
     "Dear friend, I need your help transferring $15 million out of my country. "
     "You will receive 30% commission."),
    ("security@paypa1-verify.com", "Your Account Has Been Limited - Action Required",
     "We noticed unusual activity on your account. Click here to verify your identity "
     "or your account will be suspended in 24 hours."),
    ("deals@cheap-rx-meds.com", "80% OFF All Medications - No Prescription Needed",
     "Get medications at unbeatable prices. No prescription required. Fast discreet shipping."),
    ("crypto@bitcoin-multiply.io", "Double Your Bitcoin in 24 Hours - Guaranteed!",
     "Our AI trading bot guarantees 100% returns. Send 1 BTC and receive 2 BTC within 24 hours."),
]

MOCK_NEWSLETTERS = [
    ("newsletter@techcrunch.com", "TechCrunch Daily: AI Startups Raise Record Funding",
     "Today's top stories: AI competitors raise $2B, new chips announced, and more tech news.",
     "https://techcrunch.com/unsubscribe?id=12345"),
    ("digest@medium.com", "Your Daily Read: Top Stories on Medium",
     "Based on your interests: 'How I Built a SaaS in 30 Days', 'The Future of Remote Work'.",
     "https://medium.com/unsubscribe"),
    ("hello@substack.com", "New Post from The Pragmatic Engineer",
     "A new post was published: 'Inside Big Tech Layoffs'. Read the full post.",
     "https://substack.com/unsubscribe"),
    ("news@github.com", "GitHub Explore: Trending Repositories This Week",
     "Check out what's trending this week and 10 other repos you might like.",
     "https://github.com/settings/emails"),
    ("weekly@spotify.com", "Your Discover Weekly is Ready",
     "30 fresh tracks picked just for you based on your listening history.",
     "https://spotify.com/account/notifications"),
]

MOCK_KEEP = [
    ("john.smith@company.com", "Re: Q4 Planning Meeting",
     "Thanks for setting this up. I'll bring the revenue projections. "
     "Can we also discuss the new hire timeline?"),
    ("receipts@uber.com", "Your Uber receipt from January 5",
     "Trip from Downtown to Airport. Total: $32.50. Thank you for riding with Uber."),
    ("mom@gmail.com", "Dinner on Sunday?",
     "Hi honey, are you free for dinner this Sunday? Dad wants to fire up the grill."),
    ("orders@apple.com", "Your order has shipped",
     "Good news! Your order is on its way. Expected delivery: January 8."),
    ("coworker@company.com", "Quick question about the API",
     "Hey, do you know if we're supposed to use v2 or v3 of the payments API?"),
]


class MockMailSource:
    """In-memory mailbox with canned spam, newsletter and personal messages."""

    def __init__(self, seed: int | None = None):
        rng = random.Random(seed)
        now = datetime.now()

        def when() -> datetime:
            return now - timedelta(hours=rng.uniform(0, 7 * 24))

        self.messages: list[MailMessage] = []
        for i, (sender, subject, body) in enumerate(MOCK_SPAM):
            self.messages.append(MailMessage(f"spam-{i}@mock", sender, subject, body, when()))
        for i, (sender, subject, body, url) in enumerate(MOCK_NEWSLETTERS):
            self.messages.append(
                MailMessage(
                    f"newsletter-{i}@mock", sender, subject, body, when(),
                    headers={"List-Unsubscribe": f"<{url}>"},
                )
            )
        for i, (sender, subject, body) in enumerate(MOCK_KEEP):
            self.messages.append(MailMessage(f"keep-{i}@mock", sender, subject, body, when()))
        rng.shuffle(self.messages)

    def fetch_messages(self, limit: int = 50) -> list[MailMessage]:
        return self.messages[:limit]

    def list_folders(self) -> list[str]:
        return ["INBOX"]

    def fetch_folder(self, folder: str) -> list[MailMessage]:
        return list(self.messages) if folder == "INBOX" else []

    def move_to_trash(self, message_id: str) -> bool:
        before = len(self.messages)
        self.messages = [m for m in self.messages if m.message_id != message_id]
        return len(self.messages) < before
