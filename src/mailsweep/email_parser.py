"""Parsing of raw RFC 822 messages into MailMessage objects."""

from __future__ import annotations

import email
import html
import logging
import re
from email.header import decode_header, make_header
from email.message import Message
from email.utils import parseaddr, parsedate_to_datetime

from mailsweep.models import MailMessage

logger = logging.getLogger(__name__)

# Headers carried on the queue item; the unsubscribe extractor needs these.
KEPT_HEADERS = ("List-Unsubscribe", "List-Unsubscribe-Post", "List-Id", "Precedence")


class EmailParser:
    """Parser for extracting the fields the classifier works on."""

    def __init__(self, max_body_chars: int = 500):
        """Initialize the parser."""
        self.max_body_chars = max_body_chars

    def parse(self, raw_email: bytes, fallback_id: str) -> MailMessage:
        """Parse raw message bytes.

        Args:
            raw_email: RFC 822 message as fetched from the server
            fallback_id: Used when the message has no Message-ID header
        """
        message = email.message_from_bytes(raw_email)

        message_id = self._decode_header(message.get("Message-ID")).strip() or fallback_id

        _, from_addr = parseaddr(self._decode_header(message.get("From")))

        date_str = message.get("Date", "")
        try:
            date = parsedate_to_datetime(date_str) if date_str else None
        except (ValueError, TypeError):
            date = None

        headers = {}
        for name in KEPT_HEADERS:
            value = message.get(name)
            if value:
                headers[name] = self._decode_header(value)

        body = self._extract_text_content(message)
        body = re.sub(r"\s+", " ", body).strip()[: self.max_body_chars]

        return MailMessage(
            message_id=message_id,
            from_addr=from_addr or "unknown",
            subject=self._decode_header(message.get("Subject")) or "(no subject)",
            body=body,
            date=date,
            headers=headers,
        )

    def _decode_header(self, value: str | None) -> str:
        """Safely decode an email header."""
        if not value:
            return ""
        try:
            decoded = decode_header(value)
            return str(make_header(decoded))
        except (LookupError, UnicodeDecodeError, ValueError):
            # Fallback for malformed headers
            if isinstance(value, bytes):
                return value.decode("utf-8", errors="replace")
            return str(value)

    def _extract_text_content(self, message: Message) -> str:
        """Extract text content, preferring text/plain over HTML."""
        if not message.is_multipart():
            content_type = message.get_content_type()
            if content_type == "text/plain":
                return self._decode_payload(message)
            if content_type == "text/html":
                return self._html_to_text(self._decode_payload(message))
            return ""

        html_part = None
        for part in message.walk():
            if "attachment" in str(part.get("Content-Disposition", "")):
                continue
            content_type = part.get_content_type()
            if content_type == "text/plain":
                return self._decode_payload(part)
            if content_type == "text/html" and html_part is None:
                html_part = part

        if html_part is not None:
            return self._html_to_text(self._decode_payload(html_part))
        return ""

    def _decode_payload(self, part: Message) -> str:
        """Safely decode message payload."""
        payload = part.get_payload(decode=True)
        if payload is None:
            return ""
        if isinstance(payload, bytes):
            charset = part.get_content_charset() or "utf-8"
            try:
                return payload.decode(charset, errors="replace")
            except LookupError:
                logger.debug(f"Unknown charset {charset!r}, decoding as utf-8")
                return payload.decode("utf-8", errors="replace")
        return str(payload)

    def _html_to_text(self, html_content: str) -> str:
        """Simple HTML to text conversion that keeps link targets visible."""
        text = re.sub(
            r"<(script|style)[^>]*>.*?</\1>", "", html_content, flags=re.DOTALL | re.IGNORECASE
        )
        # Keep hrefs so body unsubscribe links survive tag stripping
        text = re.sub(
            r"<a\s[^>]*href=[\"']([^\"']+)[\"'][^>]*>", r" \1 ", text, flags=re.IGNORECASE
        )
        text = re.sub(r"<[^>]+>", " ", text)
        text = html.unescape(text)
        text = re.sub(r"\s+", " ", text)
        return text.strip()
