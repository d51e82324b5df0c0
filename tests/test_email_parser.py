"""Tests for email parser module."""

import pytest
from email.message import EmailMessage

from mailsweep.email_parser import EmailParser


class TestEmailParser:
    """Tests for EmailParser."""

    @pytest.fixture
    def parser(self):
        return EmailParser(max_body_chars=200)

    @pytest.fixture
    def simple_message(self):
        msg = EmailMessage()
        msg["From"] = "Sender Name <sender@example.com>"
        msg["To"] = "recipient@example.com"
        msg["Subject"] = "Test Subject"
        msg["Date"] = "Mon, 1 Jan 2024 12:00:00 +0000"
        msg["Message-ID"] = "<test123@example.com>"
        msg.set_content("This is the body of the email.")
        return msg

    @pytest.fixture
    def newsletter_message(self):
        msg = EmailMessage()
        msg["From"] = "newsletter@company.com"
        msg["To"] = "user@example.com"
        msg["Subject"] = "Weekly Newsletter"
        msg["List-Id"] = "<newsletter.company.com>"
        msg["List-Unsubscribe"] = "<https://company.com/unsubscribe>"
        msg["List-Unsubscribe-Post"] = "List-Unsubscribe=One-Click"
        msg["Precedence"] = "bulk"
        msg["X-Mailer"] = "BulkSender 3.1"
        msg["Message-ID"] = "<news456@company.com>"
        msg.set_content("Newsletter content here.")
        msg.add_alternative("<p>Newsletter <b>HTML</b> content</p>", subtype="html")
        return msg

    def test_parse_simple_message(self, parser, simple_message):
        result = parser.parse(simple_message.as_bytes(), fallback_id="uid-INBOX-1")

        assert result.message_id == "<test123@example.com>"
        assert result.from_addr == "sender@example.com"
        assert result.subject == "Test Subject"
        assert result.body == "This is the body of the email."
        assert result.date.year == 2024
        assert result.headers == {}

    def test_keeps_list_headers_only(self, parser, newsletter_message):
        result = parser.parse(newsletter_message.as_bytes(), fallback_id="uid-INBOX-2")

        assert result.headers == {
            "List-Unsubscribe": "<https://company.com/unsubscribe>",
            "List-Unsubscribe-Post": "List-Unsubscribe=One-Click",
            "List-Id": "<newsletter.company.com>",
            "Precedence": "bulk",
        }

    def test_prefers_plain_text(self, parser, newsletter_message):
        result = parser.parse(newsletter_message.as_bytes(), fallback_id="uid-INBOX-2")
        assert result.body == "Newsletter content here."

    def test_html_only_keeps_links(self, parser):
        msg = EmailMessage()
        msg["From"] = "news@shop.example"
        msg["Subject"] = "Sale"
        msg["Message-ID"] = "<sale@shop.example>"
        msg.set_content(
            "<html><style>p {color: red}</style><body><p>Big sale &amp; more</p>"
            '<a href="https://shop.example/unsubscribe?u=1">Unsubscribe</a></body></html>',
            subtype="html",
        )

        result = parser.parse(msg.as_bytes(), fallback_id="uid-INBOX-3")

        assert "Big sale & more" in result.body
        assert "https://shop.example/unsubscribe?u=1" in result.body
        assert "color" not in result.body

    def test_missing_message_id_uses_fallback(self, parser):
        msg = EmailMessage()
        msg["From"] = "a@example.com"
        msg["Subject"] = "No id"
        msg.set_content("hello")

        result = parser.parse(msg.as_bytes(), fallback_id="uid-Archive-77")
        assert result.message_id == "uid-Archive-77"

    def test_missing_subject_and_sender(self, parser):
        result = parser.parse(b"\r\nJust a body", fallback_id="uid-INBOX-4")
        assert result.subject == "(no subject)"
        assert result.from_addr == "unknown"
        assert result.date is None

    def test_encoded_subject_decoded(self, parser):
        msg = EmailMessage()
        msg["From"] = "a@example.com"
        msg["Subject"] = "Café menu"
        msg["Message-ID"] = "<enc@example.com>"
        msg.set_content("hello")

        result = parser.parse(msg.as_bytes(), fallback_id="x")
        assert result.subject == "Café menu"

    def test_bad_date_ignored(self, parser, simple_message):
        simple_message.replace_header("Date", "not a date")
        result = parser.parse(simple_message.as_bytes(), fallback_id="x")
        assert result.date is None

    def test_body_truncated_and_collapsed(self, parser):
        msg = EmailMessage()
        msg["From"] = "sender@example.com"
        msg["Subject"] = "Long email"
        msg["Message-ID"] = "<long@example.com>"
        msg.set_content("word   \n\n " * 300)

        result = parser.parse(msg.as_bytes(), fallback_id="x")
        assert len(result.body) <= parser.max_body_chars
        assert "  " not in result.body

    def test_attachments_skipped(self, parser):
        msg = EmailMessage()
        msg["From"] = "sender@example.com"
        msg["Subject"] = "Report"
        msg["Message-ID"] = "<att@example.com>"
        msg.set_content("See attached.")
        msg.add_attachment(b"secret,data", maintype="text", subtype="plain", filename="data.csv")

        result = parser.parse(msg.as_bytes(), fallback_id="x")
        assert result.body == "See attached."
