"""Tests for unsubscribe extraction."""

from mailsweep.models import UnsubscribeMethod
from mailsweep.unsubscribe import extract_unsubscribe_info


class TestHeaderExtraction:
    def test_http_header_is_one_click(self):
        info = extract_unsubscribe_info(
            {"List-Unsubscribe": "<https://news.example.com/unsub?id=1>"}, ""
        )
        assert info.url == "https://news.example.com/unsub?id=1"
        assert info.method == UnsubscribeMethod.ONE_CLICK

    def test_http_preferred_over_mailto(self):
        info = extract_unsubscribe_info(
            {"List-Unsubscribe": "<mailto:leave@example.com>, <https://example.com/u>"}, ""
        )
        assert info.url == "https://example.com/u"
        assert info.method == UnsubscribeMethod.ONE_CLICK

    def test_mailto_only(self):
        info = extract_unsubscribe_info(
            {"List-Unsubscribe": "<mailto:leave@example.com?subject=unsubscribe>"}, ""
        )
        assert info.url == "mailto:leave@example.com?subject=unsubscribe"
        assert info.method == UnsubscribeMethod.MAILTO

    def test_header_name_case_insensitive(self):
        info = extract_unsubscribe_info({"list-unsubscribe": "<https://example.com/u>"}, "")
        assert info.method == UnsubscribeMethod.ONE_CLICK

    def test_header_wins_over_body(self):
        info = extract_unsubscribe_info(
            {"List-Unsubscribe": "<https://example.com/header>"},
            "Unsubscribe here: https://example.com/unsubscribe",
        )
        assert info.url == "https://example.com/header"

    def test_unbracketed_header_falls_through_to_body(self):
        info = extract_unsubscribe_info(
            {"List-Unsubscribe": "https://example.com/u"},
            "Manage: https://example.com/optout/123",
        )
        assert info.url == "https://example.com/optout/123"
        assert info.method == UnsubscribeMethod.LINK


class TestBodyExtraction:
    def test_keyword_in_url(self):
        info = extract_unsubscribe_info({}, "Bye: https://example.com/unsubscribe?u=5 thanks")
        assert info.url == "https://example.com/unsubscribe?u=5"
        assert info.method == UnsubscribeMethod.LINK

    def test_pattern_order_beats_position(self):
        body = (
            "Manage https://example.com/preferences or leave "
            "https://example.com/unsubscribe"
        )
        info = extract_unsubscribe_info({}, body)
        assert info.url == "https://example.com/unsubscribe"

    def test_keyword_before_plain_url(self):
        info = extract_unsubscribe_info({}, "click here to unsubscribe: http://a.b/c")
        assert info.url == "http://a.b/c"
        assert info.method == UnsubscribeMethod.LINK

    def test_unrelated_links_ignored(self):
        info = extract_unsubscribe_info({}, "Read more at https://example.com/article/42")
        assert info.url is None
        assert info.method == UnsubscribeMethod.NONE

    def test_nothing_found(self):
        info = extract_unsubscribe_info({}, "")
        assert info.url is None
        assert info.method == UnsubscribeMethod.NONE
