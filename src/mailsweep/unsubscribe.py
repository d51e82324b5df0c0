"""Unsubscribe link extraction from message headers and body."""

from __future__ import annotations

import re
from typing import Mapping

from mailsweep.models import UnsubscribeInfo, UnsubscribeMethod

HEADER_HTTP_PATTERN = re.compile(r"<(https?://[^>]+)>")
HEADER_MAILTO_PATTERN = re.compile(r"<(mailto:[^>]+)>")

# Tried in order; the first pattern with a match in the body wins.
BODY_PATTERNS = [
    re.compile(r"(https?://[^\s<>\"']+unsubscribe[^\s<>\"']*)", re.IGNORECASE),
    re.compile(r"(https?://[^\s<>\"']+optout[^\s<>\"']*)", re.IGNORECASE),
    re.compile(r"(https?://[^\s<>\"']+opt-out[^\s<>\"']*)", re.IGNORECASE),
    re.compile(r"(https?://[^\s<>\"']+remove[^\s<>\"']*)", re.IGNORECASE),
    re.compile(r"(https?://[^\s<>\"']+preferences[^\s<>\"']*)", re.IGNORECASE),
]

# Anchored on a keyword in the text right before the URL, e.g.
# "click here to unsubscribe: http://a.b/c".
BODY_KEYWORD_PATTERN = re.compile(
    r"(?:unsubscribe|optout|opt-out|remove|preferences)[^\n<>]{0,40}?(https?://[^\s<>\"']+)",
    re.IGNORECASE,
)


def _get_header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                value = candidate
                break
    return value or ""


def extract_unsubscribe_info(headers: Mapping[str, str], body: str) -> UnsubscribeInfo:
    """Derive the unsubscribe action for a message.

    Priority:
        1. ``List-Unsubscribe`` HTTP(S) URL -> one-click
        2. ``List-Unsubscribe`` mailto: URL -> mailto
        3. First keyword-anchored URL in the body -> link
        4. Nothing found -> none
    """
    list_unsubscribe = _get_header(headers, "List-Unsubscribe")

    if list_unsubscribe:
        url_match = HEADER_HTTP_PATTERN.search(list_unsubscribe)
        if url_match:
            return UnsubscribeInfo(url=url_match.group(1), method=UnsubscribeMethod.ONE_CLICK)

        mailto_match = HEADER_MAILTO_PATTERN.search(list_unsubscribe)
        if mailto_match:
            return UnsubscribeInfo(url=mailto_match.group(1), method=UnsubscribeMethod.MAILTO)

    body = body or ""
    for pattern in BODY_PATTERNS:
        match = pattern.search(body)
        if match:
            return UnsubscribeInfo(url=match.group(1), method=UnsubscribeMethod.LINK)

    match = BODY_KEYWORD_PATTERN.search(body)
    if match:
        return UnsubscribeInfo(url=match.group(1), method=UnsubscribeMethod.LINK)

    return UnsubscribeInfo(url=None, method=UnsubscribeMethod.NONE)
