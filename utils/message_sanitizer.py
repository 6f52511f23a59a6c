"""
Message sanitization to prevent XSS in clients that render message text.
Strips HTML tags and control characters from user supplied content.
"""

import html
import logging

import bleach

from core import config

logger = logging.getLogger(__name__)

_ALLOWED_CONTROL_CHARS = ("\n", "\r", "\t")

# Entity-encoded markup resurfaces after unescaping; a few passes settle it
_MAX_STRIP_PASSES = 3


def _strip_markup(text: str) -> str:
    # tags=[] allows no markup at all; strip=True drops tags instead of escaping them.
    # bleach still escapes &, < and > in what remains, and we store plain text.
    return html.unescape(bleach.clean(text, tags=[], strip=True))


def sanitize_text(text: str) -> str:
    """
    Strip HTML tags and non-printable characters from ``text``.

    Args:
        text: Raw message content or group name from a user

    Returns:
        Cleaned plain text, whitespace-trimmed
    """
    if not text:
        return ""

    cleaned = text.strip()
    if not config.MESSAGE_SANITIZE_ENABLED:
        return cleaned

    sanitized = cleaned
    for _ in range(_MAX_STRIP_PASSES):
        stripped = _strip_markup(sanitized)
        if stripped == sanitized:
            break
        sanitized = stripped
    else:
        # Still nested after the last pass: keep it escaped
        sanitized = bleach.clean(sanitized, tags=[], strip=True)
    sanitized = "".join(
        char for char in sanitized if char.isprintable() or char in _ALLOWED_CONTROL_CHARS
    )
    if sanitized != cleaned:
        logger.debug("Sanitized user content (%d -> %d chars)", len(cleaned), len(sanitized))
    return sanitized.strip()
