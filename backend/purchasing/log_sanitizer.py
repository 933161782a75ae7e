"""
Log sanitizing for free-text values (reasons, comments, remarks).

Replaces line breaks and control characters so a user-entered value cannot
forge additional audit log lines, and truncates long values.

Usage:
    from purchasing.log_sanitizer import sanitize_for_log

    logger.info("purchase_order.cancelled po_no=%s reason=%s", po_no, sanitize_for_log(reason))
"""

import re
from typing import Any

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_for_log(value: Any, max_length: int = 200) -> str:
    """
    Sanitize a value for safe inclusion in log messages.

    Examples:
        >>> sanitize_for_log("line1\\nline2")
        'line1[LF]line2'

        >>> sanitize_for_log(None)
        '[None]'
    """
    if value is None:
        return "[None]"

    s = str(value)
    s = s.replace("\r\n", "[CRLF]")
    s = s.replace("\n", "[LF]")
    s = s.replace("\r", "[CR]")
    s = _CONTROL_CHARS.sub("[CTRL]", s)
    s = s.replace("\t", "[TAB]")

    if len(s) > max_length:
        s = s[:max_length] + "...(truncated)"
    return s
