from __future__ import annotations

import re
from typing import Optional

# Tried in priority order: a bare key anywhere in the text, then a key that
# follows the /browse/ permalink segment. Any permalink also holds a bare key,
# so the second pattern never matches text the first one missed.
_TICKET_KEY_PATTERNS = (
    re.compile(r"([A-Z][A-Z0-9]*-\d+)"),
    re.compile(r"browse/([A-Z][A-Z0-9]*-\d+)"),
)


def extract_ticket_key(text: object) -> Optional[str]:
    """Return the first Jira issue key found in free text, or None.

    Accepts bare keys ("TECH-456") and issue permalinks
    ("https://host/browse/TECH-456"). Never raises.
    """
    if not isinstance(text, str) or not text:
        return None

    for pattern in _TICKET_KEY_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None
