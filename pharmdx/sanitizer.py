from typing import Optional

import bleach


def sanitize_text(value: Optional[str], limit: Optional[int] = None) -> str:
    """Strip HTML from reviewer or model supplied text, optionally truncating.

    Free text is persisted and later rendered by other systems, so no markup
    is kept.
    """
    if not value:
        return ""
    cleaned = bleach.clean(value, tags=[], attributes={}, strip=True).strip()
    return cleaned[:limit] if limit is not None else cleaned
