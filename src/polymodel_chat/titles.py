DEFAULT_TITLE = "New Chat"
IMPORTED_TITLE = "Imported Chat"

MAX_TITLE_CHARS = 36
_TITLE_WORDS = 4
_ELLIPSIS = "..."


def derive_title(text: str | None, fallback: str = DEFAULT_TITLE) -> str:
    """Build a short session title from the first few words of ``text``."""
    words = (text or "").split()
    if not words:
        return fallback

    title = " ".join(words[:_TITLE_WORDS])
    if len(words) > _TITLE_WORDS:
        title += _ELLIPSIS
    if len(title) > MAX_TITLE_CHARS:
        title = title[: MAX_TITLE_CHARS - len(_ELLIPSIS)] + _ELLIPSIS
    return title
