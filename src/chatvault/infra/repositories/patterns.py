"""LIKE/ILIKE pattern helpers for user-supplied search text."""


def contains_pattern(text: str) -> str:
    """Substring pattern matching text literally.

    Escapes %, _ and the backslash, which is Postgres's default LIKE escape
    character.
    """
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"
