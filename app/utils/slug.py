import re
import unicodedata

_slug_re = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    s = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    return _slug_re.sub("-", s.strip().lower()).strip("-")


def slugify_with_fallback(text: str, fallback: str = "player") -> str:
    """Empty or all-digit slugs are replaced by fallback."""
    s = slugify(text or "")
    if not s or s.isnumeric():
        return fallback
    return s
