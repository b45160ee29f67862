from __future__ import annotations

from urllib.parse import urlsplit

from .errors import DisallowedHost, InvalidUrl

ALLOWED_HOSTS = frozenset({"youtube.com", "youtu.be", "m.youtube.com", "music.youtube.com"})


def validate_url(raw: str) -> str:
    """Return ``raw`` (surrounding whitespace trimmed) if it is an absolute URL on an allowed host.

    Raises ``InvalidUrl`` when it cannot be parsed and ``DisallowedHost`` when the
    host (lower-cased, leading ``www.`` stripped) is not in ``ALLOWED_HOSTS``.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidUrl("URL is required")
    url = raw.strip()
    try:
        parts = urlsplit(url)
        parts.port  # raises ValueError for a malformed port
    except ValueError as exc:
        raise InvalidUrl(f"Invalid URL: {exc}") from exc

    host = (parts.hostname or "").lower()
    if not parts.scheme or not host:
        raise InvalidUrl("Invalid URL")

    if host.startswith("www."):
        host = host[len("www."):]
    if host not in ALLOWED_HOSTS:
        raise DisallowedHost(f"Only YouTube links are allowed, got host '{host}'")
    return url
