# cadence/core/utils/url.py
"""URL helpers for safe logging."""

from __future__ import annotations

from urllib.parse import urlparse, urlunparse


def mask_database_url(url: str) -> str:
    """Replace the password of a database URL with '***' before it is logged.

    URLs without a password are returned unchanged; unparsable URLs fall back
    to masking everything between the last ':' before '@' and the '@'.
    """
    try:
        parsed = urlparse(url)
        password = parsed.password
    except ValueError:
        if '@' not in url:
            return url
        credentials, host = url.rsplit('@', 1)
        return f"{credentials.rsplit(':', 1)[0]}:***@{host}"

    if not password:
        return url
    netloc = parsed.netloc.replace(f':{password}@', ':***@', 1)
    return urlunparse(parsed._replace(netloc=netloc))
