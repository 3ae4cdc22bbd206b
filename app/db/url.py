from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_POSTGRES_SCHEMES = {"postgres", "postgresql", "postgresql+asyncpg", "postgresql+psycopg"}
_TRUTHY_SSL = {"1", "true", "yes", "on"}
_DISABLED_SSL = {"0", "false", "no", "off", "disable"}


def normalize_database_url(url: str, *, driver: str = "asyncpg") -> str:
    """Pin a Postgres URL to ``driver`` and translate ``ssl``/``sslmode`` for it.

    asyncpg understands ``ssl=<mode>``; psycopg (used by migrations) wants ``sslmode``.
    Non-Postgres URLs are returned untouched.
    """
    url = (url or "").strip()
    if not url:
        return url

    parts = urlsplit(url)
    if parts.scheme not in _POSTGRES_SCHEMES:
        return url

    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    mode = None
    for key in list(query):
        if key.lower() in {"ssl", "sslmode"}:
            value = query.pop(key).lower().strip()
            if value in _DISABLED_SSL:
                mode = "disable"
            elif value in _TRUTHY_SSL:
                mode = "require"
            else:
                mode = value

    if mode is not None:
        query["ssl" if driver == "asyncpg" else "sslmode"] = mode

    new_query = urlencode(query, doseq=True)
    return urlunsplit((f"postgresql+{driver}", parts.netloc, parts.path, new_query, parts.fragment))
