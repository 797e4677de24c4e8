"""Canonical key normalization for presentation URLs."""

from urllib.parse import urlsplit, urlunsplit

DEFAULT_PORTS = {"http": 80, "https": 443}


def canonicalize_url(raw: str) -> str:
    """Collapse superficially different URLs for the same document to one key.

    Lowercases scheme and host, drops default ports, userinfo, query and
    fragment, squashes repeated slashes and strips the trailing slash.
    The path keeps its case. Raises ValueError for anything that is not an
    absolute http(s) URL.
    """
    value = (raw or "").strip()
    if not value:
        raise ValueError("canonical key is empty")

    parts = urlsplit(value)
    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise ValueError(f"unsupported canonical key scheme: {parts.scheme or '(none)'}")

    host = (parts.hostname or "").lower().rstrip(".")
    if not host:
        raise ValueError("canonical key has no host")

    try:
        port = parts.port
    except ValueError as e:
        raise ValueError(f"invalid port in canonical key: {e}") from e

    netloc = host
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{host}:{port}"

    segments = [s for s in parts.path.split("/") if s]
    path = "/" + "/".join(segments) if segments else ""

    return urlunsplit((scheme, netloc, path, "", ""))
