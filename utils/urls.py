import urllib.parse
from typing import Optional


def normalize_destination(raw_url: str, base_url: str) -> Optional[str]:
    """
    Validates and normalizes a destination reference.
    - Absolute http(s) URLs are kept as-is.
    - Site-relative paths ("/pricing") are joined onto base_url.
    - Max length 2048.
    - Rejects whitespace-only or empty strings and non-http schemes
      (javascript:, data:, ...).

    Returns:
        Normalized URL string or None if invalid.
    """
    if not raw_url or not raw_url.strip():
        return None

    url = raw_url.strip()

    if len(url) > 2048:
        return None

    if url.startswith("/") and not url.startswith("//"):
        url = f"{base_url}{url}"

    try:
        parsed = urllib.parse.urlsplit(url)
    except ValueError:
        return None

    if parsed.scheme.lower() not in ("http", "https"):
        return None

    if not parsed.netloc:
        return None

    return url


def merge_query_params(destination_url: str, incoming_params: dict, strip=()) -> tuple:
    """
    Merge incoming query params into destination_url.

    Destination params win on key collision so the click source cannot
    override what the site owner configured. Keys in `strip` are dropped
    from the incoming side first.

    Returns:
        (merged_params, destination_params, incoming_params) as ordered dicts.
    """
    parts = urllib.parse.urlsplit(destination_url)
    destination_params = dict(urllib.parse.parse_qsl(parts.query, keep_blank_values=True))
    incoming = {k: v for k, v in incoming_params.items() if k not in strip}

    merged = dict(incoming)
    merged.update(destination_params)
    return merged, destination_params, incoming


def with_query(url: str, params: dict) -> str:
    """Replace the query string of url with params (fragment preserved)."""
    parts = urllib.parse.urlsplit(url)
    query = urllib.parse.urlencode(params) if params else ""
    return urllib.parse.urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def append_fragment(url: str, key: str, value: str) -> str:
    """Append key=value to the URL fragment, keeping any fragment already there."""
    parts = urllib.parse.urlsplit(url)
    pair = f"{key}={value}"
    fragment = f"{parts.fragment}&{pair}" if parts.fragment else pair
    return urllib.parse.urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, fragment))


def path_has_prefix(url: str, prefix: str) -> bool:
    """True if the URL path is under /<prefix>/ (redirect-loop guard)."""
    path = urllib.parse.urlsplit(url).path or ""
    return path.lstrip("/").startswith(f"{prefix.strip('/')}/")
