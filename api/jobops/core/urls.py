import hashlib
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

TRACKING_KEYS = {"ref", "fbclid", "gclid"}


def _is_tracking_param(key: str) -> bool:
    lowered = key.lower()
    return lowered.startswith("utm_") or lowered in TRACKING_KEYS


def normalize_url(raw_url: str) -> str:
    """Conservative URL normalization used for posting identity."""
    parsed = urlparse(raw_url.strip())

    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()

    if ":" in netloc:
        host, port = netloc.rsplit(":", maxsplit=1)
        if (scheme == "http" and port == "80") or (scheme == "https" and port == "443"):
            netloc = host

    path = parsed.path or "/"
    path = path.rstrip("/") or "/"

    filtered_query_pairs = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(key)
    ]
    filtered_query_pairs.sort(key=lambda pair: pair[0])
    query = urlencode(filtered_query_pairs, doseq=True)

    return urlunparse((scheme, netloc, path, "", query, ""))


def is_absolute_http_url(raw_url: str) -> bool:
    parsed = urlparse(raw_url.strip())
    return parsed.scheme.lower() in {"http", "https"} and bool(parsed.netloc)


def dedupe_key(*, source: str, external_url: str | None, external_id: str | None) -> str | None:
    """Canonical identity of a posting across sources.

    URLs win over source ids; ids are only comparable within one source.
    """
    if external_url:
        return f"url:{normalize_url(external_url).lower()}"
    if external_id:
        return f"{source}:{external_id.strip()}"
    return None


def canonical_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
