"""URL normalization, hashing and the documentation-site allow-list."""

import hashlib
import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

DEFAULT_PORTS = {"http": 80, "https": 443}

# Query parameters that never change page content
TRACKING_PARAMS = {"utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content", "ref"}

DOCUMENTATION_PATTERNS = [
    # docs.*, developer.*, learn.* ...
    re.compile(r"^https://(docs?|developer|dev|learn|help|api|guide|wiki|devcenter)\.[^/]+\.[^/]+/"),
    # /docs, /guide, /learn ... paths
    re.compile(
        r"^https://([^/]+\.)?[^/]+/(docs?|documentation|api[-_]?docs?|guides?|learn|help|stable|latest)(/|$)"
    ),
    # vuejs.org, kotlinlang.org, ruby-doc.org ...
    re.compile(r"^https://[^/]+(js|lang|py|-doc)\.(org|com)(/|$)"),
    # GitHub Pages
    re.compile(r"^https://[^/]+\.github\.io/"),
]

ALLOWED_EXCEPTIONS = [
    "https://swiftpackageindex.com/",
    "https://flask.palletsprojects.com",
    "https://mui.com/material-ui",
    "https://pip.pypa.io/en/stable",
    "https://www.php.net/docs.php",
    "https://rubydoc.info/",
    "https://tauri.app/",
    "https://deepwiki.com/",
]


def normalize_url(url: str) -> str:
    """Canonical form used for cache keys.

    Lowercases scheme and host, drops default ports, fragments and tracking
    parameters, sorts the query string and strips a trailing slash.
    """
    url = url.strip()
    try:
        parts = urlsplit(url)
    except ValueError:
        # e.g. an unbalanced IPv6 bracket; key on the raw string
        return url
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    try:
        port = parts.port
    except ValueError:
        # Out-of-range or non-numeric port: keep the authority as written
        host = parts.netloc.rpartition("@")[2].lower()
        port = None
    if port and port != DEFAULT_PORTS.get(scheme):
        host = f"{host}:{port}"

    path = parts.path or "/"
    if len(path) > 1:
        path = path.rstrip("/") or "/"

    query = sorted(
        (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k not in TRACKING_PARAMS
    )
    return urlunsplit((scheme, host, path, urlencode(query), ""))


def url_hash(url: str) -> str:
    """128-bit hex digest of the normalized URL."""
    return hashlib.sha256(normalize_url(url).encode()).hexdigest()[:32]


def is_valid_documentation_url(url: object) -> bool:
    """Allow-list check for crawl start URLs."""
    if not isinstance(url, str) or not url:
        return False
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    if parts.scheme != "https" or not parts.netloc:
        return False

    # Patterns expect at least a trailing slash after the host
    candidate = url if parts.path else url + "/"
    if any(candidate.startswith(prefix) for prefix in ALLOWED_EXCEPTIONS):
        return True
    return any(p.match(candidate) for p in DOCUMENTATION_PATTERNS)
