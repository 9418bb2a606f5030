from __future__ import annotations

from urllib.parse import parse_qsl, unquote_plus, urlencode, urlsplit, urlunsplit

REDACTION_MARKER = "[REDACTED]"

SENSITIVE_QUERY_PARAMS = frozenset(
    {
        "token",
        "access_token",
        "auth_token",
        "api_key",
        "apikey",
        "key",
        "secret",
        "password",
        "pwd",
        "pass",
        "session",
        "sessionid",
        "session_id",
        "sid",
        "oauth",
        "oauth_token",
        "oauth_signature",
        "code",
        "auth_code",
        "authorization_code",
        "client_secret",
        "refresh_token",
        "jwt",
        "bearer",
    }
)

IGNORED_URL_PREFIXES = (
    "chrome://",
    "chrome-extension://",
    "edge://",
    "about:",
    "moz-extension://",
    "safari-extension://",
    "data:",
    "javascript:",
)

UTILITY_DOMAINS = (
    "gmail.com",
    "mail.google.com",
    "outlook.com",
    "outlook.live.com",
    "web.whatsapp.com",
    "spotify.com",
    "music.youtube.com",
    "calendar.google.com",
    "keep.google.com",
    "notion.so",
    "slack.com",
    "discord.com",
    "teams.microsoft.com",
)


def _redact_query(query: str) -> str:
    parts: list[str] = []
    for piece in query.split("&"):
        if not piece:
            parts.append(piece)
            continue
        name, sep, _value = piece.partition("=")
        if unquote_plus(name).lower() in SENSITIVE_QUERY_PARAMS:
            parts.append(f"{name}={REDACTION_MARKER}")
            continue
        parts.append(f"{name}{sep}{_value}")
    return "&".join(parts)


def redact_url(url: str) -> str:
    """Replace values of sensitive query parameters with the redaction marker.

    Only the matching parameters are rewritten; everything else in the URL is
    kept byte-for-byte, so applying this twice yields the same string.
    """

    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.query:
        return url
    redacted = _redact_query(parts.query)
    if redacted == parts.query:
        return url
    return urlunsplit(parts._replace(query=redacted))


def should_ignore_url(url: str) -> bool:
    lowered = url.strip().lower()
    return any(lowered.startswith(prefix) for prefix in IGNORED_URL_PREFIXES)


def extract_domain(url: str) -> str | None:
    try:
        hostname = urlsplit(url).hostname
    except ValueError:
        return None
    return hostname or None


def is_utility_tab(url: str) -> bool:
    domain = extract_domain(url)
    if not domain:
        return False
    return any(domain == util or domain.endswith(f".{util}") for util in UTILITY_DOMAINS)


def normalize_url(url: str) -> str:
    """Drop the fragment and sort query parameters for comparison."""

    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme:
        return url
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    query = urlencode(sorted(pairs, key=lambda item: item[0]), safe="[]")
    return urlunsplit(parts._replace(query=query, fragment=""))
