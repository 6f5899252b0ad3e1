"""Upstream credential placement for the realtime relay.

Browsers cannot set arbitrary headers on a WebSocket upgrade, so realtime
providers accept the key as a negotiated sub-protocol token instead.
Sub-protocol values must be RFC 7230 tokens; a key containing anything
else cannot travel that way and is sent as a query parameter, while the
fixed capability token is still advertised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

# RFC 7230 section 3.2.6 "tchar"
_TOKEN_CHARS = frozenset(
    "!#$%&'*+-.^_`|~"
    "0123456789"
    "abcdefghijklmnopqrstuvwxyz"
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
)


def is_valid_token(value: str) -> bool:
    """True if ``value`` can be sent as a Sec-WebSocket-Protocol token."""
    return bool(value) and all(c in _TOKEN_CHARS for c in value)


@dataclass
class UpstreamAuth:
    """Where the credential ended up for one upstream connection."""

    url: str
    subprotocols: list[str] = field(default_factory=list)
    strategy: str = "subprotocol"  # or "query"


def with_query_param(url: str, name: str, value: str) -> str:
    """Return ``url`` with ``name=value`` added to its query string."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.append((name, value))
    return urlunsplit(parts._replace(query=urlencode(query)))


def select_upstream_auth(
    url: str,
    credential: str,
    capability_token: str = "realtime",
    credential_prefix: str = "openai-insecure-api-key.",
    query_param: str = "api_key",
) -> UpstreamAuth:
    """Choose between sub-protocol and query-parameter credential placement."""
    protocols = [capability_token] if capability_token else []
    if not credential:
        return UpstreamAuth(url=url, subprotocols=protocols, strategy="none")

    token = f"{credential_prefix}{credential}"
    if is_valid_token(token):
        return UpstreamAuth(url=url, subprotocols=protocols + [token], strategy="subprotocol")

    return UpstreamAuth(
        url=with_query_param(url, query_param, credential),
        subprotocols=protocols,
        strategy="query",
    )
