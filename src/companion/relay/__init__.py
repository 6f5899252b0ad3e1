"""Full-duplex relay between a browser and an upstream realtime voice API.

Data flow::

    Browser WebSocket ⇄ RelaySession ⇄ UpstreamConnection (websockets)

Lifecycle events from the upstream (error, close) are surfaced to the
browser as ``proxy.*`` JSON frames.
"""

from companion.relay.auth import UpstreamAuth, is_valid_token, select_upstream_auth
from companion.relay.session import RelaySession, RelayState

__all__ = [
    "RelaySession",
    "RelayState",
    "UpstreamAuth",
    "is_valid_token",
    "select_upstream_auth",
]
