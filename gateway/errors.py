"""Gateway call error hierarchy."""
from __future__ import annotations


class GatewayError(Exception):
    """Base error for a failed Gateway call.

    ``str(err)`` is the detail shown to chat users, so subclasses keep the
    Gateway-supplied message untouched when there is one.
    """


class GatewayConnectionError(GatewayError):
    """Dial failed, or the socket dropped before the call finished."""


class HandshakeError(GatewayError):
    """The ``connect`` request was rejected."""


class ProtocolError(GatewayError):
    """A frame could not be decoded into the expected shape."""


class AgentError(GatewayError):
    """The agent rejected the request or reported a run error."""


class GatewayTimeout(GatewayError):
    """No terminal outcome before the call timed out."""
