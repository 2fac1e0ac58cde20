"""
ClawdBot Gateway protocol client.
"""
from .client import CallState, GatewayClient, ProgressCallback
from .errors import (
    AgentError,
    GatewayConnectionError,
    GatewayError,
    GatewayTimeout,
    HandshakeError,
    ProtocolError,
)
from .protocol import Envelope, GatewayProtocol, MessageType, StreamKind

__all__ = [
    'GatewayClient',
    'CallState',
    'ProgressCallback',
    'GatewayProtocol',
    'Envelope',
    'MessageType',
    'StreamKind',
    'GatewayError',
    'GatewayConnectionError',
    'HandshakeError',
    'ProtocolError',
    'AgentError',
    'GatewayTimeout',
]
