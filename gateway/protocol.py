"""
Gateway protocol definition - ClawdBot Gateway WebSocket protocol (v3).

Frames are decoded in two phases: first the fixed-shape :class:`Envelope`,
then the payload is reinterpreted according to the already-known
``id`` / ``event`` / ``stream`` tag.
"""
from __future__ import annotations

import json
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ProtocolError

PROTOCOL_VERSION = 3
CLIENT_ID = "gateway-client"
CLIENT_VERSION = "0.2.0"
CLIENT_MODE = "backend"
ROLE = "operator"
SCOPES = ["operator.read", "operator.write", "operator.admin"]
LOCALE = "zh-CN"
USER_AGENT = "clawdbot-bridge-python"

# Correlation ids are literals: every call owns its connection, so at most
# one request per id is ever outstanding on a socket.
CONNECT_REQUEST_ID = "connect"
AGENT_REQUEST_ID = "agent"
RESET_REQUEST_ID = "reset"

M = TypeVar("M", bound=BaseModel)


class MessageType(str, Enum):
    """High-level frame type."""
    REQUEST = "req"
    RESPONSE = "res"
    EVENT = "event"


class RequestMethod(str, Enum):
    CONNECT = "connect"
    AGENT = "agent"
    SESSIONS_RESET = "sessions.reset"


class EventName(str, Enum):
    CONNECT_CHALLENGE = "connect.challenge"
    AGENT = "agent"


class StreamKind(str, Enum):
    """Sub-stream of an ``agent`` event."""
    ASSISTANT = "assistant"
    THOUGHT = "thought"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    LIFECYCLE = "lifecycle"


class LifecyclePhase(str, Enum):
    END = "end"
    ERROR = "error"


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ============ Envelope ============

class ErrorInfo(_WireModel):
    message: str = ""


class Envelope(_WireModel):
    """Fixed-shape outer frame shared by requests, responses and events."""
    type: MessageType
    id: Optional[str] = None
    method: Optional[str] = None
    params: Optional[Dict[str, Any]] = None
    ok: Optional[bool] = None
    payload: Optional[Any] = None
    error: Optional[ErrorInfo] = None
    event: Optional[str] = None

    @field_validator("error", mode="before")
    @classmethod
    def _coerce_error(cls, v: Any) -> Any:
        if isinstance(v, str):
            return {"message": v}
        return v

    def is_event(self, name: EventName) -> bool:
        return self.type == MessageType.EVENT and self.event == name.value

    def is_response(self, request_id: str) -> bool:
        return self.type == MessageType.RESPONSE and self.id == request_id

    @property
    def succeeded(self) -> bool:
        # ``ok`` is omitted on failure by some gateway builds
        return self.ok is True

    def error_message(self, default: str) -> str:
        if self.error and self.error.message:
            return self.error.message
        return default


# ============ Request params ============

class ClientInfo(_WireModel):
    id: str = CLIENT_ID
    version: str = CLIENT_VERSION
    platform: str = "linux"
    mode: str = CLIENT_MODE


class AuthInfo(_WireModel):
    token: str = ""


class ConnectParams(_WireModel):
    """Handshake parameters sent in answer to ``connect.challenge``."""
    min_protocol: int = Field(default=PROTOCOL_VERSION, alias="minProtocol")
    max_protocol: int = Field(default=PROTOCOL_VERSION, alias="maxProtocol")
    client: ClientInfo = Field(default_factory=ClientInfo)
    role: str = ROLE
    scopes: List[str] = Field(default_factory=lambda: list(SCOPES))
    auth: AuthInfo = Field(default_factory=AuthInfo)
    locale: str = LOCALE
    user_agent: str = Field(default=USER_AGENT, alias="userAgent")


class AgentParams(_WireModel):
    message: str
    agent_id: str = Field(alias="agentId")
    session_key: str = Field(alias="sessionKey")
    deliver: bool = True
    # Fresh per logical call so the Gateway can drop retried submissions.
    idempotency_key: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="idempotencyKey")


class ResetParams(_WireModel):
    key: str


class RequestMessage(_WireModel):
    type: MessageType = MessageType.REQUEST
    id: str
    method: RequestMethod
    params: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


# ============ Payloads ============

class AgentAccepted(_WireModel):
    """Payload of the ``agent`` response once the run is accepted."""
    run_id: Optional[str] = Field(default=None, alias="runId")


class AgentEvent(_WireModel):
    """Payload of an ``agent`` event."""
    run_id: Optional[str] = Field(default=None, alias="runId")
    stream: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("data", mode="before")
    @classmethod
    def _none_as_empty(cls, v: Any) -> Any:
        return {} if v is None else v


class AssistantData(_WireModel):
    text: str = ""
    delta: str = ""

    @field_validator("text", "delta", mode="before")
    @classmethod
    def _none_as_blank(cls, v: Any) -> Any:
        return "" if v is None else v

    def apply(self, buffer: str) -> str:
        """Return ``buffer`` after this chunk: ``text`` replaces, ``delta`` appends."""
        if self.text:
            return self.text
        if self.delta:
            return buffer + self.delta
        return buffer


class LifecycleData(_WireModel):
    phase: str = ""
    message: str = ""

    @field_validator("phase", "message", mode="before")
    @classmethod
    def _none_as_blank(cls, v: Any) -> Any:
        return "" if v is None else v


class GatewayProtocol:
    """Helpers for building and parsing gateway frames."""

    @staticmethod
    def create_connect_request(
        token: str,
        platform: str = "linux",
        user_agent: str = USER_AGENT,
    ) -> RequestMessage:
        params = ConnectParams(
            client=ClientInfo(platform=platform),
            auth=AuthInfo(token=token),
            user_agent=user_agent,
        )
        return RequestMessage(
            id=CONNECT_REQUEST_ID,
            method=RequestMethod.CONNECT,
            params=params.model_dump(by_alias=True),
        )

    @staticmethod
    def create_agent_request(
        message: str,
        agent_id: str,
        session_key: str,
        idempotency_key: Optional[str] = None,
    ) -> RequestMessage:
        params = AgentParams(message=message, agent_id=agent_id, session_key=session_key)
        if idempotency_key:
            params.idempotency_key = idempotency_key
        return RequestMessage(
            id=AGENT_REQUEST_ID,
            method=RequestMethod.AGENT,
            params=params.model_dump(by_alias=True),
        )

    @staticmethod
    def create_reset_request(session_key: str) -> RequestMessage:
        return RequestMessage(
            id=RESET_REQUEST_ID,
            method=RequestMethod.SESSIONS_RESET,
            params=ResetParams(key=session_key).model_dump(by_alias=True),
        )

    @staticmethod
    def parse_envelope(data: Union[str, bytes]) -> Envelope:
        """Decode the outer frame; raises :class:`ProtocolError`."""
        try:
            raw = json.loads(data)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"invalid JSON frame: {e}") from e
        if not isinstance(raw, dict):
            raise ProtocolError(f"frame is not an object: {type(raw).__name__}")
        try:
            return Envelope.model_validate(raw)
        except ValidationError as e:
            raise ProtocolError(f"invalid envelope: {e.error_count()} error(s)") from e

    @staticmethod
    def parse_payload(payload: Any, model: Type[M]) -> M:
        """Reinterpret an opaque payload as ``model``; raises :class:`ProtocolError`."""
        if payload is None:
            payload = {}
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise ProtocolError(f"invalid {model.__name__} payload") from e
