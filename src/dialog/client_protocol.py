"""
WebSocket protocol between a speech-capable client (browser/app) and the server.

The client owns the microphone, the speaker and the SMS retriever; the server owns
the dialog. Every message is a JSON object with a "type" field.

Inbound (client -> server):
- hello: capabilities, locale and current route
- route: the user navigated
- transcript: recognition result for recognition session `rid`
- recognition_end / recognition_error: recognition session `rid` ended
- speech_end: utterance `sid` finished (completed | blocked | error | cancelled)
- otp_result: code request `oid` finished (code | timeout | aborted | error)
- text_input: typed/tapped fallback answer
- start_flow / cancel_flow

Outbound (server -> client):
- ready, start_recognition, stop_recognition, speak, cancel_speech,
  otp_request, otp_abort, channel_state, flow_result, unsupported

Correlation ids (`rid`, `sid`, `oid`) let the server drop results that belong to a
session it already stopped.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import msgspec
import structlog

from src.dialog.channel import ChannelState
from src.dialog.engine import TerminalResult

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class ClientEventType(str, Enum):
    """Inbound message types."""
    HELLO = "hello"
    ROUTE = "route"
    TRANSCRIPT = "transcript"
    RECOGNITION_END = "recognition_end"
    RECOGNITION_ERROR = "recognition_error"
    SPEECH_END = "speech_end"
    OTP_RESULT = "otp_result"
    TEXT_INPUT = "text_input"
    START_FLOW = "start_flow"
    CANCEL_FLOW = "cancel_flow"


@dataclass
class HelloEvent:
    locale: str = "en"
    route: str = "/"
    recognition: bool = False
    otp: bool = False
    client: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "HelloEvent":
        capabilities = message.get("capabilities") or {}
        return cls(
            locale=str(message.get("locale") or "en"),
            route=str(message.get("route") or "/"),
            recognition=bool(capabilities.get("recognition", False)),
            otp=bool(capabilities.get("otp", False)),
            client=str(message.get("client") or ""),
        )


@dataclass
class RouteEvent:
    route: str
    locale: Optional[str] = None

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "RouteEvent":
        return cls(route=str(message.get("route") or "/"), locale=message.get("locale"))


@dataclass
class TranscriptEvent:
    rid: int
    text: str
    is_final: bool
    confidence: float = 0.0

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TranscriptEvent":
        return cls(
            rid=int(message.get("rid", 0)),
            text=str(message.get("text") or ""),
            is_final=bool(message.get("is_final", False)),
            confidence=float(message.get("confidence") or 0.0),
        )


@dataclass
class RecognitionEndEvent:
    rid: int
    error: Optional[str] = None

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "RecognitionEndEvent":
        return cls(rid=int(message.get("rid", 0)), error=message.get("error"))


@dataclass
class SpeechEndEvent:
    sid: int
    outcome: str = "completed"

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "SpeechEndEvent":
        return cls(sid=int(message.get("sid", 0)), outcome=str(message.get("outcome") or "completed"))


@dataclass
class OtpResultEvent:
    oid: int
    kind: str
    code: Optional[str] = None

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "OtpResultEvent":
        return cls(
            oid=int(message.get("oid", 0)),
            kind=str(message.get("kind") or "error"),
            code=message.get("code"),
        )


@dataclass
class TextInputEvent:
    text: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TextInputEvent":
        return cls(text=str(message.get("text") or ""))


@dataclass
class StartFlowEvent:
    flow: str
    params: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "StartFlowEvent":
        params = message.get("params") or {}
        if not isinstance(params, dict):
            raise ValueError("start_flow params must be an object")
        return cls(flow=str(message.get("flow") or ""), params=params)


@dataclass
class CancelFlowEvent:
    reason: str = "client_cancelled"

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "CancelFlowEvent":
        return cls(reason=str(message.get("reason") or "client_cancelled"))


_PARSERS = {
    ClientEventType.HELLO: HelloEvent.from_message,
    ClientEventType.ROUTE: RouteEvent.from_message,
    ClientEventType.TRANSCRIPT: TranscriptEvent.from_message,
    ClientEventType.RECOGNITION_END: RecognitionEndEvent.from_message,
    ClientEventType.RECOGNITION_ERROR: RecognitionEndEvent.from_message,
    ClientEventType.SPEECH_END: SpeechEndEvent.from_message,
    ClientEventType.OTP_RESULT: OtpResultEvent.from_message,
    ClientEventType.TEXT_INPUT: TextInputEvent.from_message,
    ClientEventType.START_FLOW: StartFlowEvent.from_message,
    ClientEventType.CANCEL_FLOW: CancelFlowEvent.from_message,
}


def parse_client_message(raw_message: Any) -> tuple[ClientEventType, Any]:
    """
    Parse a raw client WebSocket message.

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If the message can't be decoded or has an unknown type
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        logger.error("Failed to parse client message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Client message must be a JSON object")

    type_str = message.get("type", "")
    try:
        event_type = ClientEventType(type_str)
    except ValueError:
        logger.warning("Unknown client message type", type=type_str)
        raise ValueError(f"Unknown message type: {type_str}")

    try:
        return event_type, _PARSERS[event_type](message)
    except (TypeError, AttributeError) as e:
        raise ValueError(f"Malformed {event_type.value} message: {e}")


def _encode(message: Dict[str, Any]) -> str:
    return encoder.encode(message).decode("utf-8")


def create_ready_message(session_id: str, locale: str, recognition_supported: bool) -> str:
    return _encode(
        {
            "type": "ready",
            "session_id": session_id,
            "locale": locale,
            "recognition_supported": recognition_supported,
        }
    )


def create_start_recognition_message(rid: int, locale: str, *, interim_results: bool = True) -> str:
    """Ask the client to open recognition session `rid` (continuous, with interims)."""
    return _encode(
        {
            "type": "start_recognition",
            "rid": rid,
            "locale": locale,
            "continuous": True,
            "interim_results": interim_results,
        }
    )


def create_stop_recognition_message(rid: int) -> str:
    return _encode({"type": "stop_recognition", "rid": rid})


def create_speak_message(sid: int, text: str, locale: str, rate: float) -> str:
    return _encode({"type": "speak", "sid": sid, "text": text, "locale": locale, "rate": rate})


def create_cancel_speech_message(sid: int) -> str:
    return _encode({"type": "cancel_speech", "sid": sid})


def create_otp_request_message(oid: int, timeout_ms: int) -> str:
    return _encode({"type": "otp_request", "oid": oid, "timeout_ms": timeout_ms})


def create_otp_abort_message(oid: int) -> str:
    return _encode({"type": "otp_abort", "oid": oid})


def create_channel_state_message(state: ChannelState) -> str:
    return _encode(
        {
            "type": "channel_state",
            "listening": state.listening,
            "speaking": state.speaking,
            "processing_cooldown": state.processing_cooldown,
            "transcript": state.transcript_buffer,
            "preview": state.preview,
            "last_error": state.last_error.value if state.last_error else None,
        }
    )


# Never echoed back to the client.
_PRIVATE_VALUES = frozenset({"code"})


def create_flow_result_message(result: TerminalResult) -> str:
    """
    Report a finished flow.

    Values are encoded with msgspec (dataclasses, datetimes and enums included).
    """
    return _encode(
        {
            "type": "flow_result",
            "flow": result.flow,
            "status": result.status.value,
            "step": result.step_id,
            "outcome": result.outcome,
            "values": {k: v for k, v in result.values.items() if k not in _PRIVATE_VALUES},
        }
    )


def create_unsupported_message(capability: str, message: str = "") -> str:
    return _encode({"type": "unsupported", "capability": capability, "message": message})
