"""Wire protocol shared between the relay and the callers.

Every message travels over a persistent TCP channel as a length-prefixed JSON
envelope. The relay only ever looks at the length prefix: it splits the byte
stream into frames and forwards each frame body untouched. Callers decode the
envelope and hand the payload to their negotiation state machine.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional, TypedDict

import json
import logging
import struct

logger = logging.getLogger(__name__)

FRAME_HEADER = struct.Struct("!I")
MAX_FRAME_SIZE = 1024 * 1024


class SignalingAction(str, Enum):
    """Negotiation messages relayed between the two participants."""

    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


class SignalingEnvelope(TypedDict):
    """Generic representation of a negotiation message on the wire."""

    action: str
    data: Any


class FrameTooLargeError(ValueError):
    """Raised when a length prefix announces more than MAX_FRAME_SIZE bytes."""


def frame(body: bytes) -> bytes:
    """Prefix an already-encoded body with its length."""

    return FRAME_HEADER.pack(len(body)) + body


def encode_signaling_message(action: SignalingAction, data: Any) -> bytes:
    """Serialize a negotiation message using length-prefixed JSON."""

    envelope: SignalingEnvelope = {
        "action": action.value,
        "data": data,
    }
    payload = json.dumps(envelope, separators=(',', ':')).encode("utf-8")
    return frame(payload)


def split_frames(buffer: bytes) -> tuple[list[bytes], bytes]:
    """Cut as many complete frame bodies from the buffer as possible.

    The bodies are returned as raw bytes without any decoding. Returns a tuple
    of (bodies, remaining_buffer).
    """

    offset = 0
    bodies: list[bytes] = []
    buf_len = len(buffer)

    while offset + FRAME_HEADER.size <= buf_len:
        (length,) = FRAME_HEADER.unpack_from(buffer, offset)
        if length > MAX_FRAME_SIZE:
            raise FrameTooLargeError(f"frame of {length} bytes exceeds {MAX_FRAME_SIZE}")
        start = offset + FRAME_HEADER.size
        end = start + length
        if end > buf_len:
            break
        bodies.append(buffer[start:end])
        offset = end

    return bodies, buffer[offset:]


def decode_envelope(body: bytes) -> Optional[SignalingEnvelope]:
    """Decode one frame body, returning None when it is not a valid envelope."""

    try:
        envelope = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("Ignoring frame that is not valid JSON (%d bytes)", len(body))
        return None
    if not isinstance(envelope, dict) or not isinstance(envelope.get("action"), str):
        logger.warning("Ignoring frame without an action field")
        return None
    return {"action": envelope["action"], "data": envelope.get("data")}


def decode_signaling_stream(buffer: bytes) -> tuple[list[SignalingEnvelope], bytes]:
    """Decode as many complete negotiation messages from the buffer as possible.

    Malformed frames are skipped. Returns a tuple of (messages, remaining_buffer).
    """

    bodies, remaining = split_frames(buffer)
    messages: list[SignalingEnvelope] = []
    for body in bodies:
        envelope = decode_envelope(body)
        if envelope is not None:
            messages.append(envelope)
    return messages, remaining


DEFAULT_RELAY_PORT = 3000
DEFAULT_STATUS_PORT = 3001
DEFAULT_UI_PORT = 8100
