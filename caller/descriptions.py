"""Conversions between aiortc negotiation objects and wire payloads.

Offers and answers travel as ``{"type": ..., "sdp": ...}`` and candidates as
``{"candidate": "candidate:...", "sdpMid": ..., "sdpMLineIndex": ...}``, the
shapes browsers use for ``RTCSessionDescriptionInit`` and
``RTCIceCandidateInit``.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

CANDIDATE_PREFIX = "candidate:"


def description_to_payload(description: RTCSessionDescription) -> Dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def payload_to_description(payload: Any) -> RTCSessionDescription:
    """Build a session description, raising ValueError on malformed payloads."""

    if not isinstance(payload, dict):
        raise ValueError(f"session description must be an object, got {type(payload).__name__}")
    sdp = payload.get("sdp")
    sdp_type = payload.get("type")
    if not isinstance(sdp, str) or not isinstance(sdp_type, str):
        raise ValueError("session description requires string 'type' and 'sdp' fields")
    return RTCSessionDescription(sdp=sdp, type=sdp_type)


def candidate_to_payload(candidate: RTCIceCandidate) -> Dict[str, Any]:
    return {
        "candidate": CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def payload_to_candidate(payload: Any) -> Optional[RTCIceCandidate]:
    """Parse a candidate payload.

    Returns None for the empty end-of-candidates marker. Raises ValueError when
    the payload cannot be parsed.
    """

    if payload is None:
        return None
    if not isinstance(payload, dict):
        raise ValueError(f"candidate must be an object, got {type(payload).__name__}")
    line = payload.get("candidate")
    if not line:
        return None
    if not isinstance(line, str):
        raise ValueError("candidate field must be a string")
    if line.startswith("a="):
        line = line[2:]
    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX):]
    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, IndexError, ValueError) as exc:
        raise ValueError(f"unparseable candidate {line!r}") from exc
    candidate.sdpMid = payload.get("sdpMid")
    mline_index = payload.get("sdpMLineIndex")
    candidate.sdpMLineIndex = int(mline_index) if mline_index is not None else None
    if candidate.sdpMid is None and candidate.sdpMLineIndex is None:
        raise ValueError("candidate needs sdpMid or sdpMLineIndex")
    return candidate


def candidates_in_sdp(sdp: str) -> List[Dict[str, Any]]:
    """List the candidates embedded in a session description as wire payloads.

    aiortc gathers candidates before ``setLocalDescription`` returns and writes
    them into the description instead of emitting them one by one, so this is
    how local candidates are discovered.
    """

    payloads: List[Dict[str, Any]] = []
    mline_index = -1
    mid: Optional[str] = None
    section: List[str] = []

    def flush() -> None:
        for line in section:
            payloads.append(
                {
                    "candidate": line,
                    "sdpMid": mid,
                    "sdpMLineIndex": mline_index,
                }
            )

    for raw_line in sdp.splitlines():
        line = raw_line.strip()
        if line.startswith("m="):
            flush()
            section = []
            mid = None
            mline_index += 1
        elif mline_index < 0:
            continue
        elif line.startswith("a=mid:"):
            mid = line[len("a=mid:"):]
        elif line.startswith("a=" + CANDIDATE_PREFIX):
            section.append(line[2:])
    flush()
    return payloads
