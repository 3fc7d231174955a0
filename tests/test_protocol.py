import json

import pytest

from shared.protocol import (
    FRAME_HEADER,
    MAX_FRAME_SIZE,
    FrameTooLargeError,
    SignalingAction,
    decode_signaling_stream,
    encode_signaling_message,
    frame,
    split_frames,
)


def test_encode_decode_signaling_roundtrip() -> None:
    payload = {"type": "offer", "sdp": "v=0\r\n"}
    encoded = encode_signaling_message(SignalingAction.OFFER, payload)
    messages, remaining = decode_signaling_stream(encoded)
    assert remaining == b""
    assert len(messages) == 1
    assert messages[0]["action"] == "offer"
    assert messages[0]["data"] == payload


def test_ice_candidate_uses_hyphenated_wire_name() -> None:
    encoded = encode_signaling_message(SignalingAction.ICE_CANDIDATE, {"candidate": ""})
    body = json.loads(encoded[FRAME_HEADER.size:])
    assert body["action"] == "ice-candidate"


def test_split_frames_keeps_partial_tail() -> None:
    first = encode_signaling_message(SignalingAction.OFFER, {"sdp": "X"})
    second = encode_signaling_message(SignalingAction.ANSWER, {"sdp": "Y"})
    stream = first + second[:5]

    bodies, remaining = split_frames(stream)

    assert bodies == [first[FRAME_HEADER.size:]]
    assert remaining == second[:5]
    bodies, remaining = split_frames(remaining + second[5:])
    assert bodies == [second[FRAME_HEADER.size:]]
    assert remaining == b""


def test_split_frames_does_not_parse_bodies() -> None:
    stream = frame(b"not json") + frame(b"")
    bodies, remaining = split_frames(stream)
    assert bodies == [b"not json", b""]
    assert remaining == b""


def test_decode_skips_malformed_envelopes() -> None:
    valid = encode_signaling_message(SignalingAction.ANSWER, {"sdp": "Y"})
    stream = frame(b"{broken") + frame(b'{"data": 1}') + valid
    messages, remaining = decode_signaling_stream(stream)
    assert [message["action"] for message in messages] == ["answer"]
    assert remaining == b""


def test_oversized_frame_is_rejected() -> None:
    header = FRAME_HEADER.pack(MAX_FRAME_SIZE + 1)
    with pytest.raises(FrameTooLargeError):
        split_frames(header + b"x")
