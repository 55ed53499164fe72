"""Gateway wire protocol: opcodes, inbound frame decoding, outbound frames.

Frames are JSON objects ``{"op": int, "d": payload, "s": seq?, "t": name?}``.
"""

import json
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, List, Optional

READY_EVENT = "READY"
RESUMED_EVENT = "RESUMED"

TOKEN_PREFIX = "QQBot"


class OpCode(IntEnum):
    DISPATCH = 0
    HEARTBEAT = 1
    IDENTIFY = 2
    RESUME = 6
    RECONNECT = 7
    INVALID_SESSION = 9
    HELLO = 10
    HEARTBEAT_ACK = 11


# Opcodes after which the server expects a fresh connection
RECONNECT_OPCODES = frozenset({OpCode.RECONNECT, OpCode.INVALID_SESSION})


@dataclass(frozen=True)
class InboundEvent:
    """One decoded frame received from the gateway."""
    op: int
    sequence: Optional[int] = None
    event_name: Optional[str] = None
    payload: Any = None

    @property
    def data(self) -> dict:
        """Payload as a dict (empty when the payload is not an object)."""
        return self.payload if isinstance(self.payload, dict) else {}

    def summary(self) -> dict:
        """Compact form for debug logging; message content is truncated."""
        data = self.data
        content = data.get("content")
        return {
            "op": self.op,
            "t": self.event_name,
            "s": self.sequence,
            "heartbeat_interval": data.get("heartbeat_interval"),
            "session_id": data.get("session_id"),
            "content": f"{content[:50]}..." if isinstance(content, str) else None,
        }


@dataclass(frozen=True)
class InboundMessage:
    """A business message extracted from a dispatch payload."""
    content: str
    message_id: Optional[str] = None
    group_id: Optional[str] = None
    author_id: Optional[str] = None

    @property
    def is_private(self) -> bool:
        return not self.group_id

    @property
    def target(self) -> Optional[str]:
        """Reply target: the group for group messages, the author otherwise."""
        return self.author_id if self.is_private else self.group_id

    @classmethod
    def from_payload(cls, data: dict) -> "InboundMessage":
        author = data.get("author") or {}
        author_id = author.get("id") or author.get("member_openid") or author.get("user_openid")
        return cls(
            content=data["content"],
            message_id=data.get("id"),
            group_id=data.get("group_openid"),
            author_id=author_id,
        )


def decode_frame(raw: Any) -> InboundEvent:
    """Decode a text/bytes frame into an InboundEvent.

    Raises:
        ValueError: If the frame is not a JSON object with an integer op.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    frame = json.loads(raw)
    if not isinstance(frame, dict):
        raise ValueError("gateway frame is not a JSON object")
    op = frame.get("op")
    if not isinstance(op, int) or isinstance(op, bool):
        raise ValueError(f"gateway frame has invalid op: {op!r}")
    seq = frame.get("s")
    return InboundEvent(
        op=op,
        sequence=seq if isinstance(seq, int) and not isinstance(seq, bool) else None,
        event_name=frame.get("t"),
        payload=frame.get("d"),
    )


def auth_token(token: str) -> str:
    return f"{TOKEN_PREFIX} {token}"


def identify_frame(token: str, intents: int, shard: List[int]) -> dict:
    return {
        "op": OpCode.IDENTIFY,
        "d": {
            "token": auth_token(token),
            "intents": intents,
            "shard": list(shard),
            "properties": {},
        },
    }


def resume_frame(token: str, session_id: str, sequence: Optional[int]) -> dict:
    """Resume request; asks for replay from the event after ``sequence``."""
    return {
        "op": OpCode.RESUME,
        "d": {
            "token": auth_token(token),
            "session_id": session_id,
            "seq": (sequence or 0) + 1,
        },
    }


def heartbeat_frame(sequence: Optional[int]) -> dict:
    return {"op": OpCode.HEARTBEAT, "d": sequence}
