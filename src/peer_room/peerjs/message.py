"""PeerJS server protocol: endpoint URLs and JSON message framing."""

from __future__ import annotations

import dataclasses
import json
import random
import string
import time
from enum import StrEnum
from typing import Any
from urllib.parse import urlencode

DEFAULT_KEY = "peerjs"
CLIENT_VERSION = "1.5.4"
MEDIA_CONNECTION_PREFIX = "mc_"


class MessageType(StrEnum):
    # server -> client
    OPEN = "OPEN"
    ERROR = "ERROR"
    ID_TAKEN = "ID-TAKEN"
    INVALID_KEY = "INVALID-KEY"
    EXPIRE = "EXPIRE"
    # both directions
    OFFER = "OFFER"
    ANSWER = "ANSWER"
    CANDIDATE = "CANDIDATE"
    LEAVE = "LEAVE"
    # client -> server
    HEARTBEAT = "HEARTBEAT"


@dataclasses.dataclass
class ServerMessage:
    """Parsed message received over the signaling socket."""

    type: str
    src: str | None = None
    dst: str | None = None
    payload: dict[str, Any] = dataclasses.field(default_factory=dict)

    @property
    def connection_id(self) -> str | None:
        return self.payload.get("connectionId")


def parse_message(text: str) -> ServerMessage:
    """Parse one JSON socket frame.  Raises ValueError when malformed."""
    data = json.loads(text)
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise ValueError(f"not a PeerJS message: {text!r}")
    payload = data.get("payload")
    if not isinstance(payload, dict):
        # ERROR carries {"msg": ...}; anything else without a dict payload
        # has nothing we read.
        payload = {}
    return ServerMessage(
        type=data["type"],
        src=data.get("src"),
        dst=data.get("dst"),
        payload=payload,
    )


def build_message(
    type: str, *, dst: str | None = None, payload: dict[str, Any] | None = None
) -> str:
    message: dict[str, Any] = {"type": str(type)}
    if payload is not None:
        message["payload"] = payload
    if dst is not None:
        message["dst"] = dst
    return json.dumps(message, separators=(",", ":"))


def normalize_path(path: str) -> str:
    """PeerJS paths always start and end with a slash."""
    if not path.startswith("/"):
        path = "/" + path
    if not path.endswith("/"):
        path += "/"
    return path


def id_url(host: str, port: int, path: str, key: str, *, secure: bool) -> str:
    """URL that hands out a fresh peer ID as plain text."""
    scheme = "https" if secure else "http"
    ts = f"{int(time.time() * 1000)}{random.random()}"
    return f"{scheme}://{host}:{port}{normalize_path(path)}{key}/id?ts={ts}"


def socket_url(
    host: str,
    port: int,
    path: str,
    key: str,
    *,
    peer_id: str,
    token: str,
    secure: bool,
) -> str:
    scheme = "wss" if secure else "ws"
    query = urlencode(
        {"key": key, "id": peer_id, "token": token, "version": CLIENT_VERSION}
    )
    return f"{scheme}://{host}:{port}{normalize_path(path)}peerjs?{query}"


def random_token(length: int = 11) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(random.choices(alphabet, k=length))


def generate_connection_id() -> str:
    return MEDIA_CONNECTION_PREFIX + random_token()


def description_payload(
    sdp: str, sdp_type: str, connection_id: str, **extra: Any
) -> dict[str, Any]:
    """Payload for OFFER/ANSWER messages of a media connection."""
    payload: dict[str, Any] = {
        "sdp": {"type": sdp_type, "sdp": sdp},
        "type": "media",
        "connectionId": connection_id,
    }
    payload.update({k: v for k, v in extra.items() if v is not None})
    return payload
