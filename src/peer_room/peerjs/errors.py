"""PeerJS error types."""

from __future__ import annotations

from enum import StrEnum

from peer_room.session.errors import SignalingError


class PeerErrorType(StrEnum):
    """Error ``type`` values as reported by the PeerJS client library."""

    DISCONNECTED = "disconnected"
    INVALID_KEY = "invalid-key"
    NETWORK = "network"
    PEER_UNAVAILABLE = "peer-unavailable"
    SERVER_ERROR = "server-error"
    SOCKET_ERROR = "socket-error"
    SOCKET_CLOSED = "socket-closed"
    UNAVAILABLE_ID = "unavailable-id"
    WEBRTC = "webrtc"


class PeerError(SignalingError):
    def __init__(self, type: PeerErrorType, message: str) -> None:
        super().__init__(message)
        self.type = type

    def __str__(self) -> str:
        return f"{self.type}: {self.args[0]}"
