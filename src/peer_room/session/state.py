"""Call session states and the owned session snapshot."""

from __future__ import annotations

import dataclasses
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from peer_room.media import MediaStream
    from peer_room.session.ports import CallHandle


class SessionState(StrEnum):
    """Lifecycle of one room view's call session.

    UNREGISTERED → REGISTERED_NO_MEDIA → READY_IDLE → CALL_PENDING → IN_CALL,
    back to READY_IDLE when a call ends, FAILED on a fatal error, and
    TORN_DOWN (terminal) from anywhere.
    """

    UNREGISTERED = "unregistered"
    REGISTERED_NO_MEDIA = "registered_no_media"
    READY_IDLE = "ready_idle"
    CALL_PENDING = "call_pending"
    IN_CALL = "in_call"
    FAILED = "failed"
    TORN_DOWN = "torn_down"


# States in which the inbound-call listener is live.
LIVE_STATES = frozenset(
    {SessionState.READY_IDLE, SessionState.CALL_PENDING, SessionState.IN_CALL}
)


class NoticeKind(StrEnum):
    MEDIA_DENIED = "media_denied"
    REGISTRATION_FAILED = "registration_failed"
    SIGNALING_LOST = "signaling_lost"
    DIAL_REJECTED = "dial_rejected"
    DIAL_FAILED = "dial_failed"
    CALL_ERROR = "call_error"


@dataclasses.dataclass(frozen=True)
class Notice:
    """A user-visible alert."""

    kind: NoticeKind
    message: str


@dataclasses.dataclass(frozen=True)
class SessionData:
    """Everything a call session owns, replaced wholesale on each transition.

    ``remote_peer_id`` is non-empty exactly when ``active_call`` is set, and
    the two are always cleared together.
    """

    state: SessionState = SessionState.UNREGISTERED
    local_id: str = ""
    remote_peer_id: str = ""
    active_call: CallHandle | None = None
    local_stream: MediaStream | None = None
    remote_stream: MediaStream | None = None

    @property
    def busy(self) -> bool:
        return bool(self.remote_peer_id)
