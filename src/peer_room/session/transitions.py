"""Pure transition functions for the call session state machine.

Each function takes the current :class:`SessionData` and an event payload and
returns the next snapshot.  Returning the *same object* means the event was
ignored; callers rely on that identity check to decide whether to run side
effects.  Nothing here performs I/O.
"""

from __future__ import annotations

import dataclasses

from peer_room.media import MediaStream
from peer_room.session.errors import DialRejected
from peer_room.session.ports import CallHandle
from peer_room.session.state import LIVE_STATES, SessionData, SessionState


def registered(data: SessionData, local_id: str) -> SessionData:
    if data.state is not SessionState.UNREGISTERED:
        return data
    return dataclasses.replace(
        data, state=SessionState.REGISTERED_NO_MEDIA, local_id=local_id
    )


def registration_failed(data: SessionData) -> SessionData:
    if data.state is SessionState.TORN_DOWN:
        return data
    return dataclasses.replace(data, state=SessionState.FAILED, local_id="")


def media_acquired(data: SessionData, stream: MediaStream) -> SessionData:
    # Anything else means teardown or a failure won the race with capture.
    if data.state is not SessionState.REGISTERED_NO_MEDIA:
        return data
    return dataclasses.replace(
        data, state=SessionState.READY_IDLE, local_stream=stream
    )


def media_failed(data: SessionData) -> SessionData:
    if data.state is SessionState.TORN_DOWN:
        return data
    return dataclasses.replace(data, state=SessionState.FAILED)


def call_received(data: SessionData, call: CallHandle) -> SessionData:
    """Accept an inbound call unless busy with a different peer."""
    if data.state not in LIVE_STATES:
        return data
    if data.remote_peer_id and data.remote_peer_id != call.peer:
        return data
    return dataclasses.replace(
        data,
        state=SessionState.IN_CALL,
        remote_peer_id=call.peer,
        active_call=call,
        remote_stream=None,
    )


def check_dial(data: SessionData, target: str) -> str:
    """Validate a dial attempt and return the normalised target.

    Raises :class:`DialRejected` on the first violated precondition.
    """
    if not data.local_id:
        raise DialRejected("Not connected to the signaling server.")
    if data.local_stream is None:
        raise DialRejected("Local camera/microphone stream is not available.")
    target = target.strip()
    if not target:
        raise DialRejected("Please enter the Peer ID of the user you want to call.")
    if target == data.local_id:
        raise DialRejected("You cannot call yourself.")
    if data.busy:
        raise DialRejected(f"Already in a call with {data.remote_peer_id}.")
    return target


def dial_placed(data: SessionData, target: str, call: CallHandle) -> SessionData:
    return dataclasses.replace(
        data,
        state=SessionState.CALL_PENDING,
        remote_peer_id=target,
        active_call=call,
        remote_stream=None,
    )


def stream_received(
    data: SessionData, call: CallHandle, stream: MediaStream
) -> SessionData:
    if call is not data.active_call:
        return data
    state = SessionState.IN_CALL if data.state in LIVE_STATES else data.state
    return dataclasses.replace(data, state=state, remote_stream=stream)


def call_ended(data: SessionData, call: CallHandle) -> SessionData:
    """Clear the call slot, but only for the call that currently owns it."""
    if call is not data.active_call:
        return data
    state = data.state
    if state in (SessionState.CALL_PENDING, SessionState.IN_CALL):
        state = SessionState.READY_IDLE
    return dataclasses.replace(
        data,
        state=state,
        remote_peer_id="",
        active_call=None,
        remote_stream=None,
    )


def signaling_lost(data: SessionData) -> SessionData:
    if data.state is SessionState.TORN_DOWN:
        return data
    if data.state is SessionState.FAILED and not data.local_id:
        return data
    return dataclasses.replace(data, state=SessionState.FAILED, local_id="")


def torn_down(data: SessionData) -> SessionData:
    if data.state is SessionState.TORN_DOWN:
        return data
    return SessionData(state=SessionState.TORN_DOWN)
