"""Tests for the pure session transition functions."""

from __future__ import annotations

import random

import pytest
from conftest import FakeCall, make_stream

from peer_room.session import transitions
from peer_room.session.errors import DialRejected
from peer_room.session.state import SessionData, SessionState


def _ready(local_id: str = "P1") -> SessionData:
    data = transitions.registered(SessionData(), local_id)
    return transitions.media_acquired(data, make_stream())


def test_registration_then_media():
    data = transitions.registered(SessionData(), "P1")
    assert data.state is SessionState.REGISTERED_NO_MEDIA
    assert data.local_id == "P1"
    data = transitions.media_acquired(data, make_stream())
    assert data.state is SessionState.READY_IDLE
    assert data.local_stream is not None
    assert not data.busy


def test_registered_only_from_unregistered():
    data = _ready()
    assert transitions.registered(data, "P9") is data


def test_media_after_teardown_is_ignored():
    data = transitions.torn_down(transitions.registered(SessionData(), "P1"))
    assert transitions.media_acquired(data, make_stream()) is data
    assert transitions.media_failed(data) is data
    assert transitions.registration_failed(data) is data


def test_registration_failed_clears_identity():
    data = transitions.registration_failed(SessionData(local_id="stale"))
    assert data.state is SessionState.FAILED
    assert data.local_id == ""


@pytest.mark.parametrize(
    ("data", "target", "reason"),
    [
        (SessionData(), "P2", "signaling"),
        (transitions.registered(SessionData(), "P1"), "P2", "camera"),
        (_ready(), "", "Peer ID"),
        (_ready(), "P1", "yourself"),
    ],
)
def test_check_dial_rejections(data: SessionData, target: str, reason: str):
    with pytest.raises(DialRejected, match=reason):
        transitions.check_dial(data, target)


def test_check_dial_busy():
    data = transitions.dial_placed(_ready(), "P2", FakeCall("P2"))
    with pytest.raises(DialRejected, match="P2"):
        transitions.check_dial(data, "P3")


def test_check_dial_normalises():
    assert transitions.check_dial(_ready(), " P2 ") == "P2"


def test_inbound_requires_live_state():
    data = transitions.registered(SessionData(), "P1")
    assert transitions.call_received(data, FakeCall("P2")) is data
    failed = transitions.media_failed(data)
    assert transitions.call_received(failed, FakeCall("P2")) is failed


def test_inbound_while_busy_with_other_peer_is_ignored():
    data = transitions.dial_placed(_ready(), "P2", FakeCall("P2"))
    assert transitions.call_received(data, FakeCall("P3")) is data


def test_stream_only_from_active_call():
    active = FakeCall("P2")
    data = transitions.dial_placed(_ready(), "P2", active)
    assert transitions.stream_received(data, FakeCall("P2"), make_stream()) is data
    stream = make_stream()
    data = transitions.stream_received(data, active, stream)
    assert data.state is SessionState.IN_CALL
    assert data.remote_stream is stream


def test_call_ended_guard():
    active = FakeCall("P2")
    data = transitions.dial_placed(_ready(), "P2", active)
    assert transitions.call_ended(data, FakeCall("P2")) is data
    ended = transitions.call_ended(data, active)
    assert ended.state is SessionState.READY_IDLE
    assert ended.remote_peer_id == ""
    assert ended.active_call is None
    assert transitions.call_ended(ended, active) is ended


def test_signaling_lost_is_reported_once():
    lost = transitions.signaling_lost(_ready())
    assert lost.state is SessionState.FAILED
    assert lost.local_id == ""
    assert transitions.signaling_lost(lost) is lost


def test_torn_down_drops_everything():
    data = transitions.dial_placed(_ready(), "P2", FakeCall("P2"))
    down = transitions.torn_down(data)
    assert down == SessionData(state=SessionState.TORN_DOWN)
    assert transitions.torn_down(down) is down


def test_random_event_sequences_keep_one_call():
    """At most one call and peer at any time, and they always agree."""
    rng = random.Random(1234)
    peers = ["P2", "P3", "P4"]
    for _ in range(200):
        data = _ready()
        calls: list[FakeCall] = []
        for _ in range(30):
            action = rng.choice(["dial", "inbound", "stream", "close", "lost"])
            if action == "dial":
                try:
                    target = transitions.check_dial(data, rng.choice(peers))
                except DialRejected:
                    continue
                call = FakeCall(target)
                calls.append(call)
                data = transitions.dial_placed(data, target, call)
            elif action == "inbound":
                call = FakeCall(rng.choice(peers))
                calls.append(call)
                data = transitions.call_received(data, call)
            elif action == "stream" and calls:
                data = transitions.stream_received(
                    data, rng.choice(calls), make_stream()
                )
            elif action == "close" and calls:
                data = transitions.call_ended(data, rng.choice(calls))
            elif action == "lost" and rng.random() < 0.1:
                data = transitions.signaling_lost(data)

            assert bool(data.remote_peer_id) == (data.active_call is not None)
            if data.active_call is not None:
                assert data.active_call.peer == data.remote_peer_id
            if data.state in (SessionState.CALL_PENDING, SessionState.IN_CALL):
                assert data.busy
            if data.state is SessionState.READY_IDLE:
                assert not data.busy
