"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from pyee import EventEmitter

from peer_room.media import MediaAccessError, MediaStream, Preview
from peer_room.peerjs.errors import PeerError, PeerErrorType
from peer_room.session.controller import CallSession


class FakeTrack:
    """Stand-in for a MediaStreamTrack that records stop() calls."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.stopped = 0

    def stop(self) -> None:
        self.stopped += 1


def make_stream() -> MediaStream:
    return MediaStream(tracks=[FakeTrack("audio"), FakeTrack("video")])  # type: ignore[list-item]


class FakeCall(EventEmitter):
    """Call handle whose events are fired by the test."""

    def __init__(self, peer: str) -> None:
        super().__init__()
        self.peer = peer
        self.answered_with: MediaStream | None = None
        self.closed = 0

    def answer(self, stream: MediaStream) -> None:
        self.answered_with = stream

    async def close(self) -> None:
        self.closed += 1
        if self.closed == 1:
            self.emit("close")


class FakeSignaling(EventEmitter):
    """Signaling client with scripted registration and call results."""

    def __init__(self, peer_id: str = "P1") -> None:
        super().__init__()
        self.peer_id = peer_id
        self.register_error: Exception | None = None
        self.register_gate: asyncio.Event | None = None
        self.refuse_calls = False
        self.placed: list[FakeCall] = []
        self.destroyed = 0

    async def register(self) -> str:
        if self.register_gate is not None:
            await self.register_gate.wait()
        if self.destroyed:
            raise PeerError(PeerErrorType.SOCKET_CLOSED, "Peer destroyed")
        if self.register_error is not None:
            raise self.register_error
        return self.peer_id

    def call(self, peer_id: str, stream: MediaStream) -> FakeCall | None:
        if self.refuse_calls:
            return None
        call = FakeCall(peer_id)
        self.placed.append(call)
        return call

    async def destroy(self) -> None:
        self.destroyed += 1
        if self.destroyed == 1:
            self.emit("close")

    def incoming(self, peer: str) -> FakeCall:
        call = FakeCall(peer)
        self.emit("call", call)
        return call


class FakeCapture:
    def __init__(self) -> None:
        self.error: MediaAccessError | None = None
        self.gate: asyncio.Event | None = None
        self.streams: list[MediaStream] = []

    async def request_capture(
        self, *, audio: bool = True, video: bool = True
    ) -> MediaStream:
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        stream = make_stream()
        self.streams.append(stream)
        return stream


@pytest.fixture
def signaling() -> FakeSignaling:
    return FakeSignaling()


@pytest.fixture
def capture() -> FakeCapture:
    return FakeCapture()


@pytest.fixture
def session(signaling: FakeSignaling, capture: FakeCapture) -> CallSession:
    return CallSession(
        "room-1",
        signaling=signaling,  # type: ignore[arg-type]
        capture=capture,
        local_preview=Preview(),
        remote_preview=Preview(),
    )


def tracks_of(stream: MediaStream | None) -> list[Any]:
    return [] if stream is None else list(stream.tracks)
