"""One PeerJS media connection backed by an aiortc RTCPeerConnection.

aiortc does not trickle ICE: local candidates are gathered during
``setLocalDescription`` and travel inside the SDP.  Candidates trickled by a
browser peer are queued until the remote description is set.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaRelay
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter

from peer_room.media import MediaStream
from peer_room.peerjs.errors import PeerError, PeerErrorType
from peer_room.peerjs.message import MessageType, description_payload

logger = logging.getLogger(__name__)

SendFunc = Callable[[MessageType, str, dict[str, Any]], Awaitable[None]]


class MediaCall(AsyncIOEventEmitter):
    """Media connection with one remote peer.

    Events: ``stream`` (MediaStream), ``close`` (once), ``error`` (PeerError,
    always followed by close).
    """

    def __init__(
        self,
        peer: str,
        connection_id: str,
        *,
        send: SendFunc,
        configuration: RTCConfiguration | None = None,
        offer: dict[str, Any] | None = None,
        metadata: Any = None,
        relay: MediaRelay | None = None,
        on_closed: Callable[[MediaCall], None] | None = None,
    ) -> None:
        super().__init__()
        self.peer = peer
        self.connection_id = connection_id
        self.metadata = metadata
        self.open = False
        self.remote_stream: MediaStream | None = None
        self._send = send
        self._configuration = configuration
        self._offer = offer
        self._relay = relay
        self._on_closed = on_closed
        self._pc: RTCPeerConnection | None = None
        self._negotiation: asyncio.Task[None] | None = None
        self._pending_candidates: list[dict[str, Any]] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._stream_emitted = False
        self._closed = False

    @property
    def inbound(self) -> bool:
        return self._offer is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def answer(self, stream: MediaStream) -> None:
        """Accept an inbound call, sending *stream* back."""
        if self._offer is None:
            raise RuntimeError("answer() is only valid for inbound calls")
        if self._negotiation is not None or self._closed:
            logger.warning("Call %s already answered or closed", self.connection_id)
            return
        self._negotiation = self._spawn(self._guard(self._negotiate_answer(stream)))

    def start(self, stream: MediaStream) -> None:
        """Send an offer for an outbound call."""
        if self._offer is not None:
            raise RuntimeError("start() is only valid for outbound calls")
        if self._negotiation is not None or self._closed:
            return
        self._negotiation = self._spawn(self._guard(self._negotiate_offer(stream)))

    async def handle_answer(self, sdp: dict[str, Any]) -> None:
        if self._pc is None or self._closed:
            logger.warning("Unexpected ANSWER for call %s", self.connection_id)
            return
        await self._guard(self._apply_remote(sdp))

    async def handle_candidate(self, candidate: dict[str, Any]) -> None:
        if self._closed:
            return
        if self._pc is None or self._pc.remoteDescription is None:
            self._pending_candidates.append(candidate)
            return
        await self._guard(self._add_candidate(candidate))

    def fail(self, error: PeerError) -> None:
        """Report *error* to listeners and close the call."""
        if self._closed:
            return
        logger.warning("Call %s with %s failed: %s", self.connection_id, self.peer, error)
        if self.listeners("error"):
            self.emit("error", error)
        self._spawn(self.close())

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.open = False
        current = asyncio.current_task()
        if self._negotiation is not None and self._negotiation is not current:
            self._negotiation.cancel()
        try:
            if self._pc is not None:
                await self._pc.close()
        finally:
            logger.info("Call %s with %s closed", self.connection_id, self.peer)
            if self._on_closed is not None:
                self._on_closed(self)
            self.emit("close")

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    async def _negotiate_answer(self, stream: MediaStream) -> None:
        assert self._offer is not None
        pc = self._create_peer_connection(stream)
        await self._apply_remote(self._offer, emit=False)
        await pc.setLocalDescription(await pc.createAnswer())
        local = pc.localDescription
        await self._send(
            MessageType.ANSWER,
            self.peer,
            description_payload(local.sdp, local.type, self.connection_id),
        )
        self._emit_stream()

    async def _negotiate_offer(self, stream: MediaStream) -> None:
        pc = self._create_peer_connection(stream)
        await pc.setLocalDescription(await pc.createOffer())
        local = pc.localDescription
        await self._send(
            MessageType.OFFER,
            self.peer,
            description_payload(
                local.sdp, local.type, self.connection_id, metadata=self.metadata
            ),
        )
        logger.debug("Call %s: offer sent to %s", self.connection_id, self.peer)

    async def _apply_remote(self, sdp: dict[str, Any], *, emit: bool = True) -> None:
        assert self._pc is not None
        description = RTCSessionDescription(sdp=sdp["sdp"], type=sdp["type"])
        await self._pc.setRemoteDescription(description)
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._add_candidate(candidate)
        if emit:
            self._emit_stream()

    async def _add_candidate(self, payload: dict[str, Any]) -> None:
        assert self._pc is not None
        text = payload.get("candidate") or ""
        if not text:
            # end-of-candidates marker
            return
        candidate = candidate_from_sdp(text.removeprefix("candidate:"))
        candidate.sdpMid = payload.get("sdpMid")
        candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
        await self._pc.addIceCandidate(candidate)

    def _create_peer_connection(self, stream: MediaStream) -> RTCPeerConnection:
        pc = RTCPeerConnection(configuration=self._configuration)
        for track in stream.tracks:
            pc.addTrack(self._relay.subscribe(track) if self._relay else track)
        pc.on("track", self._on_track)
        pc.on("connectionstatechange", self._on_connection_state)
        self._pc = pc
        return pc

    def _on_track(self, track: MediaStreamTrack) -> None:
        logger.debug("Call %s: remote %s track", self.connection_id, track.kind)
        if self.remote_stream is None:
            self.remote_stream = MediaStream()
        self.remote_stream.add_track(track)

    def _on_connection_state(self) -> None:
        if self._pc is None:
            return
        state = self._pc.connectionState
        logger.debug("Call %s: connection state %s", self.connection_id, state)
        if state == "failed":
            self.fail(PeerError(PeerErrorType.WEBRTC, "connection failed"))
        elif state == "closed" and not self._closed:
            self._spawn(self.close())

    def _emit_stream(self) -> None:
        if self._stream_emitted or self._closed or self.remote_stream is None:
            return
        self._stream_emitted = True
        self.open = True
        self.emit("stream", self.remote_stream)

    async def _guard(self, coro: Coroutine[Any, Any, None]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Call %s: negotiation failed", self.connection_id)
            self.fail(PeerError(PeerErrorType.WEBRTC, str(exc) or type(exc).__name__))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
