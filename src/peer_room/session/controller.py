"""Call session controller: one room view's signaling identity, media and call.

The controller owns a single :class:`SessionData` snapshot and advances it
only through the pure functions in :mod:`peer_room.session.transitions`.
Event handlers for calls re-check the snapshot before mutating anything, so a
superseded or ignored call cannot disturb the current one.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from peer_room.media import MediaAccessError, MediaStream, Preview
from peer_room.session import transitions
from peer_room.session.errors import DialRejected, SignalingError
from peer_room.session.ports import CallHandle, MediaCapture, SignalingClient
from peer_room.session.state import Notice, NoticeKind, SessionData, SessionState

logger = logging.getLogger(__name__)


class CallSession:
    """Two-party call session for one room view activation."""

    def __init__(
        self,
        room_id: str,
        *,
        signaling: SignalingClient,
        capture: MediaCapture,
        local_preview: Preview | None = None,
        remote_preview: Preview | None = None,
        on_notice: Callable[[Notice], None] | None = None,
    ) -> None:
        self.room_id = room_id
        self.local_preview = local_preview if local_preview is not None else Preview()
        self.remote_preview = (
            remote_preview if remote_preview is not None else Preview()
        )
        self.notices: list[Notice] = []
        self._signaling = signaling
        self._capture = capture
        self._on_notice = on_notice
        self._data = SessionData()
        self._activated = False
        self._torn_down = False
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def data(self) -> SessionData:
        return self._data

    @property
    def state(self) -> SessionState:
        return self._data.state

    @property
    def local_id(self) -> str:
        return self._data.local_id

    @property
    def remote_peer_id(self) -> str:
        return self._data.remote_peer_id

    def pop_notices(self) -> list[Notice]:
        notices, self.notices = self.notices, []
        return notices

    # ------------------------------------------------------------------
    # Activation: registration, then media
    # ------------------------------------------------------------------

    async def activate(self) -> None:
        """Register with signaling, capture media, start listening for calls."""
        if self._activated or self._torn_down:
            return
        self._activated = True
        self._signaling.on("error", self._on_signaling_error)
        self._signaling.on("disconnected", self._on_signaling_disconnected)
        self._signaling.on("close", self._on_signaling_closed)

        try:
            local_id = await self._signaling.register()
        except SignalingError as exc:
            self._registration_failed(str(exc))
            return
        except Exception as exc:
            logger.exception("Room %s: registration failed unexpectedly", self.room_id)
            self._registration_failed(str(exc) or type(exc).__name__)
            return
        if not self._apply(transitions.registered(self._data, local_id), "register"):
            return
        logger.info("Room %s: my peer ID is %s", self.room_id, local_id)

        try:
            stream = await self._capture.request_capture(audio=True, video=True)
        except MediaAccessError as exc:
            logger.error("Room %s: failed to get local stream: %s", self.room_id, exc)
            if self._apply(transitions.media_failed(self._data), "capture"):
                self._notify(
                    NoticeKind.MEDIA_DENIED,
                    "Failed to access camera/microphone. "
                    "Please allow access and refresh.",
                )
            return
        if not self._apply(transitions.media_acquired(self._data, stream), "capture"):
            logger.info("Room %s: releasing media granted too late", self.room_id)
            stream.stop()
            return
        self.local_preview.bind(stream)
        self._signaling.on("call", self._on_incoming_call)

    def _registration_failed(self, cause: str) -> None:
        if self._apply(transitions.registration_failed(self._data), "register"):
            self._notify(
                NoticeKind.REGISTRATION_FAILED,
                f"Could not connect to the signaling server ({cause}). "
                "Reload the page to try again.",
            )

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def dial(self, target: str) -> bool:
        """Place an outbound call.  Returns False if it was not placed."""
        try:
            target = transitions.check_dial(self._data, target)
        except DialRejected as exc:
            self._notify(NoticeKind.DIAL_REJECTED, f"Cannot call. {exc}")
            return False
        assert self._data.local_stream is not None

        logger.info("Room %s: attempting to call %s", self.room_id, target)
        call = self._signaling.call(target, self._data.local_stream)
        if call is None:
            self._notify(
                NoticeKind.DIAL_FAILED,
                "Failed to initiate call. "
                "The remote peer ID might be invalid or unreachable.",
            )
            return False
        self._watch(call)
        self._apply(transitions.dial_placed(self._data, target, call), "dial")
        return True

    def _on_incoming_call(self, call: CallHandle) -> None:
        previous = self._data.active_call
        if not self._apply(transitions.call_received(self._data, call), "incoming"):
            logger.info(
                "Room %s: ignoring call from %s (state %s, connected to %r)",
                self.room_id,
                call.peer,
                self._data.state,
                self._data.remote_peer_id,
            )
            # never answered, so closing it sends nothing to the caller
            self._spawn(call.close())
            return
        logger.info("Room %s: incoming call from %s", self.room_id, call.peer)
        self._watch(call)
        assert self._data.local_stream is not None
        call.answer(self._data.local_stream)
        if previous is not None and previous is not call:
            logger.info("Room %s: closing superseded call", self.room_id)
            self._spawn(previous.close())

    def _watch(self, call: CallHandle) -> None:
        call.on("stream", functools.partial(self._on_call_stream, call))
        call.on("close", functools.partial(self._on_call_close, call))
        call.on("error", functools.partial(self._on_call_error, call))

    def _on_call_stream(self, call: CallHandle, stream: MediaStream) -> None:
        if not self._apply(
            transitions.stream_received(self._data, call, stream), "stream"
        ):
            logger.debug("Room %s: stream from stale call %s", self.room_id, call.peer)
            return
        logger.info("Room %s: received remote stream", self.room_id)
        self.remote_preview.bind(stream)

    def _on_call_close(self, call: CallHandle) -> None:
        if not self._apply(transitions.call_ended(self._data, call), "close"):
            logger.debug("Room %s: close from stale call %s", self.room_id, call.peer)
            return
        logger.info("Room %s: call with %s closed", self.room_id, call.peer)
        self.remote_preview.clear()

    def _on_call_error(self, call: CallHandle, exc: BaseException) -> None:
        logger.error("Room %s: call error from %s: %s", self.room_id, call.peer, exc)
        if not self._apply(transitions.call_ended(self._data, call), "error"):
            return
        self.remote_preview.clear()
        self._notify(NoticeKind.CALL_ERROR, f"Call failed: {exc}")

    # ------------------------------------------------------------------
    # Signaling disruption
    # ------------------------------------------------------------------

    def _on_signaling_error(self, exc: BaseException) -> None:
        if self._data.state is SessionState.UNREGISTERED:
            # register() raises this one
            return
        self._signaling_lost(f"Signaling error: {exc}.")

    def _on_signaling_disconnected(self, *_: Any) -> None:
        self._signaling_lost("Disconnected from the signaling server.")

    def _on_signaling_closed(self) -> None:
        self._signaling_lost("The signaling connection was closed.")

    def _signaling_lost(self, cause: str) -> None:
        if self._apply(transitions.signaling_lost(self._data), "signaling"):
            self._notify(
                NoticeKind.SIGNALING_LOST,
                f"{cause} You might need to refresh the page.",
            )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def teardown(self) -> None:
        """Release everything this session acquired.  Never raises."""
        if self._torn_down:
            return
        self._torn_down = True
        logger.info("Room %s: cleaning up", self.room_id)
        data = self._data
        self._apply(transitions.torn_down(data), "teardown")

        if data.local_stream is not None:
            await self._release("local stream", data.local_stream.stop)
        if data.remote_stream is not None:
            await self._release("remote stream", data.remote_stream.stop)
        await self._release("local preview", self.local_preview.clear)
        await self._release("remote preview", self.remote_preview.clear)
        if data.active_call is not None:
            await self._release("active call", data.active_call.close)
        await self._release("signaling", self._signaling.destroy)
        for task in self._tasks:
            task.cancel()
        logger.info("Room %s: peer destroyed", self.room_id)

    async def _release(self, what: str, release: Callable[[], Any]) -> None:
        try:
            result = release()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Room %s: failed to release %s", self.room_id, what)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _apply(self, data: SessionData, event: str) -> bool:
        """Adopt *data* as the new snapshot.  False if the event was ignored."""
        if data is self._data:
            return False
        if data.state is not self._data.state:
            logger.info(
                "Room %s: %s -> %s (%s)",
                self.room_id,
                self._data.state,
                data.state,
                event,
            )
        self._data = data
        return True

    def _notify(self, kind: NoticeKind, message: str) -> None:
        notice = Notice(kind, message)
        logger.warning("Room %s: [%s] %s", self.room_id, kind, message)
        self.notices.append(notice)
        if self._on_notice is not None:
            self._on_notice(notice)

    def _spawn(self, aw: Awaitable[None]) -> None:
        task = asyncio.ensure_future(aw)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
