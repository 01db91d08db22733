"""Local capture, media stream handles and preview bindings."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from collections.abc import Coroutine
from typing import Any

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from av.error import FFmpegError

logger = logging.getLogger(__name__)


class MediaAccessError(Exception):
    """A capture device could not be opened or produced no usable track."""


@dataclasses.dataclass(eq=False)
class MediaStream:
    """An ordered group of live tracks, like a browser MediaStream."""

    tracks: list[MediaStreamTrack] = dataclasses.field(default_factory=list)
    id: str = dataclasses.field(default_factory=lambda: uuid.uuid4().hex)

    def add_track(self, track: MediaStreamTrack) -> None:
        if track not in self.tracks:
            self.tracks.append(track)

    @property
    def audio_tracks(self) -> list[MediaStreamTrack]:
        return [t for t in self.tracks if t.kind == "audio"]

    @property
    def video_tracks(self) -> list[MediaStreamTrack]:
        return [t for t in self.tracks if t.kind == "video"]

    def stop(self) -> None:
        """Stop every track.  Safe to call more than once."""
        for track in self.tracks:
            track.stop()


class DeviceCapture:
    """Opens camera and microphone through ffmpeg inputs.

    When both kinds share one source (e.g. a test file) the input is opened
    once and both tracks are taken from it.
    """

    def __init__(
        self,
        *,
        video_source: str,
        video_format: str | None = None,
        audio_source: str,
        audio_format: str | None = None,
        video_options: dict[str, str] | None = None,
    ) -> None:
        self._video = (video_source, video_format or None)
        self._audio = (audio_source, audio_format or None)
        self._video_options = video_options or {}

    async def request_capture(
        self, *, audio: bool = True, video: bool = True
    ) -> MediaStream:
        wanted: dict[tuple[str, str | None], set[str]] = {}
        if video:
            wanted.setdefault(self._video, set()).add("video")
        if audio:
            wanted.setdefault(self._audio, set()).add("audio")

        stream = MediaStream()
        try:
            for (source, fmt), kinds in wanted.items():
                player = await asyncio.to_thread(
                    self._open, source, fmt, "video" in kinds
                )
                for kind in ("video", "audio"):
                    track = getattr(player, kind)
                    if kind in kinds:
                        if track is None:
                            raise MediaAccessError(f"{source} has no {kind} track")
                        stream.add_track(track)
                    elif track is not None:
                        # Unused tracks would buffer frames forever.
                        track.stop()
        except MediaAccessError:
            stream.stop()
            raise
        logger.info(
            "Captured %d audio / %d video track(s)",
            len(stream.audio_tracks),
            len(stream.video_tracks),
        )
        return stream

    def _open(self, source: str, fmt: str | None, with_video: bool) -> MediaPlayer:
        options = self._video_options if with_video else {}
        try:
            return MediaPlayer(source, format=fmt, options=options)
        except (OSError, FFmpegError) as exc:
            raise MediaAccessError(f"Could not open {source}: {exc}") from exc


class Preview:
    """Binding of a stream to a view; the headless ``<video>`` element."""

    def __init__(self) -> None:
        self.stream: MediaStream | None = None

    def bind(self, stream: MediaStream) -> None:
        self.stream = stream

    def clear(self) -> None:
        self.stream = None


class SinkPreview(Preview):
    """Preview that consumes the bound tracks.

    Frames go to a MediaRecorder when ``recording_path`` is set, otherwise to
    a MediaBlackhole.  Remote tracks must be drained or they buffer without
    bound.
    """

    def __init__(self, recording_path: str | None = None) -> None:
        super().__init__()
        self._recording_path = recording_path
        self._sink: MediaRecorder | MediaBlackhole | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    def bind(self, stream: MediaStream) -> None:
        self.clear()
        super().bind(stream)
        if self._recording_path:
            sink: MediaRecorder | MediaBlackhole = MediaRecorder(self._recording_path)
        else:
            sink = MediaBlackhole()
        for track in stream.tracks:
            sink.addTrack(track)
        self._sink = sink
        self._spawn(sink.start())

    def clear(self) -> None:
        sink, self._sink = self._sink, None
        super().clear()
        if sink is not None:
            self._spawn(sink.stop())

    async def wait_idle(self) -> None:
        """Wait for pending sink start/stop work to finish."""
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Preview sink failed: %s", task.exception())
