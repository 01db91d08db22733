"""Interfaces the call session needs from its collaborators."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from peer_room.media import MediaStream


class CallHandle(Protocol):
    """One negotiated (or negotiating) media call.

    Emits ``stream`` (remote MediaStream), ``close`` and ``error`` (exception).
    """

    peer: str

    def on(self, event: str, f: Callable[..., Any]) -> Any: ...

    def answer(self, stream: MediaStream) -> None: ...

    async def close(self) -> None: ...


class SignalingClient(Protocol):
    """Identity registration and call setup through an external service.

    Emits ``call`` (inbound CallHandle), ``disconnected``, ``close`` and
    ``error`` (exception) once registered.
    """

    def on(self, event: str, f: Callable[..., Any]) -> Any: ...

    async def register(self) -> str: ...

    def call(self, peer_id: str, stream: MediaStream) -> CallHandle | None: ...

    async def destroy(self) -> None: ...


class MediaCapture(Protocol):
    async def request_capture(
        self, *, audio: bool = True, video: bool = True
    ) -> MediaStream: ...
