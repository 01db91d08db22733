"""PeerJS signaling client over aiohttp.

Registration asks the server for an ID over HTTP, then opens the signaling
WebSocket and waits for ``OPEN``.  Afterwards the socket carries OFFER /
ANSWER / CANDIDATE messages for media calls and a HEARTBEAT every few
seconds.  Losing the socket is reported, never silently repaired.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Any

import aiohttp
from aiortc import RTCConfiguration, RTCIceServer
from aiortc.contrib.media import MediaRelay
from pyee.asyncio import AsyncIOEventEmitter

from peer_room.media import MediaStream
from peer_room.peerjs.call import MediaCall
from peer_room.peerjs.errors import PeerError, PeerErrorType
from peer_room.peerjs.message import (
    DEFAULT_KEY,
    MessageType,
    ServerMessage,
    build_message,
    generate_connection_id,
    id_url,
    parse_message,
    random_token,
    socket_url,
)

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 5.0

_HandlerType = Callable[[ServerMessage], Any]


class PeerClient(AsyncIOEventEmitter):
    """Headless PeerJS peer.

    Events: ``open`` (id), ``call`` (inbound MediaCall), ``disconnected`` (id),
    ``close``, ``error`` (PeerError, fatal errors only).
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        path: str = "/",
        key: str = DEFAULT_KEY,
        secure: bool = False,
        ice_servers: Sequence[str] = (),
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        super().__init__()
        self.id: str | None = None
        self.open = False
        self.disconnected = False
        self.destroyed = False
        self._host = host
        self._port = port
        self._path = path
        self._key = key
        self._secure = secure
        self._configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in ice_servers]
        )
        self._heartbeat_interval = heartbeat_interval
        self._http = http_session
        self._owns_http = http_session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._opened: asyncio.Future[None] | None = None
        self._reader: asyncio.Task[None] | None = None
        self._heartbeat: asyncio.Task[None] | None = None
        self._relay = MediaRelay()
        self._calls: dict[str, MediaCall] = {}
        self._lost_messages: dict[str, list[ServerMessage]] = {}
        self._handlers: dict[str, _HandlerType] = {
            MessageType.OPEN: self._handle_open,
            MessageType.ERROR: self._handle_error,
            MessageType.ID_TAKEN: self._handle_id_taken,
            MessageType.INVALID_KEY: self._handle_invalid_key,
            MessageType.OFFER: self._handle_offer,
            MessageType.ANSWER: self._handle_answer,
            MessageType.CANDIDATE: self._handle_candidate,
            MessageType.LEAVE: self._handle_leave,
            MessageType.EXPIRE: self._handle_expire,
        }

    @property
    def calls(self) -> list[MediaCall]:
        return list(self._calls.values())

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(self) -> str:
        """Obtain an ID and open the signaling socket.  Raises PeerError."""
        if self._opened is not None:
            raise RuntimeError("register() may only be called once")
        loop = asyncio.get_running_loop()
        self._opened = loop.create_future()
        if self._http is None:
            self._http = aiohttp.ClientSession()

        peer_id = await self._fetch_id()
        self._check_destroyed()
        token = random_token()
        url = socket_url(
            self._host,
            self._port,
            self._path,
            self._key,
            peer_id=peer_id,
            token=token,
            secure=self._secure,
        )
        try:
            self._ws = await self._http.ws_connect(url)
        except aiohttp.ClientError as exc:
            raise PeerError(
                PeerErrorType.SOCKET_ERROR, f"Could not open signaling socket: {exc}"
            ) from exc
        if self.destroyed:
            await self._ws.close()
            self._check_destroyed()

        self.id = peer_id
        self._reader = loop.create_task(self._read_loop(self._ws))
        try:
            await self._opened
        except PeerError:
            await self._ws.close()
            raise

        self.open = True
        self._heartbeat = loop.create_task(self._heartbeat_loop())
        logger.info("Signaling open, peer ID %s", peer_id)
        self.emit("open", peer_id)
        return peer_id

    async def _fetch_id(self) -> str:
        assert self._http is not None
        url = id_url(self._host, self._port, self._path, self._key, secure=self._secure)
        try:
            async with self._http.get(url) as resp:
                resp.raise_for_status()
                peer_id = (await resp.text()).strip()
        except aiohttp.ClientError as exc:
            raise PeerError(
                PeerErrorType.NETWORK, f"Could not get an ID from the server: {exc}"
            ) from exc
        except UnicodeDecodeError as exc:
            raise PeerError(
                PeerErrorType.SERVER_ERROR, f"Server returned a malformed ID: {exc}"
            ) from exc
        if not peer_id:
            raise PeerError(PeerErrorType.SERVER_ERROR, "Server returned an empty ID")
        return peer_id

    def _check_destroyed(self) -> None:
        if self.destroyed:
            raise PeerError(
                PeerErrorType.SOCKET_CLOSED, "Peer destroyed during registration"
            )

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def call(
        self, peer_id: str, stream: MediaStream, *, metadata: Any = None
    ) -> MediaCall | None:
        """Start an outbound media call.  None if we cannot call right now."""
        if not self.open or self.destroyed:
            logger.warning("Cannot call %s: signaling is not open", peer_id)
            return None
        if not peer_id:
            return None
        call = self._new_call(peer_id, generate_connection_id(), metadata=metadata)
        call.start(stream)
        return call

    def _new_call(self, peer: str, connection_id: str, **kwargs: Any) -> MediaCall:
        call = MediaCall(
            peer,
            connection_id,
            send=self._send,
            configuration=self._configuration,
            relay=self._relay,
            on_closed=self._forget_call,
            **kwargs,
        )
        self._calls[connection_id] = call
        return call

    def _forget_call(self, call: MediaCall) -> None:
        self._calls.pop(call.connection_id, None)
        self._lost_messages.pop(call.connection_id, None)

    # ------------------------------------------------------------------
    # Socket I/O
    # ------------------------------------------------------------------

    async def _send(
        self, type: MessageType, dst: str | None, payload: dict[str, Any] | None
    ) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            logger.warning("Dropping %s to %s: socket closed", type, dst)
            return
        text = build_message(type, dst=dst, payload=payload)
        logger.debug("Send %s", text)
        await ws.send_str(text)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await self._send(MessageType.HEARTBEAT, None, None)
            except (aiohttp.ClientError, ConnectionError) as exc:
                # the read loop reports the lost socket
                logger.warning("Heartbeat to signaling server failed: %s", exc)
                return

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type is aiohttp.WSMsgType.TEXT:
                    await self._dispatch(msg.data)
                elif msg.type is aiohttp.WSMsgType.ERROR:
                    logger.warning("Signaling socket error: %s", ws.exception())
                    break
        finally:
            self._socket_closed()

    async def _dispatch(self, text: str) -> None:
        logger.debug("Received %s", text)
        try:
            msg = parse_message(text)
        except ValueError:
            logger.exception("Failed to parse signaling message")
            return
        handler = self._handlers.get(msg.type)
        if handler is None:
            logger.info("Ignoring %s message from %s", msg.type, msg.src)
            return
        try:
            result = handler(msg)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Failed to handle %s from %s", msg.type, msg.src)

    def _socket_closed(self) -> None:
        assert self._opened is not None
        if not self._opened.done():
            self._opened.set_exception(
                PeerError(
                    PeerErrorType.SOCKET_CLOSED, "Socket closed before the server opened"
                )
            )
            return
        if self.destroyed or not self.open:
            return
        self.open = False
        self.disconnected = True
        if self._heartbeat is not None:
            self._heartbeat.cancel()
        logger.warning("Signaling socket lost for %s", self.id)
        self.emit("disconnected", self.id)

    # ------------------------------------------------------------------
    # Server messages
    # ------------------------------------------------------------------

    def _handle_open(self, msg: ServerMessage) -> None:
        assert self._opened is not None
        if not self._opened.done():
            self._opened.set_result(None)

    def _handle_error(self, msg: ServerMessage) -> Any:
        text = str(msg.payload.get("msg") or "unknown server error")
        return self._abort(PeerError(PeerErrorType.SERVER_ERROR, text))

    def _handle_id_taken(self, msg: ServerMessage) -> Any:
        return self._abort(
            PeerError(PeerErrorType.UNAVAILABLE_ID, f"ID {self.id} is taken")
        )

    def _handle_invalid_key(self, msg: ServerMessage) -> Any:
        return self._abort(
            PeerError(PeerErrorType.INVALID_KEY, f"API KEY {self._key} is invalid")
        )

    async def _abort(self, error: PeerError) -> None:
        assert self._opened is not None
        if not self._opened.done():
            self._opened.set_exception(error)
            return
        logger.error("Signaling error: %s", error)
        if self.listeners("error"):
            self.emit("error", error)
        if self._ws is not None:
            await self._ws.close()

    def _handle_offer(self, msg: ServerMessage) -> Any:
        connection_id = msg.connection_id
        if not msg.src or not connection_id:
            logger.warning("OFFER without src or connectionId")
            return None
        if msg.payload.get("type") != "media":
            logger.info("Ignoring %s connection from %s", msg.payload.get("type"), msg.src)
            return None
        if connection_id in self._calls:
            logger.warning("Duplicate OFFER for %s", connection_id)
            return None
        call = self._new_call(
            msg.src,
            connection_id,
            offer=msg.payload["sdp"],
            metadata=msg.payload.get("metadata"),
        )
        logger.info("Incoming call %s from %s", connection_id, msg.src)
        self.emit("call", call)
        return self._replay_lost(call)

    async def _replay_lost(self, call: MediaCall) -> None:
        for msg in self._lost_messages.pop(call.connection_id, []):
            await self._handle_candidate(msg)

    async def _handle_answer(self, msg: ServerMessage) -> None:
        call = self._calls.get(msg.connection_id or "")
        if call is None:
            logger.warning("ANSWER for unknown connection %s", msg.connection_id)
            return
        await call.handle_answer(msg.payload["sdp"])

    async def _handle_candidate(self, msg: ServerMessage) -> None:
        connection_id = msg.connection_id or ""
        call = self._calls.get(connection_id)
        if call is None:
            # May precede the OFFER it belongs to
            self._lost_messages.setdefault(connection_id, []).append(msg)
            return
        await call.handle_candidate(msg.payload.get("candidate") or {})

    async def _handle_leave(self, msg: ServerMessage) -> None:
        logger.info("Received leave message from %s", msg.src)
        for call in self.calls:
            if call.peer == msg.src:
                await call.close()

    def _handle_expire(self, msg: ServerMessage) -> None:
        error = PeerError(
            PeerErrorType.PEER_UNAVAILABLE, f"Could not connect to peer {msg.src}"
        )
        for call in self.calls:
            if call.peer == msg.src:
                call.fail(error)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def destroy(self) -> None:
        """Close every call and the signaling socket.  Idempotent."""
        if self.destroyed:
            return
        self.destroyed = True
        was_open = self.open
        self.open = False
        for call in self.calls:
            await call.close()
        if self._heartbeat is not None:
            self._heartbeat.cancel()
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
        if self._opened is not None and not self._opened.done():
            self._opened.set_exception(
                PeerError(PeerErrorType.SOCKET_CLOSED, "Peer destroyed")
            )
        if self._owns_http and self._http is not None:
            await self._http.close()
        self._lost_messages.clear()
        logger.info("Peer %s destroyed (was open: %s)", self.id, was_open)
        self.emit("close")
