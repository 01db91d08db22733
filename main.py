"""peer-room video call service entrypoint."""

import asyncio
import logging
import signal

from dotenv import load_dotenv

from peer_room.config import Settings
from peer_room.media import DeviceCapture, Preview, SinkPreview
from peer_room.peerjs.client import PeerClient
from peer_room.session.controller import CallSession
from peer_room.web import SessionFactory, create_app, start_webapp, stop_webapp

logger = logging.getLogger(__name__)


def make_session_factory(settings: Settings) -> SessionFactory:
    def factory(room_id: str) -> CallSession:
        signaling = PeerClient(
            host=settings.peerjs_host,
            port=settings.peerjs_port,
            path=settings.peerjs_path,
            key=settings.peerjs_key,
            secure=settings.peerjs_secure,
            ice_servers=settings.stun_urls,
        )
        capture = DeviceCapture(
            video_source=settings.video_source,
            video_format=settings.video_format,
            audio_source=settings.audio_source,
            audio_format=settings.audio_format,
        )
        recording = settings.remote_recording.format(room_id=room_id) or None
        return CallSession(
            room_id,
            signaling=signaling,
            capture=capture,
            local_preview=Preview(),
            remote_preview=SinkPreview(recording),
        )

    return factory


async def main() -> None:
    load_dotenv()
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    loop = asyncio.get_running_loop()
    app = create_app(make_session_factory(settings))
    runner = await start_webapp(app, settings.web_host, settings.web_port)
    logger.info(
        "Serving rooms on http://%s:%d (signaling %s:%d%s)",
        settings.web_host,
        settings.web_port,
        settings.peerjs_host,
        settings.peerjs_port,
        settings.peerjs_path,
    )

    shutdown = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)
    try:
        await shutdown.wait()
        logger.info("Shutting down...")
    finally:
        await stop_webapp(runner)


if __name__ == "__main__":
    asyncio.run(main())
