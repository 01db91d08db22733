"""Runtime settings read from the environment (``.env`` via python-dotenv)."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping

DEFAULT_STUN_URLS = ("stun:stun.l.google.com:19302",)

_TRUE = {"1", "true", "yes", "on"}


@dataclasses.dataclass(frozen=True)
class Settings:
    peerjs_host: str = "localhost"
    peerjs_port: int = 9000
    peerjs_path: str = "/myapp"
    peerjs_key: str = "peerjs"
    peerjs_secure: bool = False
    stun_urls: tuple[str, ...] = DEFAULT_STUN_URLS
    video_source: str = "/dev/video0"
    video_format: str = "v4l2"
    audio_source: str = "default"
    audio_format: str = "pulse"
    remote_recording: str = ""
    web_host: str = "0.0.0.0"
    web_port: int = 8080
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        defaults = cls()

        def get(name: str, default: str) -> str:
            return env.get(name, default).strip()

        stun = get("STUN_URLS", ",".join(defaults.stun_urls))
        return cls(
            peerjs_host=get("PEERJS_HOST", defaults.peerjs_host),
            peerjs_port=int(get("PEERJS_PORT", str(defaults.peerjs_port))),
            peerjs_path=get("PEERJS_PATH", defaults.peerjs_path),
            peerjs_key=get("PEERJS_KEY", defaults.peerjs_key),
            peerjs_secure=get("PEERJS_SECURE", "false").lower() in _TRUE,
            stun_urls=tuple(u.strip() for u in stun.split(",") if u.strip()),
            video_source=get("VIDEO_SOURCE", defaults.video_source),
            video_format=get("VIDEO_FORMAT", defaults.video_format),
            audio_source=get("AUDIO_SOURCE", defaults.audio_source),
            audio_format=get("AUDIO_FORMAT", defaults.audio_format),
            remote_recording=get("REMOTE_RECORDING", defaults.remote_recording),
            web_host=get("WEB_HOST", defaults.web_host),
            web_port=int(get("WEB_PORT", str(defaults.web_port))),
            log_level=get("LOG_LEVEL", defaults.log_level).upper(),
        )
