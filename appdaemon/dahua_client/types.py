from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class CameraClientError(RuntimeError):
    pass


class OverlayResponseError(CameraClientError):
    """Camera answered, but the body was neither key=value text nor parseable XML."""


@dataclass(frozen=True)
class CameraConfig:
    host: str
    username: str = ""
    password: str = ""
    http_port: int = 80
    scheme: str = "http"
    # RTSP channel as configured on the camera (1-based). VideoWidget tables are 0-based.
    channel: int = 1
    verify_tls: bool = False
    timeout_s: float = 10.0
    user_agent: Optional[str] = None

    @property
    def base_url(self) -> str:
        default_port = 443 if self.scheme == "https" else 80
        if int(self.http_port) == default_port:
            return f"{self.scheme}://{self.host}"
        return f"{self.scheme}://{self.host}:{int(self.http_port)}"

    @property
    def widget_index(self) -> int:
        return max(0, int(self.channel) - 1)
