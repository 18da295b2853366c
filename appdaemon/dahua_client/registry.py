from __future__ import annotations

from typing import Any

from dahua_client.client import DahuaCameraClient
from dahua_client.types import CameraConfig


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def camera_config_from_appdaemon_args(args: dict[str, Any]) -> CameraConfig:
    """
    Parse the subset of an AppDaemon app's args that configure the camera connection.
    """
    host = str(args.get("host") or "").strip()
    if not host:
        raise ValueError("host is required")
    scheme = str(args.get("scheme") or "http").strip().lower()
    if scheme not in {"http", "https"}:
        raise ValueError(f"Unsupported camera scheme: {scheme!r}")
    timeout_raw = args.get("request_timeout_s")
    return CameraConfig(
        host=host,
        username=str(args.get("username") or ""),
        password=str(args.get("password") or ""),
        http_port=int(args.get("http_port") or (443 if scheme == "https" else 80)),
        scheme=scheme,
        channel=int(args.get("channel") or 1),
        verify_tls=_as_bool(args.get("verify_tls"), default=False),
        timeout_s=float(timeout_raw) if timeout_raw is not None else 10.0,
        user_agent=str(args.get("user_agent") or "").strip() or None,
    )


def build_camera_client(cfg: CameraConfig) -> DahuaCameraClient:
    return DahuaCameraClient(cfg)
