from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol

_OVERLAY_KEY_RE = re.compile(r"^overlay:(.+):(type|device|prefix|text|update)$")

OVERLAY_FIELDS = ("type", "device", "prefix", "text", "update")


class OverlayType(str, Enum):
    NONE = "None"
    TEXT = "Text"
    DEVICE = "Device"
    FACE_DETECTION = "FaceDetection"

    @classmethod
    def parse(cls, value: Any, default: "OverlayType") -> "OverlayType":
        s = str(value or "").strip().lower()
        for member in cls:
            if s == member.value.lower():
                return member
        if s in {"face", "face_detection"}:
            return cls.FACE_DETECTION
        return default


@dataclass(frozen=True)
class Overlay:
    id: str
    type: OverlayType
    device_id: str = ""
    prefix: str = ""
    text: str = ""


@dataclass(frozen=True)
class OverlayKeys:
    type: str
    device: str
    prefix: str
    text: str
    update: str


def overlay_keys(overlay_id: str) -> OverlayKeys:
    return OverlayKeys(
        type=f"overlay:{overlay_id}:type",
        device=f"overlay:{overlay_id}:device",
        prefix=f"overlay:{overlay_id}:prefix",
        text=f"overlay:{overlay_id}:text",
        update=f"overlay:{overlay_id}:update",
    )


def parse_overlay_key(key: str) -> Optional[tuple[str, str]]:
    """`overlay:3:device` -> ("3", "device"); anything else -> None."""
    m = _OVERLAY_KEY_RE.match(str(key or ""))
    if not m:
        return None
    return m.group(1), m.group(2)


def seed_settings_from_args(overlays: Any) -> dict[str, Any]:
    """
    Flatten the `overlays` app arg into setting keys.

        overlays:
          1: {type: Device, device: sensor.porch_temperature, prefix: "Porch "}
    """
    seeded: dict[str, Any] = {}
    if not isinstance(overlays, dict):
        return seeded
    for overlay_id, entry in overlays.items():
        if not isinstance(entry, dict):
            continue
        keys = overlay_keys(str(overlay_id))
        for field in ("type", "device", "prefix", "text"):
            if entry.get(field) is not None:
                seeded[getattr(keys, field)] = str(entry[field])
    return seeded


class SettingsReader(Protocol):
    def get(self, camera_key: str, key: str, default: Optional[str] = None) -> Optional[str]:
        ...


class OverlayConfig:
    """Read-only view of one camera's overlay settings."""

    def __init__(self, store: SettingsReader, camera_key: str, *, default_type: OverlayType = OverlayType.NONE):
        self._store = store
        self._camera_key = camera_key
        self._default_type = default_type

    @property
    def camera_key(self) -> str:
        return self._camera_key

    def _get(self, key: str) -> str:
        try:
            value = self._store.get(self._camera_key, key)
        except Exception:
            return ""
        return "" if value is None else str(value)

    def resolve(self, overlay_id: str) -> Overlay:
        keys = overlay_keys(overlay_id)
        return Overlay(
            id=str(overlay_id),
            type=OverlayType.parse(self._get(keys.type), self._default_type),
            device_id=self._get(keys.device).strip(),
            prefix=self._get(keys.prefix),
            text=self._get(keys.text),
        )
