from __future__ import annotations

import math
from typing import Any, Optional

from .config import Overlay
from .devices import Device, ListenerKind

NO_FACE_LABEL = "-"


def format_number(value: Any, *, precision: int = 1) -> str:
    """55 -> "55", 21.46 -> "21.5", "on" -> "on"."""
    if isinstance(value, bool):
        return str(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return str(value if value is not None else "").strip()
    if math.isnan(number) or math.isinf(number):
        return str(value).strip()
    rounded = round(number, precision)
    if float(rounded).is_integer():
        return str(int(rounded))
    return f"{rounded:.{precision}f}".rstrip("0").rstrip(".")


def face_label_from_payload(payload: Any) -> Optional[str]:
    """First detection with className "face" and a non-empty label, else None."""
    if not isinstance(payload, dict):
        return None
    detections = payload.get("detections") or []
    if not isinstance(detections, list):
        return None
    for det in detections:
        if not isinstance(det, dict) or det.get("className") != "face":
            continue
        label = str(det.get("label") or "").strip()
        if label:
            return label
    return None


def is_blank(text: Optional[str]) -> bool:
    return text is None or not str(text).strip()


def translate(
    kind: ListenerKind,
    payload: Any,
    overlay: Overlay,
    face_tracker: Any = None,
    device: Optional[Device] = None,
) -> str:
    """
    Render overlay text for a live value. Callers must disable the overlay
    instead of writing when the result is blank.
    """
    prefix = overlay.prefix or ""
    if kind == ListenerKind.TEMPERATURE:
        unit = device.temperature_unit if device else ""
        return f"{prefix}{format_number(payload)} {unit}".rstrip()
    if kind == ListenerKind.HUMIDITY:
        return f"{prefix}{format_number(payload)} %"
    if kind == ListenerKind.LOCK:
        return f"{prefix}{'' if payload is None else payload}"
    if kind == ListenerKind.FACE:
        label = face_label_from_payload(payload)
        if not label and face_tracker is not None:
            label = face_tracker.last_label
        return f"{prefix}{label or NO_FACE_LABEL}"
    raise ValueError(f"Unsupported listener kind: {kind!r}")
