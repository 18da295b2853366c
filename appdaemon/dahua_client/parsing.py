"""
Normalize VideoWidget responses into `{overlay_id: text}`.

Dahua firmware answers `getConfig&name=VideoWidget` with line-oriented
`key=value` text. Some Amcrest builds answer with an XML document instead.
Both shapes reduce to the same mapping.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from typing import Optional

from dahua_client.types import OverlayResponseError

_CUSTOM_TITLE_TEXT_RE = re.compile(r"^table\.VideoWidget\[(\d+)\]\.CustomTitle\[(\d+)\]\.Text$")


def parse_key_value_lines(body: str) -> dict[str, str]:
    config: dict[str, str] = {}
    for line in body.splitlines():
        trimmed = line.strip()
        if not trimmed or "=" not in trimmed:
            continue
        key, _, value = trimmed.partition("=")
        config[key.strip()] = value.strip()
    return config


def overlays_from_key_values(config: dict[str, str], *, widget_index: Optional[int] = None) -> dict[str, str]:
    overlays: dict[str, str] = {}
    for key, value in config.items():
        m = _CUSTOM_TITLE_TEXT_RE.match(key)
        if not m:
            continue
        if widget_index is not None and int(m.group(1)) != int(widget_index):
            continue
        overlays[m.group(2)] = value
    return overlays


def _local(tag: str) -> str:
    # Strip "{namespace}" so lookups work regardless of xmlns.
    return tag.rsplit("}", 1)[-1]


def _child_text(elem: ET.Element, *names: str) -> Optional[str]:
    for child in elem:
        if _local(child.tag) in names:
            return (child.text or "").strip()
    return None


def overlays_from_xml(body: str) -> dict[str, str]:
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise OverlayResponseError(f"unparseable VideoWidget XML: {e}") from e

    overlays: dict[str, str] = {}
    for elem in root.iter():
        if _local(elem.tag) not in {"TextOverlay", "CustomTitle"}:
            continue
        overlay_id = _child_text(elem, "id")
        if not overlay_id:
            continue
        text = _child_text(elem, "displayText", "Text")
        overlays[overlay_id] = text or ""
    return overlays


def parse_overlay_response(body: str, *, widget_index: Optional[int] = None) -> dict[str, str]:
    """
    Return `{overlay_id: text}` from a VideoWidget getConfig body.
    Raises OverlayResponseError when the body is neither format.
    """
    text = (body or "").strip()
    if not text:
        raise OverlayResponseError("empty VideoWidget response")
    if text.startswith("<"):
        return overlays_from_xml(text)

    config = parse_key_value_lines(text)
    if not config:
        raise OverlayResponseError(f"unrecognized VideoWidget response: {text[:200]!r}")
    return overlays_from_key_values(config, widget_index=widget_index)
