from __future__ import annotations

import threading
from typing import Any, Optional


class CameraRegistry:
    """
    Running CameraOverlay apps keyed by camera_key.

    Apps register in initialize() and unregister in terminate(); duplication
    looks other cameras up here instead of reaching into AppDaemon internals.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._apps: dict[str, Any] = {}

    def register(self, camera_key: str, app: Any) -> None:
        with self._lock:
            self._apps[camera_key] = app

    def unregister(self, camera_key: str, app: Any = None) -> None:
        with self._lock:
            # A reloaded app may already have replaced us.
            if app is not None and self._apps.get(camera_key) is not app:
                return
            self._apps.pop(camera_key, None)

    def lookup(self, camera_key: str) -> Optional[Any]:
        with self._lock:
            return self._apps.get(camera_key)


REGISTRY = CameraRegistry()
