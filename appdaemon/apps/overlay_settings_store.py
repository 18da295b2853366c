"""
Overlay settings store (Python-only persistence).

String-keyed settings per camera with optional JSON persistence on disk.
Multiple CameraOverlay apps in the same AppDaemon process share one store,
keyed by camera_key (e.g. "driveway"), so one camera can read another's
overlay configuration when duplicating.
"""

from __future__ import annotations

import json
import os
import threading
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

SettingsListener = Callable[[str, str, Optional[str]], None]


@dataclass(frozen=True)
class SettingsStoreConfig:
    state_path: Optional[Path]


class OverlaySettingsStore:
    """
    Thread-safe store with:
    - in-memory access (fast)
    - JSON persistence (durable across AppDaemon restarts), disabled when state_path is None
    - change listeners, called after every put/delete outside the lock
    """

    def __init__(self, config: Optional[SettingsStoreConfig] = None):
        default_state_path = Path(
            os.environ.get(
                "CAMERA_OVERLAY_STATE_PATH",
                str(Path(__file__).resolve().parent / "_state" / "camera_overlay_settings.json"),
            )
        )
        self._config = config or SettingsStoreConfig(state_path=default_state_path)
        self._lock = threading.RLock()
        self._data: dict[str, Any] = {"version": 1, "cameras": {}}
        self._listeners: list[SettingsListener] = []
        self._load()

    # --- persistence -----------------------------------------------------

    def _load(self) -> None:
        path = self._config.state_path
        if path is None:
            return
        try:
            if not path.exists():
                return
            parsed = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(parsed, dict) and isinstance(parsed.get("cameras"), dict):
                self._data = parsed
        except Exception:
            # If corrupted, keep memory store working; next save will overwrite.
            return

    def _save(self) -> None:
        path = self._config.state_path
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, path)

    def _camera(self, camera_key: str) -> dict[str, str]:
        return self._data.setdefault("cameras", {}).setdefault(camera_key, {})

    def _notify(self, camera_key: str, key: str, value: Optional[str]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(camera_key, key, value)

    # --- public API ------------------------------------------------------

    def get(self, camera_key: str, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            value = self._data.get("cameras", {}).get(camera_key, {}).get(key)
        return default if value is None else value

    def put(self, camera_key: str, key: str, value: Any, *, notify: bool = True) -> None:
        """
        Store a setting. Non-string values are JSON-encoded, None deletes the key.
        With notify=False listeners are skipped (bulk writes the caller reconciles itself).
        """
        if value is None:
            self.delete(camera_key, key, notify=notify)
            return
        value = value if isinstance(value, str) else json.dumps(value)
        with self._lock:
            self._camera(camera_key)[key] = value
            self._save()
        if notify:
            self._notify(camera_key, key, value)

    def delete(self, camera_key: str, key: str, *, notify: bool = True) -> bool:
        with self._lock:
            removed = self._camera(camera_key).pop(key, None) is not None
            if removed:
                self._save()
        if removed and notify:
            self._notify(camera_key, key, None)
        return removed

    def seed(self, camera_key: str, defaults: dict[str, Any]) -> list[str]:
        """
        Fill in keys that are not stored yet (user edits win over apps.yaml).
        Returns the keys that were written. Listeners are not notified.
        """
        written: list[str] = []
        with self._lock:
            camera = self._camera(camera_key)
            for key, value in defaults.items():
                if value is None or key in camera:
                    continue
                camera[key] = value if isinstance(value, str) else json.dumps(value)
                written.append(key)
            if written:
                self._save()
        return written

    def keys(self, camera_key: str) -> list[str]:
        with self._lock:
            return sorted(self._data.get("cameras", {}).get(camera_key, {}).keys())

    def items(self, camera_key: str) -> dict[str, str]:
        with self._lock:
            return deepcopy(self._data.get("cameras", {}).get(camera_key, {}))

    def cameras(self) -> list[str]:
        with self._lock:
            return sorted(self._data.get("cameras", {}).keys())

    def subscribe(self, listener: SettingsListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: SettingsListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)


# Module-level shared store instance (shared across apps in the same AD process).
STORE = OverlaySettingsStore()
