"""
Camera overlay sync.

Keeps the on-screen text overlays ("custom titles") of a Dahua/Amcrest camera
in sync with Home Assistant entities: temperature and humidity sensors, locks,
and the last face recognized by an image_processing entity. One app instance
per camera.

Settings are edited by firing `camera_overlay/put_setting`:

    event_type: camera_overlay/put_setting
    event_data: {camera: driveway, key: "overlay:1:device", value: sensor.porch_temperature}

Keys: `overlay:<id>:{type|device|prefix|text|update}`, `updateInterval`,
`duplicateFromDevice` (value: another camera_key), `getCurrentOverlayConfigurations`.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import hassapi as hass

from overlay_settings_store import STORE as OVERLAY_SETTINGS_STORE, OverlaySettingsStore, SettingsStoreConfig

from camera_overlay_app.config import OverlayConfig, OverlayType, overlay_keys, parse_overlay_key, seed_settings_from_args
from camera_overlay_app.devices import HassDeviceHost
from camera_overlay_app.face_tracker import FaceTracker
from camera_overlay_app.reconciler import ListenerReconciler
from camera_overlay_app.registry import REGISTRY
from camera_overlay_app.update_queue import UpdateQueue

# Keep the camera client out of app modules. AppDaemon's sys.path may only
# include `appdaemon/apps`, so add the parent dir as a fallback.
try:
    from dahua_client.registry import build_camera_client, camera_config_from_appdaemon_args
    from dahua_client.types import CameraClientError, OverlayResponseError
except Exception:  # pragma: no cover
    import sys

    sys.path.append(str(Path(__file__).resolve().parents[1]))
    from dahua_client.registry import build_camera_client, camera_config_from_appdaemon_args
    from dahua_client.types import CameraClientError, OverlayResponseError

PUT_SETTING_EVENT = "camera_overlay/put_setting"
IDS_REFRESHED_EVENT = "camera_overlay/overlay_ids_refreshed"

FORCE_UPDATE_POLICIES = {"refresh", "reconcile"}


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except Exception:
        return default


def _overlay_sort_key(overlay_id: str) -> tuple[int, str]:
    return (int(overlay_id), "") if overlay_id.isdigit() else (1 << 30, overlay_id)


class CameraOverlay(hass.Hass):
    DEFAULTS = {
        "http_port": 80,
        "channel": 1,
        "scheme": "http",
        "request_timeout_s": 10,
        # Periodic full resync (seconds). Overridable at runtime via the `updateInterval` setting.
        "update_interval_s": 10,
        # Minimum gap between two camera writes.
        "update_min_interval_s": 0.3,
        # Let HA finish starting before the first camera fetch.
        "initial_delay_s": 2,
        # `overlay:<id>:update`: "refresh" pushes text only, "reconcile" also re-checks the listener.
        "force_update_policy": "refresh",
        "default_overlay_type": "None",
        "detector_entity_id": "",
        "log_overlay_events": False,
    }

    def initialize(self) -> None:
        # Required args
        self.camera_key: str = str(self.args["camera_key"])
        self.camera_config = camera_config_from_appdaemon_args(self.args)

        # Optional args
        self.detector_entity_id: str = str(
            self.args.get("detector_entity_id", self.DEFAULTS["detector_entity_id"]) or ""
        ).strip()
        self.update_interval_s: float = _safe_float(
            self.args.get("update_interval_s", self.DEFAULTS["update_interval_s"]),
            default=float(self.DEFAULTS["update_interval_s"]),
        )
        self.update_min_interval_s: float = _safe_float(
            self.args.get("update_min_interval_s", self.DEFAULTS["update_min_interval_s"]),
            default=float(self.DEFAULTS["update_min_interval_s"]),
        )
        self.initial_delay_s: float = _safe_float(
            self.args.get("initial_delay_s", self.DEFAULTS["initial_delay_s"]),
            default=float(self.DEFAULTS["initial_delay_s"]),
        )
        self.force_update_policy: str = str(
            self.args.get("force_update_policy", self.DEFAULTS["force_update_policy"])
        ).strip().lower()
        self.default_overlay_type = OverlayType.parse(
            self.args.get("default_overlay_type", self.DEFAULTS["default_overlay_type"]), OverlayType.NONE
        )
        self.log_overlay_events: bool = _as_bool(
            self.args.get("log_overlay_events", self.DEFAULTS["log_overlay_events"])
        )

        if self.force_update_policy not in FORCE_UPDATE_POLICIES:
            raise ValueError(f"force_update_policy must be one of {sorted(FORCE_UPDATE_POLICIES)}")
        if self.update_interval_s <= 0:
            raise ValueError("update_interval_s must be > 0")

        # A dedicated state file keeps this camera's settings apart from the shared store.
        state_path = self.args.get("settings_state_path")
        if state_path:
            self.settings_store = OverlaySettingsStore(SettingsStoreConfig(state_path=Path(str(state_path))))
        else:
            self.settings_store = OVERLAY_SETTINGS_STORE
        seeded = self.settings_store.seed(self.camera_key, seed_settings_from_args(self.args.get("overlays")))

        self.overlay_config = OverlayConfig(
            self.settings_store, self.camera_key, default_type=self.default_overlay_type
        )
        self.overlay_ids: list[str] = []

        # Internal state
        self._killed = False
        self._timer = None
        self._client = build_camera_client(self.camera_config)
        self._updates = UpdateQueue(
            self._client,
            min_interval_s=self.update_min_interval_s,
            log=self._log,
            name=f"camera_overlay_{self.camera_key}",
        )
        self._host = HassDeviceHost(self)
        self._face = FaceTracker(self._host, self.detector_entity_id, log=self._log)
        self._reconciler = ListenerReconciler(
            self.overlay_config,
            self._host,
            self._updates,
            self._face,
            log=self._log,
            log_events=self.log_overlay_events,
        )

        self._updates.start()
        self.settings_store.subscribe(self._on_store_change)
        REGISTRY.register(self.camera_key, self)

        self._log(
            f"camera={self.camera_config.base_url} channel={self.camera_config.channel} "
            f"interval={self._effective_interval_s():.0f}s spacing={self.update_min_interval_s:.2f}s "
            f"detector={self.detector_entity_id or '-'} seeded={len(seeded)}",
            level="INFO",
        )

        self.listen_event(self._on_put_setting_event, PUT_SETTING_EVENT)
        self.run_in(self._on_start, self.initial_delay_s)

    def _log(self, message: str, level: str = "INFO") -> None:
        self.log(f"CameraOverlay[{self.camera_key}]: {message}", level=level)

    # --- scheduling ------------------------------------------------------

    def _effective_interval_s(self) -> float:
        raw = self.settings_store.get(self.camera_key, "updateInterval")
        interval = _safe_float(raw, default=self.update_interval_s) if raw is not None else self.update_interval_s
        return interval if interval > 0 else self.update_interval_s

    def _schedule_tick(self) -> None:
        if self._timer is not None:
            self.cancel_timer(self._timer)
            self._timer = None
        interval = self._effective_interval_s()
        self._timer = self.run_every(self._on_tick, f"now+{int(max(1, interval))}", interval)

    def _on_start(self, kwargs) -> None:
        if self._killed:
            return
        self.refresh_overlay_ids()
        self._schedule_tick()

    def _on_tick(self, kwargs) -> None:
        if self._killed:
            return
        self._reconciler.resync(self.overlay_ids, refresh=True)

    # --- camera state ----------------------------------------------------

    def refresh_overlay_ids(self) -> list[str]:
        """
        Pull current titles from the camera, store them as `overlay:<id>:text`
        and resync listeners against the reported id set.
        """
        try:
            overlays = self._client.fetch_overlay_config()
        except OverlayResponseError as e:
            self._log(f"no valid overlay data found: {e}", level="ERROR")
            return list(self.overlay_ids)
        except CameraClientError as e:
            self._log(f"failed to fetch overlay configuration: {e}", level="WARNING")
            return list(self.overlay_ids)

        ids = sorted(overlays, key=_overlay_sort_key)
        stale_text: list[str] = []
        for overlay_id in ids:
            text_key = overlay_keys(overlay_id).text
            stored = self.settings_store.get(self.camera_key, text_key)
            if stored is not None and self.overlay_config.resolve(overlay_id).type == OverlayType.TEXT:
                # Configured Text wins over whatever the camera shows.
                if stored != overlays[overlay_id]:
                    stale_text.append(overlay_id)
                continue
            # Camera-side text is the current state, not an edit; don't push it back.
            self.settings_store.put(self.camera_key, text_key, overlays[overlay_id], notify=False)
        self.overlay_ids = ids
        self._log(f"overlays on camera: {ids}", level="INFO")
        self._reconciler.resync(ids)
        for overlay_id in stale_text:
            self._reconciler.refresh_overlay(overlay_id)
        self.fire_event(IDS_REFRESHED_EVENT, camera=self.camera_key, overlay_ids=ids)
        return ids

    # --- settings --------------------------------------------------------

    def put_setting(self, key: str, value: Any) -> None:
        if key == "getCurrentOverlayConfigurations":
            self.refresh_overlay_ids()
            return
        if key == "duplicateFromDevice":
            self.duplicate_from_device(str(value or ""))
            return
        parsed = parse_overlay_key(key)
        if parsed and parsed[1] == "update":
            self.force_update(parsed[0])
            return
        self.settings_store.put(self.camera_key, key, value)

    def _on_store_change(self, camera_key: str, key: str, value: Optional[str]) -> None:
        if camera_key != self.camera_key or self._killed:
            return
        # Listeners run on the writer's thread; hop back onto ours.
        self.run_in(self._on_setting_changed, 0, key=key)

    def _on_setting_changed(self, kwargs) -> None:
        if self._killed:
            return
        key = str(kwargs.get("key") or "")
        if key == "updateInterval":
            if self._timer is not None:
                self._schedule_tick()
            return
        parsed = parse_overlay_key(key)
        if not parsed:
            return
        overlay_id = parsed[0]
        if overlay_id not in self.overlay_ids:
            self.overlay_ids = sorted(self.overlay_ids + [overlay_id], key=_overlay_sort_key)
        self._reconciler.reconcile_overlay(overlay_id, push=True)

    def force_update(self, overlay_id: str) -> None:
        self._log(f"overlay {overlay_id}: forced update ({self.force_update_policy})", level="INFO")
        if self.force_update_policy == "reconcile":
            self._reconciler.reconcile_overlay(overlay_id, push=True)
        else:
            self._reconciler.refresh_overlay(overlay_id)

    def duplicate_from_device(self, source_camera_key: str) -> int:
        """
        Copy type/device/prefix of every overlay another camera has, by overlay id.
        Literal text is camera-specific and never copied.
        """
        source = REGISTRY.lookup(source_camera_key)
        if source is None or source is self:
            self._log(f"duplicate: camera {source_camera_key!r} is not running", level="WARNING")
            return 0

        self.refresh_overlay_ids()
        copied: list[str] = []
        for overlay_id in list(source.overlay_ids):
            overlay = source.overlay_config.resolve(overlay_id)
            keys = overlay_keys(overlay_id)
            self.settings_store.put(self.camera_key, keys.type, overlay.type.value, notify=False)
            self.settings_store.put(self.camera_key, keys.device, overlay.device_id, notify=False)
            self.settings_store.put(self.camera_key, keys.prefix, overlay.prefix, notify=False)
            copied.append(overlay_id)

        for overlay_id in copied:
            if overlay_id not in self.overlay_ids:
                self.overlay_ids = sorted(self.overlay_ids + [overlay_id], key=_overlay_sort_key)
            self._reconciler.reconcile_overlay(overlay_id, push=True)
        self._log(f"duplicated {len(copied)} overlay(s) from {source_camera_key}", level="INFO")
        return len(copied)

    def _on_put_setting_event(self, event_name, data, kwargs) -> None:
        if not isinstance(data, dict):
            return
        if str(data.get("camera") or "") != self.camera_key:
            return
        key = str(data.get("key") or "").strip()
        if not key:
            return
        try:
            self.put_setting(key, data.get("value"))
        except Exception as e:
            self._log(f"put_setting {key!r} failed: {e!r}", level="WARNING")

    # --- lifecycle -------------------------------------------------------

    def terminate(self) -> None:
        self._killed = True
        self.settings_store.unsubscribe(self._on_store_change)
        if self._timer is not None:
            try:
                self.cancel_timer(self._timer)
            except Exception as e:
                self._log(f"failed to cancel timer: {e!r}", level="WARNING")
            self._timer = None
        self._reconciler.release()
        self._updates.stop(timeout_s=5)
        REGISTRY.unregister(self.camera_key, self)
        self._log("terminated", level="INFO")
