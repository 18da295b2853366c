"""
Unit tests for the camera_overlay AppDaemon app.

These tests run without AppDaemon; we mock hassapi, swap the camera client for
a recording fake and drive the real UpdateQueue worker.
"""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import yaml


# Mock hassapi before importing camera_overlay (tests run without AppDaemon)
class _MockHass:
    def __init__(self, ad, config):
        pass


mock_hass = MagicMock()
mock_hass.Hass = _MockHass
sys.modules["hassapi"] = mock_hass

# Add apps + shared libraries to path for imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "apps"))

import camera_overlay  # noqa: E402
from camera_overlay import CameraOverlay  # noqa: E402
from camera_overlay_app.registry import REGISTRY  # noqa: E402
from dahua_client.registry import camera_config_from_appdaemon_args  # noqa: E402
from dahua_client.types import CameraClientError, OverlayResponseError  # noqa: E402

STATES = {
    "sensor.porch_temperature": {
        "state": "71.04",
        "attributes": {"device_class": "temperature", "unit_of_measurement": "°F", "friendly_name": "Porch"},
    },
    "sensor.porch_humidity": {
        "state": "40",
        "attributes": {"device_class": "humidity", "unit_of_measurement": "%"},
    },
    "lock.front_door": {"state": "locked", "attributes": {"friendly_name": "Front Door"}},
    "image_processing.driveway_face": {"state": "0", "attributes": {}},
}


def _get_state(entity_id=None, attribute=None, **kwargs):
    s = STATES.get(entity_id)
    if s is None:
        return None
    if attribute == "all":
        return s
    if attribute:
        return s["attributes"].get(attribute)
    return s["state"]


class _FakeClient:
    def __init__(self, overlays=None):
        self.overlays = dict(overlays or {})
        self.fetch_error = None
        self.calls = []

    def fetch_overlay_config(self):
        if self.fetch_error:
            raise self.fetch_error
        return dict(self.overlays)

    def set_overlay_text(self, overlay_id, text):
        self.calls.append(("update", overlay_id, text))

    def disable_overlay_text(self, overlay_id):
        self.calls.append(("disable", overlay_id))


class TestCameraOverlay:
    @pytest.fixture(autouse=True)
    def _tmp(self, tmp_path):
        self.tmp_path = tmp_path
        self.apps = []
        yield
        for app in self.apps:
            if not app._killed:
                app.terminate()

    def _make_app(self, args: dict, client: _FakeClient, monkeypatch) -> CameraOverlay:
        monkeypatch.setattr(camera_overlay, "build_camera_client", lambda cfg: client)
        ad = MagicMock()
        config = MagicMock()
        app = CameraOverlay(ad, config)
        app.args = {
            "host": "192.168.1.108",
            "update_min_interval_s": 0,
            "settings_state_path": str(self.tmp_path / f"{args['camera_key']}.json"),
            **args,
        }
        app.log = MagicMock()
        app.get_state = MagicMock(side_effect=_get_state)
        app.listen_state = MagicMock(side_effect=lambda cb, entity, **kw: f"state:{entity}:{id(cb)}")
        app.listen_event = MagicMock(side_effect=lambda cb, event, **kw: f"event:{event}:{id(cb)}")
        app.cancel_listen_state = MagicMock()
        app.cancel_listen_event = MagicMock()
        app.run_in = MagicMock(side_effect=lambda cb, delay, **kw: cb(kw) if delay == 0 else "run-in-handle")
        app.run_every = MagicMock(return_value="timer-1")
        app.cancel_timer = MagicMock()
        app.fire_event = MagicMock()
        app.initialize()
        self.apps.append(app)
        return app

    def _started(self, args: dict, client: _FakeClient, monkeypatch) -> CameraOverlay:
        app = self._make_app(args, client, monkeypatch)
        app._on_start({})
        app._updates.join()
        return app

    def test_initialize_registers_and_schedules_start(self, monkeypatch):
        app = self._make_app({"camera_key": "cam_init", "initial_delay_s": 5}, _FakeClient(), monkeypatch)
        assert REGISTRY.lookup("cam_init") is app
        app.run_in.assert_called_once_with(app._on_start, 5.0)
        assert app.listen_event.call_args[0][1] == "camera_overlay/put_setting"

    def test_start_fetches_overlays_and_schedules_tick(self, monkeypatch):
        client = _FakeClient({"0": "Driveway", "1": "Porch", "10": "x", "2": ""})
        app = self._started({"camera_key": "cam_start", "update_interval_s": 15}, client, monkeypatch)

        assert app.overlay_ids == ["0", "1", "2", "10"]
        assert app.settings_store.get("cam_start", "overlay:1:text") == "Porch"
        app.run_every.assert_called_once_with(app._on_tick, "now+15", 15.0)
        app.fire_event.assert_called_once_with(
            "camera_overlay/overlay_ids_refreshed", camera="cam_start", overlay_ids=["0", "1", "2", "10"]
        )
        # Stored camera text is not pushed back to the camera.
        assert client.calls == []

    def test_seeded_overlays_bind_and_tick_refreshes(self, monkeypatch):
        client = _FakeClient({"1": "old", "2": "old"})
        app = self._started(
            {
                "camera_key": "cam_seed",
                "overlays": {
                    1: {"type": "Device", "device": "sensor.porch_temperature", "prefix": "Porch "},
                    2: {"type": "Device", "device": "sensor.porch_humidity", "prefix": "Hum: "},
                },
            },
            client,
            monkeypatch,
        )
        assert set(app._reconciler.bindings) == {"1", "2"}
        assert app.listen_state.call_count == 2

        app._on_tick({})
        app._updates.join()
        assert client.calls == [("update", "1", "Porch 71 °F"), ("update", "2", "Hum: 40 %")]

    def test_seeded_text_overlay_survives_fetch_and_is_pushed(self, monkeypatch):
        client = _FakeClient({"1": "", "2": "Gate"})
        app = self._started(
            {
                "camera_key": "cam_seed_text",
                "overlays": {1: {"type": "Text", "text": "Garage"}, 2: {"type": "Text", "text": "Gate"}},
            },
            client,
            monkeypatch,
        )
        assert app.settings_store.get("cam_seed_text", "overlay:1:text") == "Garage"
        # Overlay 2 already shows its configured text.
        assert client.calls == [("update", "1", "Garage")]

        app._on_tick({})
        client.overlays["1"] = "Garage"
        app.put_setting("getCurrentOverlayConfigurations", None)
        app._updates.join()
        assert client.calls == [("update", "1", "Garage")]

        app.put_setting("overlay:1:text", "Shop")
        app._updates.join()
        assert client.calls[-1] == ("update", "1", "Shop")

    def test_put_setting_device_change_rebinds_and_pushes(self, monkeypatch):
        client = _FakeClient({"3": ""})
        app = self._started({"camera_key": "cam_edit"}, client, monkeypatch)

        app.put_setting("overlay:3:type", "Device")
        app.put_setting("overlay:3:device", "sensor.porch_temperature")
        app.put_setting("overlay:3:prefix", "Out ")
        app.put_setting("overlay:3:device", "lock.front_door")
        app._updates.join()

        binding = app._reconciler.bindings["3"]
        assert binding.device_id == "lock.front_door"
        assert app.cancel_listen_state.call_count == 1
        assert client.calls[-1] == ("update", "3", "Out locked")

    def test_live_state_event_updates_overlay(self, monkeypatch):
        client = _FakeClient({"2": ""})
        app = self._started(
            {"camera_key": "cam_live", "overlays": {2: {"type": "Device", "device": "sensor.porch_humidity", "prefix": "Hum: "}}},
            client,
            monkeypatch,
        )
        on_state = app.listen_state.call_args[0][0]
        on_state("sensor.porch_humidity", "state", "40", "55", {})
        on_state("sensor.porch_humidity", "state", "55", "unavailable", {})
        app._updates.join()
        assert client.calls == [("update", "2", "Hum: 55 %")]

    def test_text_with_empty_value_disables(self, monkeypatch):
        client = _FakeClient({"2": "Gate"})
        app = self._started({"camera_key": "cam_text"}, client, monkeypatch)
        app.put_setting("overlay:2:type", "Text")
        app.put_setting("overlay:2:text", "")
        app._updates.join()
        assert ("update", "2", "") not in client.calls
        assert client.calls[-1] == ("disable", "2")

    def test_face_detection_overlay_uses_detector(self, monkeypatch):
        client = _FakeClient({"4": ""})
        app = self._started(
            {
                "camera_key": "cam_face",
                "detector_entity_id": "image_processing.driveway_face",
                "overlays": {4: {"type": "FaceDetection", "prefix": "Seen: "}},
            },
            client,
            monkeypatch,
        )
        face_calls = [c for c in app.listen_event.call_args_list if c[0][1] == "image_processing.detect_face"]
        # one per-overlay binding + the shared detector listener
        assert len(face_calls) == 2
        for c in face_calls:
            assert c.kwargs["entity_id"] == "image_processing.driveway_face"
            c[0][0]("image_processing.detect_face", {"name": "Alice", "entity_id": "image_processing.driveway_face"}, {})
        app._updates.join()
        assert app._face.last_label == "Alice"
        assert client.calls[-1] == ("update", "4", "Seen: Alice")

    def test_force_update_refresh_policy_keeps_subscriptions(self, monkeypatch):
        client = _FakeClient({"1": ""})
        app = self._started({"camera_key": "cam_force"}, client, monkeypatch)
        app.settings_store.put("cam_force", "overlay:1:type", "Text", notify=False)
        app.settings_store.put("cam_force", "overlay:1:text", "Hello", notify=False)

        app.put_setting("overlay:1:update", None)
        app._updates.join()
        assert client.calls == [("update", "1", "Hello")]
        assert app.settings_store.get("cam_force", "overlay:1:update") is None

    def test_force_update_reconcile_policy_rebinds(self, monkeypatch):
        client = _FakeClient({"1": ""})
        app = self._started({"camera_key": "cam_force2", "force_update_policy": "reconcile"}, client, monkeypatch)
        app.settings_store.put("cam_force2", "overlay:1:type", "Device", notify=False)
        app.settings_store.put("cam_force2", "overlay:1:device", "lock.front_door", notify=False)

        app.put_setting("overlay:1:update", True)
        app._updates.join()
        assert app._reconciler.bindings["1"].device_id == "lock.front_door"
        assert client.calls == [("update", "1", "locked")]

    def test_duplicate_copies_type_device_prefix_but_not_text(self, monkeypatch):
        src_client = _FakeClient({"1": "Source title", "2": "Other"})
        src = self._started(
            {
                "camera_key": "cam_src",
                "overlays": {
                    1: {"type": "Device", "device": "lock.front_door", "prefix": "Door: ", "text": "src text"},
                    2: {"type": "Text", "text": "Source only"},
                },
            },
            src_client,
            monkeypatch,
        )
        dst_client = _FakeClient({"1": "Dest title", "2": "Dest two"})
        dst = self._started({"camera_key": "cam_dst"}, dst_client, monkeypatch)

        dst._on_put_setting_event(
            "camera_overlay/put_setting", {"camera": "cam_dst", "key": "duplicateFromDevice", "value": "cam_src"}, {}
        )
        dst._updates.join()

        store = dst.settings_store
        assert store.get("cam_dst", "overlay:1:type") == "Device"
        assert store.get("cam_dst", "overlay:1:device") == "lock.front_door"
        assert store.get("cam_dst", "overlay:1:prefix") == "Door: "
        assert store.get("cam_dst", "overlay:2:type") == "Text"
        assert store.get("cam_dst", "overlay:1:text") == "Dest title"
        assert store.get("cam_dst", "overlay:2:text") == "Dest two"
        assert dst._reconciler.bindings["1"].device_id == "lock.front_door"
        assert ("update", "1", "Door: locked") in dst_client.calls
        assert ("update", "2", "Dest two") in dst_client.calls
        assert src.overlay_ids == ["1", "2"]
        # The source keeps its own configured text.
        assert src.settings_store.get("cam_src", "overlay:2:text") == "Source only"
        assert ("update", "2", "Source only") in src_client.calls

    def test_duplicate_from_unknown_camera_is_noop(self, monkeypatch):
        app = self._started({"camera_key": "cam_lonely"}, _FakeClient({"1": ""}), monkeypatch)
        assert app.duplicate_from_device("nope") == 0
        assert app.duplicate_from_device("cam_lonely") == 0

    def test_malformed_camera_response_keeps_previous_ids(self, monkeypatch):
        client = _FakeClient({"1": "a"})
        app = self._started({"camera_key": "cam_bad"}, client, monkeypatch)
        client.fetch_error = OverlayResponseError("unrecognized")
        assert app.refresh_overlay_ids() == ["1"]
        assert app.overlay_ids == ["1"]
        assert any(c.kwargs.get("level") == "ERROR" for c in app.log.call_args_list)

        client.fetch_error = CameraClientError("timeout")
        app.put_setting("getCurrentOverlayConfigurations", None)
        assert app.overlay_ids == ["1"]

    def test_update_interval_setting_reschedules_tick(self, monkeypatch):
        app = self._started({"camera_key": "cam_interval"}, _FakeClient({"1": ""}), monkeypatch)
        app.put_setting("updateInterval", 30)
        app.cancel_timer.assert_called_once_with("timer-1")
        assert app.run_every.call_args[0][1:] == ("now+30", 30.0)

    def test_put_setting_event_for_other_camera_is_ignored(self, monkeypatch):
        app = self._started({"camera_key": "cam_mine"}, _FakeClient({"1": ""}), monkeypatch)
        app._on_put_setting_event("camera_overlay/put_setting", {"camera": "cam_other", "key": "overlay:1:type", "value": "Text"}, {})
        assert app.settings_store.get("cam_mine", "overlay:1:type") is None

    def test_terminate_releases_everything(self, monkeypatch):
        client = _FakeClient({"1": "", "4": ""})
        app = self._started(
            {
                "camera_key": "cam_term",
                "detector_entity_id": "image_processing.driveway_face",
                "overlays": {
                    1: {"type": "Device", "device": "lock.front_door"},
                    4: {"type": "FaceDetection"},
                },
            },
            client,
            monkeypatch,
        )
        app.terminate()
        app.cancel_timer.assert_called_once_with("timer-1")
        assert app.cancel_listen_state.call_count == 1
        assert app.cancel_listen_event.call_count == 2
        assert app._reconciler.bindings == {}
        assert REGISTRY.lookup("cam_term") is None

        # Late config writes after release do nothing.
        app.settings_store.put("cam_term", "overlay:1:text", "late")
        app._on_tick({})
        assert client.calls == []

    def test_invalid_force_update_policy_rejected(self, monkeypatch):
        with pytest.raises(ValueError):
            self._make_app({"camera_key": "cam_policy", "force_update_policy": "sometimes"}, _FakeClient(), monkeypatch)


def test_example_apps_yaml_is_valid():
    class _Loader(yaml.SafeLoader):
        pass

    _Loader.add_constructor("!secret", lambda loader, node: f"secret:{loader.construct_scalar(node)}")
    path = Path(__file__).resolve().parent.parent / "apps" / "camera_overlay.yaml"
    apps = yaml.load(path.read_text(encoding="utf-8"), Loader=_Loader)

    assert apps
    for name, args in apps.items():
        assert args["module"] == "camera_overlay", name
        assert args["class"] == "CameraOverlay", name
        cfg = camera_config_from_appdaemon_args(args)
        assert cfg.password.startswith("secret:")
        for overlay_id, entry in (args.get("overlays") or {}).items():
            assert entry["type"] in {"None", "Text", "Device", "FaceDetection"}, overlay_id
