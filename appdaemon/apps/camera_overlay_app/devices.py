"""
Device capabilities and the host subscription API.

Home Assistant has no notion of "a device implementing Thermometer"; we derive
an explicit capability set from the entity domain and device_class so the
overlay code never inspects raw entity ids.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol

UNAVAILABLE_STATES = {"unknown", "unavailable", "none", ""}

FACE_EVENT = "image_processing.detect_face"


class Capability(str, Enum):
    THERMOMETER = "Thermometer"
    HUMIDITY_SENSOR = "HumiditySensor"
    LOCK = "Lock"
    OBJECT_DETECTOR = "ObjectDetector"


class ListenerKind(str, Enum):
    TEMPERATURE = "Temperature"
    HUMIDITY = "Humidity"
    LOCK = "Lock"
    FACE = "Face"


# Resolution order for Device overlays. First match wins.
DEVICE_KIND_PRIORITY: tuple[tuple[Capability, ListenerKind], ...] = (
    (Capability.THERMOMETER, ListenerKind.TEMPERATURE),
    (Capability.HUMIDITY_SENSOR, ListenerKind.HUMIDITY),
    (Capability.LOCK, ListenerKind.LOCK),
)

KIND_CAPABILITY: dict[ListenerKind, Capability] = {
    ListenerKind.TEMPERATURE: Capability.THERMOMETER,
    ListenerKind.HUMIDITY: Capability.HUMIDITY_SENSOR,
    ListenerKind.LOCK: Capability.LOCK,
    ListenerKind.FACE: Capability.OBJECT_DETECTOR,
}


@dataclass(frozen=True)
class Device:
    id: str
    name: str
    capabilities: frozenset[Capability] = field(default_factory=frozenset)
    temperature_unit: str = ""

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities


def kind_for_device(device: Device) -> Optional[ListenerKind]:
    for capability, kind in DEVICE_KIND_PRIORITY:
        if device.has(capability):
            return kind
    return None


@dataclass(frozen=True)
class Subscription:
    """Opaque handle returned by DeviceHost.subscribe."""

    device_id: str
    capability: Capability
    token: Any


Handler = Callable[[Any], None]


class DeviceHost(Protocol):
    def get_device(self, device_id: str) -> Optional[Device]:
        ...

    def read_value(self, device_id: str, capability: Capability) -> Any:
        ...

    def subscribe(self, device_id: str, capability: Capability, handler: Handler) -> Subscription:
        ...

    def unsubscribe(self, subscription: Subscription) -> None:
        ...


def capabilities_from_state(entity_id: str, attributes: dict[str, Any]) -> frozenset[Capability]:
    domain = entity_id.split(".", 1)[0]
    device_class = str(attributes.get("device_class") or "").lower()
    unit = str(attributes.get("unit_of_measurement") or "")
    caps: set[Capability] = set()
    if domain == "sensor":
        if device_class == "temperature" or unit in {"°C", "°F", "K"}:
            caps.add(Capability.THERMOMETER)
        if device_class == "humidity":
            caps.add(Capability.HUMIDITY_SENSOR)
    elif domain == "climate":
        if attributes.get("current_temperature") is not None:
            caps.add(Capability.THERMOMETER)
        if attributes.get("current_humidity") is not None:
            caps.add(Capability.HUMIDITY_SENSOR)
    elif domain == "lock":
        caps.add(Capability.LOCK)
    elif domain == "image_processing":
        caps.add(Capability.OBJECT_DETECTOR)
    return frozenset(caps)


def face_payload_from_event(data: Any) -> dict[str, Any]:
    """Normalize an `image_processing.detect_face` event into an objects-detected payload."""
    if not isinstance(data, dict):
        return {"detections": []}
    label = str(data.get("name") or "").strip()
    return {
        "detections": [
            {
                "className": "face",
                "label": label,
                "score": data.get("confidence"),
            }
        ]
    }


class HassDeviceHost:
    """
    DeviceHost backed by an AppDaemon app (`hassapi.Hass`).

    Callbacks are registered on the owning app, so AppDaemon delivers them on
    that app's thread.
    """

    # climate entities expose readings as attributes rather than the state.
    _CLIMATE_ATTRIBUTE = {
        Capability.THERMOMETER: "current_temperature",
        Capability.HUMIDITY_SENSOR: "current_humidity",
    }

    def __init__(self, app: Any):
        self._app = app

    def get_device(self, device_id: str) -> Optional[Device]:
        if not device_id:
            return None
        state = self._app.get_state(device_id, attribute="all")
        if not isinstance(state, dict):
            return None
        attributes = state.get("attributes") or {}
        unit = str(attributes.get("unit_of_measurement") or attributes.get("temperature_unit") or "")
        return Device(
            id=device_id,
            name=str(attributes.get("friendly_name") or device_id),
            capabilities=capabilities_from_state(device_id, attributes),
            temperature_unit=unit,
        )

    def _climate_attribute(self, device_id: str, capability: Capability) -> Optional[str]:
        if device_id.split(".", 1)[0] != "climate":
            return None
        return self._CLIMATE_ATTRIBUTE.get(capability)

    def read_value(self, device_id: str, capability: Capability) -> Any:
        attribute = self._climate_attribute(device_id, capability)
        if attribute:
            value = self._app.get_state(device_id, attribute=attribute)
        else:
            value = self._app.get_state(device_id)
        if value is None or str(value).strip().lower() in UNAVAILABLE_STATES:
            return None
        return value

    def subscribe(self, device_id: str, capability: Capability, handler: Handler) -> Subscription:
        if capability == Capability.OBJECT_DETECTOR:

            def _on_event(event_name, data, kwargs):
                handler(face_payload_from_event(data))

            token = ("event", self._app.listen_event(_on_event, FACE_EVENT, entity_id=device_id))
            return Subscription(device_id=device_id, capability=capability, token=token)

        def _on_state(entity, attribute, old, new, kwargs):
            if new is None or str(new).strip().lower() in UNAVAILABLE_STATES:
                return
            handler(new)

        attribute = self._climate_attribute(device_id, capability)
        if attribute:
            handle = self._app.listen_state(_on_state, device_id, attribute=attribute)
        else:
            handle = self._app.listen_state(_on_state, device_id)
        return Subscription(device_id=device_id, capability=capability, token=("state", handle))

    def unsubscribe(self, subscription: Subscription) -> None:
        kind, handle = subscription.token
        if kind == "event":
            self._app.cancel_listen_event(handle)
        else:
            self._app.cancel_listen_state(handle)
