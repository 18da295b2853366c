from __future__ import annotations

from typing import Any, Callable, Optional

from .devices import Capability, DeviceHost, Subscription
from .translate import face_label_from_payload


class FaceTracker:
    """
    Caches the most recent face label seen by the camera's own detector.

    One subscription regardless of how many FaceDetection overlays exist; it is
    held only while at least one exists.
    """

    def __init__(self, host: DeviceHost, detector_id: str, *, log: Optional[Callable[..., Any]] = None):
        self._host = host
        self._detector_id = detector_id
        self._log = log or (lambda *a, **kw: None)
        self._subscription: Optional[Subscription] = None
        self.last_label: str = ""

    @property
    def detector_id(self) -> str:
        return self._detector_id

    @property
    def active(self) -> bool:
        return self._subscription is not None

    def observe(self, payload: Any) -> None:
        label = face_label_from_payload(payload)
        if label:
            if label != self.last_label:
                self._log(f"Face detected: {label}", level="INFO")
            self.last_label = label

    def _on_detection(self, subscription_ref: list, payload: Any) -> None:
        # Ignore callbacks that race a teardown.
        if not subscription_ref or subscription_ref[0] is not self._subscription:
            return
        self.observe(payload)

    def ensure(self, enabled: bool) -> None:
        if enabled and self._subscription is None:
            if not self._detector_id:
                self._log("FaceDetection overlay configured but no detector_entity_id set", level="WARNING")
                return
            self._log(f"Starting object detection listener for faces on {self._detector_id}", level="INFO")
            ref: list = []
            self._subscription = self._host.subscribe(
                self._detector_id,
                Capability.OBJECT_DETECTOR,
                lambda payload: self._on_detection(ref, payload),
            )
            ref.append(self._subscription)
        elif not enabled and self._subscription is not None:
            self.release()

    def release(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            self._log("Stopping object detection listener for faces", level="INFO")
            self._host.unsubscribe(subscription)
