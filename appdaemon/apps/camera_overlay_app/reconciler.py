"""
Overlay listener reconciliation.

Each pass derives the binding every overlay *should* have from its settings,
diffs that against the bindings we hold, and releases/creates subscriptions
until they match. Passes are diff-based, so running one twice (or
interleaving one with a live callback) converges to the same state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from .config import Overlay, OverlayConfig, OverlayType
from .devices import KIND_CAPABILITY, Device, DeviceHost, ListenerKind, Subscription, kind_for_device
from .face_tracker import FaceTracker
from .translate import is_blank, translate
from .update_queue import UpdateQueue


@dataclass(frozen=True)
class ListenerBinding:
    overlay_id: str
    kind: ListenerKind
    device_id: str
    subscription: Subscription


@dataclass(frozen=True)
class _Desired:
    kind: Optional[ListenerKind] = None
    device_id: str = ""
    device: Optional[Device] = None
    # Overlay must be blanked on the camera (no usable source).
    disable: bool = False


class ListenerReconciler:
    def __init__(
        self,
        config: OverlayConfig,
        host: DeviceHost,
        updates: UpdateQueue,
        face_tracker: FaceTracker,
        *,
        log: Optional[Callable[..., Any]] = None,
        log_events: bool = False,
    ):
        self._config = config
        self._host = host
        self._updates = updates
        self._face = face_tracker
        self._log = log or (lambda *a, **kw: None)
        self._log_events = log_events
        self._bindings: dict[str, ListenerBinding] = {}
        self._overlay_ids: list[str] = []
        # Overlays we last disabled / last wrote text to. A disable is only
        # sent on a transition, never repeated while the overlay stays disabled.
        self._disabled: set[str] = set()
        self._driven: set[str] = set()
        self._released = False
        self.created = 0
        self.torn_down = 0

    # --- read-only views -------------------------------------------------

    @property
    def bindings(self) -> dict[str, ListenerBinding]:
        return dict(self._bindings)

    @property
    def overlay_ids(self) -> list[str]:
        return list(self._overlay_ids)

    # --- desired state ---------------------------------------------------

    def _desired(self, overlay: Overlay) -> _Desired:
        if overlay.type == OverlayType.NONE:
            return _Desired(disable=overlay.id in self._driven)

        if overlay.type == OverlayType.TEXT:
            return _Desired()

        if overlay.type == OverlayType.FACE_DETECTION:
            if not self._face.detector_id:
                self._log(f"Overlay {overlay.id}: FaceDetection needs detector_entity_id", level="WARNING")
                return _Desired(disable=True)
            return _Desired(kind=ListenerKind.FACE, device_id=self._face.detector_id)

        if not overlay.device_id:
            return _Desired(disable=True)
        device = self._host.get_device(overlay.device_id)
        if device is None:
            self._log(f"Overlay {overlay.id}: device {overlay.device_id} not found", level="WARNING")
            return _Desired(disable=True)
        kind = kind_for_device(device)
        if kind is None:
            self._log(
                f"Overlay {overlay.id}: device {overlay.device_id} exposes no supported capability "
                f"(has {sorted(c.value for c in device.capabilities)})",
                level="WARNING",
            )
            return _Desired(disable=True)
        return _Desired(kind=kind, device_id=device.id, device=device)

    # --- subscriptions ---------------------------------------------------

    def _teardown(self, overlay_id: str) -> None:
        binding = self._bindings.pop(overlay_id, None)
        if binding is None:
            return
        self._log(
            f"Overlay {overlay_id}: removing {binding.kind.value} listener on {binding.device_id}",
            level="INFO",
        )
        self.torn_down += 1
        self._host.unsubscribe(binding.subscription)

    def _bind(self, overlay_id: str, desired: _Desired) -> None:
        current = self._bindings.get(overlay_id)
        if desired.kind is None:
            if current is not None:
                self._teardown(overlay_id)
            return
        if current is not None and current.kind == desired.kind and current.device_id == desired.device_id:
            return

        # Release the old handle before asking for a new one.
        if current is not None:
            self._teardown(overlay_id)

        self._log(
            f"Overlay {overlay_id}: starting {desired.kind.value} listener on {desired.device_id}",
            level="INFO",
        )
        ref: list[Subscription] = []
        kind = desired.kind
        subscription = self._host.subscribe(
            desired.device_id,
            KIND_CAPABILITY[kind],
            lambda payload: self._on_event(overlay_id, ref, payload),
        )
        ref.append(subscription)
        self.created += 1

        # subscribe() calls into the host; re-check nothing was bound meanwhile.
        if overlay_id in self._bindings:
            self._teardown(overlay_id)
        self._bindings[overlay_id] = ListenerBinding(
            overlay_id=overlay_id,
            kind=kind,
            device_id=desired.device_id,
            subscription=subscription,
        )

    def _on_event(self, overlay_id: str, ref: list, payload: Any) -> None:
        binding = self._bindings.get(overlay_id)
        if self._released or binding is None or not ref or binding.subscription is not ref[0]:
            return
        try:
            overlay = self._config.resolve(overlay_id)
            if not self._binding_matches(binding, overlay):
                # Config moved on; the next pass replaces this binding.
                return
            device = None
            if binding.kind == ListenerKind.TEMPERATURE:
                device = self._host.get_device(binding.device_id)
            text = translate(binding.kind, payload, overlay, self._face, device)
            if self._log_events:
                self._log(f"Overlay {overlay_id}: {binding.kind.value} event -> {text!r}", level="DEBUG")
            self._push(overlay_id, text)
        except Exception as e:
            self._log(f"Overlay {overlay_id}: failed to handle {binding.kind.value} event: {e!r}", level="WARNING")

    @staticmethod
    def _binding_matches(binding: ListenerBinding, overlay: Overlay) -> bool:
        if binding.kind == ListenerKind.FACE:
            return overlay.type == OverlayType.FACE_DETECTION
        return overlay.type == OverlayType.DEVICE and overlay.device_id == binding.device_id

    # --- camera writes ---------------------------------------------------

    def _push(self, overlay_id: str, text: Optional[str]) -> None:
        if is_blank(text):
            self._disable(overlay_id)
            return
        self._updates.enqueue_update(overlay_id, str(text))
        self._disabled.discard(overlay_id)
        self._driven.add(overlay_id)

    def _disable(self, overlay_id: str) -> None:
        if overlay_id in self._disabled:
            return
        self._updates.enqueue_disable(overlay_id)
        self._disabled.add(overlay_id)
        self._driven.discard(overlay_id)

    def current_text(self, overlay: Overlay, desired: Optional[_Desired] = None) -> Optional[str]:
        """
        Text an overlay should show right now, without waiting for an event.
        None means "no reading available, leave the camera as is".
        """
        if overlay.type == OverlayType.TEXT:
            return overlay.text
        if overlay.type == OverlayType.FACE_DETECTION:
            return translate(ListenerKind.FACE, None, overlay, self._face)
        if overlay.type == OverlayType.DEVICE:
            desired = desired or self._desired(overlay)
            if desired.kind is None:
                return None
            value = self._host.read_value(desired.device_id, KIND_CAPABILITY[desired.kind])
            if value is None:
                return None
            return translate(desired.kind, value, overlay, self._face, desired.device)
        return None

    # --- passes ----------------------------------------------------------

    def _reconcile(self, overlay: Overlay, *, push: bool) -> None:
        desired = self._desired(overlay)
        self._bind(overlay.id, desired)
        if desired.disable:
            self._disable(overlay.id)
            return
        if not push or overlay.type == OverlayType.NONE:
            return
        text = self.current_text(overlay, desired)
        if text is None and overlay.type != OverlayType.TEXT:
            return
        self._push(overlay.id, text)

    def _face_enabled(self) -> bool:
        for overlay_id in self._overlay_ids:
            try:
                if self._config.resolve(overlay_id).type == OverlayType.FACE_DETECTION:
                    return True
            except Exception:
                continue
        return False

    def resync(self, overlay_ids: Iterable[str], *, refresh: bool = False) -> None:
        """
        Full pass. With `refresh`, Device and FaceDetection overlays also get
        their current value re-pushed (catches drift and missed events).
        """
        if self._released:
            return
        self._overlay_ids = [str(i) for i in overlay_ids]
        known = set(self._overlay_ids)
        for overlay_id in sorted((set(self._bindings) | self._disabled | self._driven) - known):
            self._forget(overlay_id)

        face_enabled = False
        for overlay_id in self._overlay_ids:
            try:
                overlay = self._config.resolve(overlay_id)
                if overlay.type == OverlayType.FACE_DETECTION:
                    face_enabled = True
                push = refresh and overlay.type in {OverlayType.DEVICE, OverlayType.FACE_DETECTION}
                self._reconcile(overlay, push=push)
            except Exception as e:
                self._log(f"Overlay {overlay_id}: reconciliation failed: {e!r}", level="WARNING")

        try:
            self._face.ensure(face_enabled)
        except Exception as e:
            self._log(f"Face detection listener update failed: {e!r}", level="WARNING")

    def reconcile_overlay(self, overlay_id: str, *, push: bool = True) -> None:
        """Single-overlay pass after its settings changed."""
        if self._released:
            return
        overlay_id = str(overlay_id)
        if overlay_id not in self._overlay_ids:
            self._overlay_ids.append(overlay_id)
        try:
            overlay = self._config.resolve(overlay_id)
            self._reconcile(overlay, push=push)
        except Exception as e:
            self._log(f"Overlay {overlay_id}: reconciliation failed: {e!r}", level="WARNING")
        try:
            self._face.ensure(self._face_enabled())
        except Exception as e:
            self._log(f"Face detection listener update failed: {e!r}", level="WARNING")

    def refresh_overlay(self, overlay_id: str) -> None:
        """Push the current text for one overlay without touching subscriptions."""
        if self._released:
            return
        try:
            overlay = self._config.resolve(str(overlay_id))
            if overlay.type == OverlayType.NONE:
                return
            desired = self._desired(overlay)
            if desired.disable:
                self._disable(overlay.id)
                return
            text = self.current_text(overlay, desired)
            if text is None and overlay.type != OverlayType.TEXT:
                return
            self._push(overlay.id, text)
        except Exception as e:
            self._log(f"Overlay {overlay_id}: refresh failed: {e!r}", level="WARNING")

    def _forget(self, overlay_id: str) -> None:
        # A returning overlay starts from a clean disable/driven state.
        self._teardown(overlay_id)
        self._disabled.discard(overlay_id)
        self._driven.discard(overlay_id)

    def remove(self, overlay_id: str) -> None:
        overlay_id = str(overlay_id)
        self._forget(overlay_id)
        if overlay_id in self._overlay_ids:
            self._overlay_ids.remove(overlay_id)

    def release(self) -> None:
        """Tear down every subscription. Later callbacks are ignored."""
        self._released = True
        for overlay_id in list(self._bindings):
            try:
                self._teardown(overlay_id)
            except Exception as e:
                self._log(f"Overlay {overlay_id}: failed to remove listener: {e!r}", level="WARNING")
        self._face.release()
