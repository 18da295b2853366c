"""
Serialized camera writes.

Dahua firmware drops or garbles setConfig calls that arrive back to back, so
every overlay write goes through one FIFO drained by a single worker thread
with a minimum pause between calls.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from .translate import is_blank


class OverlayWriter(Protocol):
    def set_overlay_text(self, overlay_id: str, text: str) -> None:
        ...

    def disable_overlay_text(self, overlay_id: str) -> None:
        ...


@dataclass(frozen=True)
class UpdateOp:
    action: str  # "update" | "disable"
    overlay_id: str
    text: str = ""


_STOP = object()


class UpdateQueue:
    def __init__(
        self,
        client: OverlayWriter,
        *,
        min_interval_s: float = 0.3,
        log: Optional[Callable[..., Any]] = None,
        name: str = "camera_overlay_updates",
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self._min_interval_s = max(0.0, float(min_interval_s))
        self._log = log or (lambda *a, **kw: None)
        self._name = name
        self._sleep = sleep
        self._monotonic = monotonic
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stopped = False
        self._last_done: Optional[float] = None

    @property
    def min_interval_s(self) -> float:
        return self._min_interval_s

    def start(self) -> None:
        with self._lock:
            if self._thread is not None or self._stopped:
                return
            t = threading.Thread(target=self._run, name=self._name)
            t.daemon = True
            self._thread = t
            t.start()

    def stop(self, timeout_s: Optional[float] = None) -> None:
        """Drop anything not yet started and stop the worker."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            thread = self._thread
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
            self._queue.task_done()
        if thread is None:
            return
        self._queue.put(_STOP)
        if thread is not threading.current_thread():
            thread.join(timeout=timeout_s)

    def join(self) -> None:
        """Block until every enqueued op has been attempted."""
        self._queue.join()

    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue_update(self, overlay_id: str, text: str) -> None:
        if is_blank(text):
            self.enqueue_disable(overlay_id)
            return
        self._put(UpdateOp("update", str(overlay_id), str(text)))

    def enqueue_disable(self, overlay_id: str) -> None:
        self._put(UpdateOp("disable", str(overlay_id)))

    def _put(self, op: UpdateOp) -> None:
        with self._lock:
            if self._stopped:
                self._log(f"UpdateQueue: dropping {op.action} for overlay {op.overlay_id} (stopped)", level="DEBUG")
                return
        self._queue.put(op)

    def _run(self) -> None:
        while True:
            op = self._queue.get()
            try:
                if op is _STOP:
                    return
                self._wait_spacing()
                self._execute(op)
            finally:
                self._queue.task_done()

    def _wait_spacing(self) -> None:
        if self._last_done is None:
            return
        remaining = self._min_interval_s - (self._monotonic() - self._last_done)
        if remaining > 0:
            self._sleep(remaining)

    def _execute(self, op: UpdateOp) -> None:
        try:
            if op.action == "update":
                self._client.set_overlay_text(op.overlay_id, op.text)
                self._log(f"UpdateQueue: overlay {op.overlay_id} <- {op.text!r}", level="DEBUG")
            else:
                self._client.disable_overlay_text(op.overlay_id)
                self._log(f"UpdateQueue: overlay {op.overlay_id} disabled", level="DEBUG")
        except Exception as e:
            self._log(f"UpdateQueue: {op.action} failed for overlay {op.overlay_id}: {e!r}", level="WARNING")
        finally:
            self._last_done = self._monotonic()
