"""Map viewer settings and the thread-safe stop/finish handshake."""

from __future__ import annotations

import threading
from dataclasses import dataclass

DYNAMIC_BOX_COLOR = (255, 0, 0)
STATIC_BOX_COLOR = (0, 0, 255)


@dataclass(frozen=True)
class ViewerSettings:
    """Refresh period and viewpoint read from a settings mapping."""

    frame_period_ms: float
    image_width: float
    image_height: float
    viewpoint_x: float
    viewpoint_y: float
    viewpoint_z: float
    viewpoint_f: float

    @classmethod
    def from_mapping(cls, settings):
        """Build settings; missing keys read as zero and fall back to defaults."""

        def value(key):
            return float(settings.get(key, 0) or 0)

        fps = value("Camera.fps")
        if fps < 1:
            fps = 30.0
        width = value("Camera.width")
        height = value("Camera.height")
        if width < 1 or height < 1:
            width, height = 640.0, 480.0
        return cls(
            frame_period_ms=1e3 / fps,
            image_width=width,
            image_height=height,
            viewpoint_x=value("Viewer.ViewpointX"),
            viewpoint_y=value("Viewer.ViewpointY"),
            viewpoint_z=value("Viewer.ViewpointZ"),
            viewpoint_f=value("Viewer.ViewpointF"),
        )


class ViewerControl:
    """Stop and finish requests shared between the viewer loop and other threads."""

    def __init__(self):
        self._finish_lock = threading.Lock()
        self._stop_lock = threading.Lock()
        self._finish_requested = False
        self._finished = True
        self._stopped = True
        self._stop_requested = False

    def start(self):
        """Mark the viewer loop as running."""
        with self._finish_lock:
            self._finished = False
        with self._stop_lock:
            self._stopped = False

    def request_finish(self):
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self):
        with self._finish_lock:
            return self._finish_requested

    def set_finish(self):
        with self._finish_lock:
            self._finished = True

    def is_finished(self):
        with self._finish_lock:
            return self._finished

    def request_stop(self):
        """Ask the loop to pause; ignored while already stopped."""
        with self._stop_lock:
            if not self._stopped:
                self._stop_requested = True

    def is_stopped(self):
        with self._stop_lock:
            return self._stopped

    def stop(self):
        """Honour a pending stop request unless a finish was requested."""
        with self._stop_lock, self._finish_lock:
            if self._finish_requested:
                return False
            if self._stop_requested:
                self._stopped = True
                self._stop_requested = False
                return True
            return False

    def release(self):
        with self._stop_lock:
            self._stopped = False


def box_color(class_name, dynamic_names):
    """Colour (B, G, R) for a detection box: dynamic classes differ from static ones."""
    return DYNAMIC_BOX_COLOR if class_name in dynamic_names else STATIC_BOX_COLOR