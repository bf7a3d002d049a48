import threading

import pytest

from slamgeom.viewer import ViewerControl, ViewerSettings, box_color


def test_settings_defaults_when_missing():
    settings = ViewerSettings.from_mapping({})
    assert settings.frame_period_ms == pytest.approx(1000.0 / 30)
    assert (settings.image_width, settings.image_height) == (640.0, 480.0)
    assert settings.viewpoint_f == 0.0


def test_settings_read_values():
    settings = ViewerSettings.from_mapping(
        {
            "Camera.fps": 20,
            "Camera.width": 1280,
            "Camera.height": 720,
            "Viewer.ViewpointX": 0.5,
            "Viewer.ViewpointY": -0.7,
            "Viewer.ViewpointZ": -1.8,
            "Viewer.ViewpointF": 500,
        }
    )
    assert settings.frame_period_ms == pytest.approx(1e3 / 20)
    assert (settings.image_width, settings.image_height) == (1280.0, 720.0)
    assert (settings.viewpoint_x, settings.viewpoint_y, settings.viewpoint_z) == (0.5, -0.7, -1.8)
    assert settings.viewpoint_f == 500.0


def test_settings_partial_size_falls_back():
    settings = ViewerSettings.from_mapping({"Camera.width": 800, "Camera.height": 0})
    assert (settings.image_width, settings.image_height) == (640.0, 480.0)


def test_initial_state():
    control = ViewerControl()
    assert control.is_finished() is True
    assert control.is_stopped() is True
    assert control.check_finish() is False


def test_start_clears_finished_and_stopped():
    control = ViewerControl()
    control.start()
    assert control.is_finished() is False
    assert control.is_stopped() is False


def test_request_stop_ignored_while_stopped():
    control = ViewerControl()
    control.request_stop()
    control.start()
    assert control.stop() is False


def test_stop_handshake():
    control = ViewerControl()
    control.start()
    control.request_stop()
    assert control.stop() is True
    assert control.is_stopped() is True
    assert control.stop() is False
    control.release()
    assert control.is_stopped() is False


def test_finish_request_blocks_stop():
    control = ViewerControl()
    control.start()
    control.request_stop()
    control.request_finish()
    assert control.stop() is False
    assert control.check_finish() is True


def test_finish_from_other_thread():
    control = ViewerControl()
    control.start()
    worker = threading.Thread(target=control.request_finish)
    worker.start()
    worker.join()
    assert control.check_finish() is True
    control.set_finish()
    assert control.is_finished() is True


def test_box_color_dynamic_and_static():
    names = ["person", "car"]
    assert box_color("person", names) == (255, 0, 0)
    assert box_color("chair", names) == (0, 0, 255)