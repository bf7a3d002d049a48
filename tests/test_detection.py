import numpy as np
import pytest

from slamgeom.detection import (
    Detection,
    YoloDetection,
    load_class_names,
    non_max_suppression,
    preprocess_image,
)


def _preds(rows):
    return np.array([rows], dtype=float)


class _FakeModel:
    def __init__(self, rows, as_tuple=False):
        self.rows = rows
        self.as_tuple = as_tuple
        self.inputs = []

    def __call__(self, tensor):
        self.inputs.append(tensor)
        preds = _preds(self.rows)
        return (preds, None) if self.as_tuple else preds


def test_nms_suppresses_overlapping_box():
    rows = [
        [50, 50, 20, 20, 0.9, 0.9, 0.1],
        [52, 52, 20, 20, 0.9, 0.8, 0.2],
        [200, 200, 10, 10, 0.9, 0.3, 0.7],
    ]
    result = non_max_suppression(_preds(rows), 0.4, 0.5)
    assert len(result) == 1
    dets = result[0]
    assert dets.shape == (2, 6)
    assert list(dets[:, 5]) == [0, 1]
    assert np.allclose(dets[0, :4], [40, 40, 60, 60])
    assert dets[0, 4] >= dets[1, 4]


def test_nms_keeps_disjoint_boxes():
    rows = [
        [50, 50, 20, 20, 0.9, 0.9, 0.1],
        [300, 300, 20, 20, 0.9, 0.9, 0.1],
    ]
    dets = non_max_suppression(_preds(rows), 0.4, 0.5)[0]
    assert len(dets) == 2


def test_nms_drops_images_without_confident_boxes():
    rows = [[50, 50, 20, 20, 0.3, 0.5, 0.5]]
    assert non_max_suppression(_preds(rows), 0.4, 0.5) == []


def test_preprocess_shape_and_channel_order():
    image = np.zeros((100, 200, 3), dtype=np.uint8)
    image[:, :, 0] = 255  # blue in BGR order
    tensor = preprocess_image(image)
    assert tensor.shape == (1, 3, 380, 640)
    assert np.allclose(tensor[0, 2], 1.0)
    assert np.allclose(tensor[0, 0], 0.0)
    assert tensor.min() >= 0.0 and tensor.max() <= 1.0


def test_preprocess_rejects_grayscale():
    with pytest.raises(ValueError):
        preprocess_image(np.zeros((10, 10), dtype=np.uint8))


def test_detect_sorts_boxes_and_dynamic_areas():
    model = _FakeModel([
        [100, 100, 40, 60, 0.9, 0.9, 0.1],
        [400, 200, 20, 20, 0.9, 0.1, 0.9],
    ])
    detector = YoloDetection(model, ["person", "chair"])
    detector.set_image(np.zeros((384, 640, 3), dtype=np.uint8))
    assert detector.detect() is True
    assert model.inputs[0].shape == (1, 3, 380, 640)
    person = Detection(80, 70, 40, 60)
    assert detector.detect_map["person"] == [person]
    assert len(detector.detect_map["chair"]) == 1
    assert detector.dynamic_areas == [person]


def test_detect_without_dynamic_objects_adds_placeholder_area():
    model = _FakeModel([[400, 200, 20, 20, 0.9, 0.1, 0.9]], as_tuple=True)
    detector = YoloDetection(model, ["person", "chair"])
    detector.set_image(np.zeros((384, 640, 3), dtype=np.uint8))
    assert detector.detect() is True
    assert detector.dynamic_areas == [Detection(1, 1, 1, 1)]


def test_detect_without_image_fails():
    detector = YoloDetection(_FakeModel([]), ["person"])
    assert detector.detect() is False
    detector.set_image(np.zeros((10, 10, 3), dtype=np.uint8))
    detector.clear_image()
    assert detector.detect() is False


def test_clear_areas_forgets_boxes():
    model = _FakeModel([[100, 100, 40, 60, 0.9, 0.9, 0.1]])
    detector = YoloDetection(model, ["person", "chair"])
    detector.set_image(np.zeros((384, 640, 3), dtype=np.uint8))
    detector.detect()
    detector.clear_areas()
    assert detector.dynamic_areas == []
    assert dict(detector.detect_map) == {}


def test_load_class_names(tmp_path):
    path = tmp_path / "names.txt"
    path.write_text("person\nbicycle\ncar\n", encoding="utf-8")
    assert load_class_names(path) == ["person", "bicycle", "car"]