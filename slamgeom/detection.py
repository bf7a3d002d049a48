"""Object detection post-processing: class-agnostic NMS and dynamic areas."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)

INPUT_WIDTH = 640
INPUT_HEIGHT = 380
SCALE_BACK_WIDTH = 640
SCALE_BACK_HEIGHT = 384
SCORE_THRESHOLD = 0.4
IOU_THRESHOLD = 0.5

DEFAULT_DYNAMIC_NAMES = (
    "person", "car", "motorbike", "bus", "train", "truck", "boat", "bird", "cat",
    "dog", "horse", "sheep", "crow", "bear",
)


@dataclass(frozen=True)
class Detection:
    """An axis-aligned box in image pixels."""

    x: int
    y: int
    width: int
    height: int


def load_class_names(path):
    """Class names, one per line, in file order."""
    with open(path, encoding="utf-8", newline="") as handle:
        lines = handle.read().split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def _resize_bilinear(image, width, height):
    src = image.astype(np.float64)
    h, w = src.shape[:2]

    def axis(n_dst, n_src):
        pos = (np.arange(n_dst) + 0.5) * (n_src / n_dst) - 0.5
        pos = np.clip(pos, 0, n_src - 1)
        low = np.floor(pos).astype(int)
        high = np.minimum(low + 1, n_src - 1)
        return low, high, pos - low

    x0, x1, fx = axis(width, w)
    y0, y1, fy = axis(height, h)
    fx = fx[None, :, None]
    top = src[y0][:, x0] * (1 - fx) + src[y0][:, x1] * fx
    bottom = src[y1][:, x0] * (1 - fx) + src[y1][:, x1] * fx
    fy = fy[:, None, None]
    result = top * (1 - fy) + bottom * fy
    return np.clip(np.rint(result), 0, 255).astype(np.uint8)


def preprocess_image(image):
    """Resize a BGR image and return a 1 x 3 x 380 x 640 RGB array in [0, 1]."""
    img = np.asarray(image)
    if img.ndim != 3 or img.shape[2] != 3:
        raise ValueError("expected an H x W x 3 BGR image")
    resized = _resize_bilinear(img, INPUT_WIDTH, INPUT_HEIGHT)
    rgb = resized[:, :, ::-1]
    tensor = rgb.transpose(2, 0, 1).astype(np.float32) / 255.0
    return tensor[None, ...]


def non_max_suppression(predictions, score_thresh, iou_thresh):
    """Filter raw predictions (B x N x (5 + classes)) into per-image detections.

    Each output array has rows (left, top, right, bottom, score, class id),
    sorted by descending score.  Images with no box above the score
    threshold contribute no entry.
    """
    preds = np.asarray(predictions, dtype=np.float64)
    output = []
    for pred in preds:
        class_probs = pred[:, 5:]
        scores = pred[:, 4] * class_probs.max(axis=1)
        pred = pred[scores > score_thresh].copy()
        if len(pred) == 0:
            continue

        pred[:, 0] = pred[:, 0] - pred[:, 2] / 2
        pred[:, 1] = pred[:, 1] - pred[:, 3] / 2
        pred[:, 2] = pred[:, 0] + pred[:, 2]
        pred[:, 3] = pred[:, 1] + pred[:, 3]

        class_probs = pred[:, 5:]
        pred[:, 4] = pred[:, 4] * class_probs.max(axis=1)
        pred[:, 5] = class_probs.argmax(axis=1)
        dets = pred[:, :6]

        areas = (dets[:, 3] - dets[:, 1]) * (dets[:, 2] - dets[:, 0])
        order = np.argsort(-dets[:, 4], kind="stable")
        keep = []
        while len(order) > 0:
            best, rest = order[0], order[1:]
            keep.append(best)
            lefts = np.maximum(dets[best, 0], dets[rest, 0])
            tops = np.maximum(dets[best, 1], dets[rest, 1])
            rights = np.minimum(dets[best, 2], dets[rest, 2])
            bottoms = np.minimum(dets[best, 3], dets[rest, 3])
            overlaps = np.maximum(0.0, rights - lefts) * np.maximum(0.0, bottoms - tops)
            with np.errstate(divide="ignore", invalid="ignore"):
                ious = overlaps / (areas[best] + areas[rest] - overlaps)
            order = rest[ious <= iou_thresh]
        output.append(dets[keep])
    return output


class YoloDetection:
    """Runs a detector on the current image and sorts boxes by class.

    ``model`` is a callable taking the preprocessed 1 x 3 x H x W array and
    returning raw predictions, or a sequence whose first item holds them.
    """

    def __init__(self, model, class_names, dynamic_names=None):
        self.model = model
        self.class_names = list(class_names)
        self.dynamic_names = list(DEFAULT_DYNAMIC_NAMES if dynamic_names is None else dynamic_names)
        self.image = None
        self.detect_map = defaultdict(list)
        self.dynamic_areas = []

    def set_image(self, image):
        self.image = image

    def clear_image(self):
        self.image = None

    def clear_areas(self):
        """Forget the boxes found so far."""
        self.dynamic_areas.clear()
        self.detect_map.clear()

    def detect(self):
        """Detect objects in the current image; False when there is no image."""
        if self.image is None or np.asarray(self.image).size == 0:
            logger.warning("Read RGB failed!")
            return False
        image = np.asarray(self.image)
        rows, cols = image.shape[:2]

        raw = self.model(preprocess_image(image))
        if isinstance(raw, (tuple, list)):
            raw = raw[0]
        dets = non_max_suppression(raw, SCORE_THRESHOLD, IOU_THRESHOLD)
        if dets:
            for row in dets[0]:
                left = float(np.float32(row[0] * cols / SCALE_BACK_WIDTH))
                top = float(np.float32(row[1] * rows / SCALE_BACK_HEIGHT))
                right = float(np.float32(row[2] * cols / SCALE_BACK_WIDTH))
                bottom = float(np.float32(row[3] * rows / SCALE_BACK_HEIGHT))
                name = self.class_names[int(row[5])]
                box = Detection(int(left), int(top), int(right - left), int(bottom - top))
                self.detect_map[name].append(box)
                if name in self.dynamic_names:
                    self.dynamic_areas.append(box)
            if not self.dynamic_areas:
                self.dynamic_areas.append(Detection(1, 1, 1, 1))
        return True