from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

import numpy as np

from .types import Detection


@dataclass
class NMSConfig:
    iou_threshold: float = 0.50
    max_detections: int = 180


def nms(boxes: np.ndarray, scores: np.ndarray, cfg: NMSConfig) -> np.ndarray:
    """
    Simple NumPy NMS. Expects boxes shape (N,4) in xyxy and scores shape (N,).
    Returns indices of boxes to keep, highest score first.

    Equal scores keep their input order.
    """

    if boxes.size == 0:
        return np.empty((0,), dtype=np.int32)

    x1 = boxes[:, 0]
    y1 = boxes[:, 1]
    x2 = boxes[:, 2]
    y2 = boxes[:, 3]
    areas = (x2 - x1) * (y2 - y1)

    order = np.argsort(-scores, kind="stable")
    keep = []

    while order.size > 0 and len(keep) < cfg.max_detections:
        i = order[0]
        keep.append(i)

        xx1 = np.maximum(x1[i], x1[order[1:]])
        yy1 = np.maximum(y1[i], y1[order[1:]])
        xx2 = np.minimum(x2[i], x2[order[1:]])
        yy2 = np.minimum(y2[i], y2[order[1:]])

        w = np.maximum(0.0, xx2 - xx1)
        h = np.maximum(0.0, yy2 - yy1)
        inter = w * h
        union = areas[i] + areas[order[1:]] - inter
        iou = np.where(union > 0, inter / np.maximum(union, 1e-6), 0.0)

        inds = np.where(iou <= cfg.iou_threshold)[0]
        order = order[inds + 1]

    return np.array(keep, dtype=np.int32)


def nms_detections(detections: Sequence[Detection], cfg: NMSConfig) -> List[Detection]:
    if not detections:
        return []
    boxes = np.array([d.as_xyxy() for d in detections], dtype=np.float64)
    scores = np.array([d.score for d in detections], dtype=np.float64)
    return [detections[int(i)] for i in nms(boxes, scores, cfg)]


def deduplicate_by_center(
    detections: Sequence[Detection],
    *,
    radius_ratio: float = 0.38,
    radius_min: float = 7.0,
    radius_max: float = 16.0,
    side_ratio: float = 0.34,
) -> List[Detection]:
    """
    Drop detections whose center falls inside an already-kept one.

    The base radius scales with the (upper) median box side of the input; big
    boxes widen their own radius. Input order decides who survives.
    """

    if len(detections) <= 1:
        return list(detections)

    sides = sorted(d.mean_side for d in detections)
    median_side = sides[len(sides) // 2]
    base_radius = max(radius_min, min(radius_max, median_side * radius_ratio))

    kept: List[Detection] = []
    for det in detections:
        radius = max(base_radius, det.mean_side * side_ratio)
        radius2 = radius * radius
        cx, cy = det.cx, det.cy
        duplicate = False
        for existing in kept:
            dx = cx - existing.cx
            dy = cy - existing.cy
            if dx * dx + dy * dy <= radius2:
                duplicate = True
                break
        if not duplicate:
            kept.append(det)
    return kept
