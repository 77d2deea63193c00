from __future__ import annotations

from typing import Iterable, Tuple

import cv2
import numpy as np

from .types import PillDetection


def _color_for_hits(variant_hits: int) -> Tuple[int, int, int]:
    """
    BGR color by support: red for single-variant, amber for weak, green for
    well-supported detections.
    """

    if variant_hits <= 1:
        return (56, 56, 255)
    if variant_hits < 4:
        return (29, 178, 255)
    return (10, 249, 72)


def draw_points(
    image_bgr: np.ndarray,
    detections: Iterable[PillDetection],
    *,
    model_side: float = 640.0,
    show_count: bool = True,
    show_hits: bool = False,
    thickness: int = 2,
    font_scale: float = 0.6,
) -> np.ndarray:
    """
    Draw one circle per detected pill on an OpenCV BGR image and return a copy.

    Points are normalized, so the image may have any size; circle radius is
    scaled from the model-space side.
    """

    if image_bgr is None or not hasattr(image_bgr, "shape"):
        raise TypeError("image_bgr must be a NumPy array (BGR).")
    if image_bgr.ndim != 3 or image_bgr.shape[2] != 3:
        raise ValueError(f"Expected image shape (H, W, 3), got {getattr(image_bgr, 'shape', None)}")

    out = image_bgr.copy()
    h, w = out.shape[:2]
    sx = w / float(model_side)
    sy = h / float(model_side)

    count = 0
    for det in detections:
        count += 1
        x = int(np.clip(round(det.point[0] * w), 0, w - 1))
        y = int(np.clip(round(det.point[1] * h), 0, h - 1))
        radius = max(2, int(round(det.mean_side * 0.5 * min(sx, sy))))
        color = _color_for_hits(det.variant_hits)
        cv2.circle(out, (x, y), radius, color, thickness=thickness, lineType=cv2.LINE_AA)
        cv2.circle(out, (x, y), 2, color, thickness=-1)
        if show_hits:
            cv2.putText(
                out,
                str(det.variant_hits),
                (min(x + radius, w - 1), max(y - radius, 0)),
                cv2.FONT_HERSHEY_SIMPLEX,
                font_scale * 0.7,
                color,
                thickness=1,
                lineType=cv2.LINE_AA,
            )

    if show_count:
        label = f"count: {count}"
        (tw, th), baseline = cv2.getTextSize(label, cv2.FONT_HERSHEY_SIMPLEX, font_scale, thickness)
        cv2.rectangle(out, (0, 0), (min(tw + 8, w - 1), min(th + baseline + 8, h - 1)), (0, 0, 0), thickness=-1)
        cv2.putText(
            out,
            label,
            (4, th + 4),
            cv2.FONT_HERSHEY_SIMPLEX,
            font_scale,
            (255, 255, 255),
            thickness=thickness,
            lineType=cv2.LINE_AA,
        )

    return out
