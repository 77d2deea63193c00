from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

from .types import Point


Rect = Tuple[float, float, float, float]  # (x, y, width, height)


@dataclass(frozen=True)
class PreparedFrame:
    """
    Geometry of how a displayed square frame became the model input.

    `inference_roi` is the region of the display square (in model pixels) that
    was cropped and resized to the model input; `edge_trim_ratio` is the extra
    border trimmed from that crop before inference.
    """

    inference_roi: Rect
    edge_trim_ratio: float = 0.0
    model_side: float = 640.0

    def map_points_to_display(self, points: Sequence[Point]) -> List[Point]:
        """
        Map normalized model-input points back to normalized display points,
        clamped to [0, 1].
        """

        side = float(self.model_side)
        if side <= 0:
            return [(float(x), float(y)) for x, y in points]

        trim = max(0.0, min(side * 0.2, side * self.edge_trim_ratio))
        trimmed_side = max(1.0, side - trim * 2)
        trim_scale = trimmed_side / side
        roi_x, roi_y, roi_w, roi_h = (float(v) for v in self.inference_roi)

        mapped: List[Point] = []
        for x, y in points:
            x_roi = x * side * trim_scale + trim
            y_roi = y * side * trim_scale + trim

            x_display = roi_x + (x_roi / side) * roi_w
            y_display = roi_y + (y_roi / side) * roi_h

            mapped.append(
                (
                    max(0.0, min(1.0, x_display / side)),
                    max(0.0, min(1.0, y_display / side)),
                )
            )
        return mapped
