from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np


@dataclass(frozen=True)
class TensorLayout:
    """
    How a flat detector output is laid out.

    - channel_major: (batch, features, boxes), e.g. (8, 6, 8400) YOLOv8-style heads
    - box-major:     (batch, boxes, features)
    """

    batch: int
    boxes: int
    features: int
    channel_major: bool

    @property
    def total_elements(self) -> int:
        return self.batch * self.boxes * self.features

    @property
    def stride(self) -> int:
        return self.boxes * self.features

    def variant_view(self, values: np.ndarray, index: int) -> np.ndarray:
        """
        Return the (features, boxes) matrix for one batch entry.

        Elements that fall outside `values` read as 0.
        """

        flat = np.asarray(values, dtype=np.float32).reshape(-1)
        if index < 0 or index >= self.batch:
            return np.zeros((self.features, self.boxes), dtype=np.float32)

        start = index * self.stride
        block = flat[start : start + self.stride]
        if block.size < self.stride:
            block = np.concatenate([block, np.zeros(self.stride - block.size, dtype=np.float32)])

        if self.channel_major:
            return block.reshape(self.features, self.boxes)
        return block.reshape(self.boxes, self.features).T


def _fits(features: int, boxes: int, min_features: int, max_features: int, min_boxes: int) -> bool:
    return min_features <= features <= max_features and boxes >= min_boxes


def infer_layout(
    shape: Sequence[int],
    values_count: int,
    *,
    min_features: int = 5,
    max_features: int = 16,
    min_boxes: int = 64,
    fallback_features: int = 6,
) -> Optional[TensorLayout]:
    """
    Guess the layout of a detector output from its declared shape.

    Tries the trailing (batch, d1, d2) or (d0, d1) dims in both orientations and
    keeps the first candidate that fits in the buffer. Falls back to a flat
    channel-major buffer of `fallback_features` rows. Returns None when nothing fits.
    """

    dims = [int(d) for d in shape if int(d) > 0]

    if len(dims) >= 3:
        batch, d1, d2 = dims[-3], dims[-2], dims[-1]
        if _fits(d1, d2, min_features, max_features, min_boxes):
            candidate = TensorLayout(batch=batch, boxes=d2, features=d1, channel_major=True)
            if candidate.total_elements <= values_count:
                return candidate
        if _fits(d2, d1, min_features, max_features, min_boxes):
            candidate = TensorLayout(batch=batch, boxes=d1, features=d2, channel_major=False)
            if candidate.total_elements <= values_count:
                return candidate

    if len(dims) == 2:
        d0, d1 = dims
        if _fits(d0, d1, min_features, max_features, min_boxes):
            candidate = TensorLayout(batch=1, boxes=d1, features=d0, channel_major=True)
            if candidate.total_elements <= values_count:
                return candidate
        if _fits(d1, d0, min_features, max_features, min_boxes):
            candidate = TensorLayout(batch=1, boxes=d0, features=d1, channel_major=False)
            if candidate.total_elements <= values_count:
                return candidate

    if fallback_features > 0 and values_count % fallback_features == 0:
        boxes = values_count // fallback_features
        if boxes >= min_boxes:
            return TensorLayout(batch=1, boxes=boxes, features=fallback_features, channel_major=True)

    return None


def effective_layout(layout: TensorLayout, values_count: int) -> TensorLayout:
    """
    Widen the batch to however many full variants the buffer actually holds.
    """

    return TensorLayout(
        batch=max(layout.batch, available_variants(layout, values_count)),
        boxes=layout.boxes,
        features=layout.features,
        channel_major=layout.channel_major,
    )


def available_variants(layout: TensorLayout, values_count: int) -> int:
    return max(1, values_count // max(1, layout.stride))
