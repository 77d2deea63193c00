from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np


_KERNEL_3X3 = np.ones((3, 3), dtype=np.uint8)


@dataclass(frozen=True)
class Component:
    label: int
    area: int
    centroid: Tuple[float, float]  # (x, y) in mask pixels


@dataclass(frozen=True)
class SelectedComponent:
    mask: np.ndarray  # uint8 {0, 1}, only the chosen component set
    score: float
    area: int


def otsu_threshold(pixels: np.ndarray) -> int:
    """
    Otsu's threshold level, as reported by OpenCV.

    The returned level is the last one in the background class; the first level
    reaching the maximal between-class variance wins. Empty or single-level
    input returns 128.
    """

    p = np.ascontiguousarray(np.asarray(pixels, dtype=np.uint8).reshape(1, -1))
    if p.size == 0 or int(p.min()) == int(p.max()):
        return 128

    level, _ = cv2.threshold(p, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
    return int(level)


def _interior_only(out: np.ndarray) -> np.ndarray:
    # 3x3 operators are only evaluated where the whole window is inside the mask.
    out[0, :] = 0
    out[-1, :] = 0
    out[:, 0] = 0
    out[:, -1] = 0
    return out


def erode(mask: np.ndarray) -> np.ndarray:
    m = np.asarray(mask, dtype=np.uint8)
    if m.ndim != 2 or m.shape[0] < 3 or m.shape[1] < 3:
        return np.zeros_like(m)
    out = cv2.erode(m, _KERNEL_3X3, borderType=cv2.BORDER_CONSTANT, borderValue=0)
    return _interior_only(out)


def dilate(mask: np.ndarray) -> np.ndarray:
    m = np.asarray(mask, dtype=np.uint8)
    if m.ndim != 2 or m.shape[0] < 3 or m.shape[1] < 3:
        return np.zeros_like(m)
    out = cv2.dilate(m, _KERNEL_3X3, borderType=cv2.BORDER_CONSTANT, borderValue=0)
    return _interior_only(out)


def open_mask(mask: np.ndarray) -> np.ndarray:
    return dilate(erode(mask))


def close_mask(mask: np.ndarray) -> np.ndarray:
    return erode(dilate(mask))


def connected_components(mask: np.ndarray, connectivity: int = 4) -> Tuple[np.ndarray, List[Component]]:
    """
    Label foreground blobs of a {0,1} mask.

    Returns the int32 label image (0 = background) and one Component per label,
    in label order.
    """

    m = (np.asarray(mask) > 0).astype(np.uint8)
    if m.size == 0:
        return np.zeros(m.shape, dtype=np.int32), []

    n, labels, stats, centroids = cv2.connectedComponentsWithStats(m, connectivity=connectivity, ltype=cv2.CV_32S)
    components = [
        Component(
            label=i,
            area=int(stats[i, cv2.CC_STAT_AREA]),
            centroid=(float(centroids[i, 0]), float(centroids[i, 1])),
        )
        for i in range(1, n)
        if stats[i, cv2.CC_STAT_AREA] > 0
    ]
    return labels, components


def component_score(
    area: float,
    centroid: Tuple[float, float],
    shape: Tuple[int, int],
    expected_area: float,
    *,
    area_weight: float = 1.4,
    center_weight: float = 1.2,
) -> float:
    """
    Prefer blobs close to `expected_area` and to the middle of the region.
    """

    h, w = shape
    cx, cy = w * 0.5, h * 0.5
    dist = math.hypot(centroid[0] - cx, centroid[1] - cy)
    norm_dist = dist / max(1.0, math.sqrt(float(w * w + h * h)))
    area_score = 1.0 - min(1.0, abs(math.log(max(0.001, area / max(1.0, expected_area)))))
    return area_score * area_weight - norm_dist * center_weight


def evaluate_mask(
    mask: np.ndarray,
    expected_area: float,
    *,
    connectivity: int = 4,
    min_area: int = 20,
    max_area_ratio: float = 0.86,
    area_weight: float = 1.4,
    center_weight: float = 1.2,
) -> Optional[SelectedComponent]:
    """
    Clean a binary mask (opening then closing) and return its best-scoring
    blob, or None when no blob has a plausible size.
    """

    cleaned = close_mask(open_mask(mask))
    labels, components = connected_components(cleaned, connectivity=connectivity)
    if not components:
        return None

    h, w = cleaned.shape
    max_area = float(w * h) * max_area_ratio
    best: Optional[Tuple[float, Component]] = None
    for comp in components:
        if comp.area < min_area or comp.area > max_area:
            continue
        score = component_score(
            comp.area,
            comp.centroid,
            (h, w),
            expected_area,
            area_weight=area_weight,
            center_weight=center_weight,
        )
        if best is None or score > best[0]:
            best = (score, comp)

    if best is None:
        return None
    score, comp = best
    return SelectedComponent(mask=(labels == comp.label).astype(np.uint8), score=score, area=comp.area)


def select_foreground_mask(
    bright_mask: np.ndarray,
    dark_mask: np.ndarray,
    expected_area: float,
    **kwargs,
) -> Optional[SelectedComponent]:
    """Pick the better of the bright-foreground and dark-foreground readings; bright wins ties."""
    bright = evaluate_mask(bright_mask, expected_area, **kwargs)
    dark = evaluate_mask(dark_mask, expected_area, **kwargs)
    if bright is not None and dark is not None:
        return bright if bright.score >= dark.score else dark
    return bright if bright is not None else dark
