from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view


AXIS_COST = 3
DIAGONAL_COST = 4
_INF = 1_000_000


@dataclass(frozen=True)
class Peak:
    x: int
    y: int
    value: int


@dataclass(frozen=True)
class InstanceCluster:
    count: int
    centroid: Tuple[float, float]  # (x, y)


def _row_scan(c: np.ndarray, step: int) -> np.ndarray:
    # d[x] = min(c[x], d[x-1] + step) for a whole row at once:
    # d[x] = step*x + min_{k<=x}(c[k] - step*k)
    ramp = np.arange(c.size, dtype=np.int64) * step
    return ramp + np.minimum.accumulate(c - ramp)


def chamfer_distance_transform(mask: np.ndarray) -> np.ndarray:
    """
    Two-pass 3-4 chamfer distance to the nearest background pixel.

    Background pixels are 0; a foreground pixel next to background is 3 (or 4
    diagonally). Divide by 3 for an approximate Euclidean distance in pixels.
    """

    fg = np.asarray(mask) > 0
    h, w = fg.shape
    dist = np.where(fg, _INF, 0).astype(np.int64)
    if h == 0 or w == 0:
        return dist

    for y in range(h):
        c = dist[y].copy()
        if y > 0:
            up = dist[y - 1]
            np.minimum(c, up + AXIS_COST, out=c)
            c[1:] = np.minimum(c[1:], up[:-1] + DIAGONAL_COST)
            c[:-1] = np.minimum(c[:-1], up[1:] + DIAGONAL_COST)
        c = np.where(fg[y], c, 0)
        dist[y] = np.where(fg[y], _row_scan(c, AXIS_COST), 0)

    for y in range(h - 1, -1, -1):
        c = dist[y].copy()
        if y + 1 < h:
            down = dist[y + 1]
            np.minimum(c, down + AXIS_COST, out=c)
            c[:-1] = np.minimum(c[:-1], down[1:] + DIAGONAL_COST)
            c[1:] = np.minimum(c[1:], down[:-1] + DIAGONAL_COST)
        c = np.where(fg[y], c, 0)
        dist[y] = np.where(fg[y], _row_scan(c[::-1], AXIS_COST)[::-1], 0)

    return dist


def find_peaks(
    distance: np.ndarray,
    mask: np.ndarray,
    *,
    min_distance: int,
    floor: int,
    max_count: int = 4,
) -> List[Peak]:
    """
    Local maxima of a distance map, strongest first, at least `min_distance`
    pixels apart.

    A pixel qualifies when it is foreground, not on the outer frame, at least
    `floor`, and no 8-neighbour is strictly greater.
    """

    d = np.asarray(distance, dtype=np.int64)
    h, w = d.shape
    if h < 3 or w < 3 or max_count <= 0:
        return []

    inner = d[1:-1, 1:-1]
    neighbourhood_max = sliding_window_view(d, (3, 3)).max(axis=(2, 3))
    candidate = (np.asarray(mask)[1:-1, 1:-1] > 0) & (inner >= floor) & (inner >= neighbourhood_max)

    ys, xs = np.nonzero(candidate)
    if ys.size == 0:
        return []
    values = inner[ys, xs]
    order = np.argsort(-values, kind="stable")

    selected: List[Peak] = []
    min_d2 = int(min_distance) * int(min_distance)
    for i in order:
        px, py = int(xs[i]) + 1, int(ys[i]) + 1
        too_close = False
        for existing in selected:
            dx = px - existing.x
            dy = py - existing.y
            if dx * dx + dy * dy < min_d2:
                too_close = True
                break
        if too_close:
            continue
        selected.append(Peak(x=px, y=py, value=int(values[i])))
        if len(selected) >= max_count:
            break
    return selected


def assign_pixels_to_peaks(peaks: Sequence[Peak], mask: np.ndarray) -> List[InstanceCluster]:
    """
    Give every foreground pixel to its nearest peak (lowest index on ties) and
    return the non-empty groups in peak order.
    """

    if not peaks:
        return []
    ys, xs = np.nonzero(np.asarray(mask) > 0)
    if ys.size == 0:
        return []

    px = np.array([p.x for p in peaks], dtype=np.int64)
    py = np.array([p.y for p in peaks], dtype=np.int64)
    d2 = (xs[:, None] - px[None, :]) ** 2 + (ys[:, None] - py[None, :]) ** 2
    nearest = np.argmin(d2, axis=1)

    n = len(peaks)
    counts = np.bincount(nearest, minlength=n)
    sum_x = np.bincount(nearest, weights=xs.astype(np.float64), minlength=n)
    sum_y = np.bincount(nearest, weights=ys.astype(np.float64), minlength=n)

    return [
        InstanceCluster(count=int(counts[i]), centroid=(float(sum_x[i] / counts[i]), float(sum_y[i] / counts[i])))
        for i in range(n)
        if counts[i] > 0
    ]
