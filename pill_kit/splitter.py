"""
Split detections that cover two or three touching pills.

A suspiciously large consensus detection is re-examined in the image: the
region around it is binarized (Otsu), cleaned, reduced to its most plausible
blob, and the blob's distance-transform peaks seed one instance each. A split
is only accepted when it adds one or two pills that are clearly apart;
otherwise the original detection is kept.
"""

from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .config import SplitterConfig
from .distance import assign_pixels_to_peaks, chamfer_distance_transform, find_peaks
from .grayscale import GrayscaleImage, IntRect, PixelBuffer
from .morphology import otsu_threshold, select_foreground_mask
from .types import PillDetection, Point

LOGGER = logging.getLogger(__name__)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def normalized_distance(a: Point, b: Point) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


def minimum_separation(points: Sequence[Point]) -> float:
    """Smallest pairwise distance; 0 for fewer than two points."""
    if len(points) < 2:
        return 0.0
    best = math.inf
    for i in range(len(points) - 1):
        for j in range(i + 1, len(points)):
            best = min(best, normalized_distance(points[i], points[j]))
    return 0.0 if math.isinf(best) else best


class PillInstanceSplitter:
    def __init__(self, cfg: SplitterConfig = SplitterConfig()):
        self.cfg = cfg

    def refine(self, detections: Sequence[PillDetection], pixel_buffer: PixelBuffer) -> List[PillDetection]:
        """
        Return `detections` with merged pills split where the image supports it.

        `pixel_buffer` must be the frame in model space (model_side square).
        """

        if len(detections) < 2:
            return list(detections)
        image = GrayscaleImage.from_pixel_buffer(pixel_buffer)
        if image is None:
            LOGGER.debug("split-skipped unsupported pixel buffer format=%s", pixel_buffer.pixel_format)
            return list(detections)
        return self.refine_gray(detections, image)

    def refine_gray(self, detections: Sequence[PillDetection], image: GrayscaleImage) -> List[PillDetection]:
        cfg = self.cfg
        if len(detections) < 2:
            return list(detections)

        suspects = self.find_suspects(detections)
        if not suspects:
            return list(detections)

        refined = list(detections)
        for suspect in suspects[: cfg.max_regions]:
            splits = self.split_merged_detection(suspect, image)
            if splits is None:
                continue
            accepted = self.accept_split(splits)
            if accepted is None:
                LOGGER.debug("split-rejected gain=%d point=%s", len(splits) - 1, suspect.point)
                continue

            remove_radius = max(
                cfg.remove_radius_min,
                min(cfg.remove_radius_max, (suspect.mean_side / cfg.model_side) * cfg.remove_radius_ratio),
            )
            for index, det in enumerate(refined):
                if normalized_distance(det.point, suspect.point) <= remove_radius:
                    del refined[index]
                    break
            refined.extend(accepted)
            LOGGER.debug("split-accepted point=%s into=%d", suspect.point, len(accepted))

        return self.deduplicate(refined)

    def find_suspects(self, detections: Sequence[PillDetection]) -> List[PillDetection]:
        cfg = self.cfg
        if not detections:
            return []
        sides = sorted(d.mean_side for d in detections)
        median_side = sides[len(sides) // 2]
        cutoff = max(cfg.suspect_min_side, median_side * cfg.suspect_side_ratio)
        suspects = [
            d
            for d in detections
            if d.mean_side >= cutoff and d.variant_hits >= cfg.suspect_min_hits and d.avg_score >= cfg.suspect_min_score
        ]
        suspects.sort(key=lambda d: -d.mean_side)
        return suspects

    def accept_split(self, splits: Sequence[PillDetection]) -> Optional[List[PillDetection]]:
        """
        Cap a candidate split and check it: one or two extra pills, clearly apart.
        """

        cfg = self.cfg
        capped = list(splits[: cfg.max_split_per_region])
        gain = len(capped) - 1
        if gain < 1 or gain > cfg.max_gain_per_region:
            return None
        if minimum_separation([d.point for d in capped]) <= cfg.min_separation:
            return None
        return capped

    def region_for(self, suspect: PillDetection, image: GrayscaleImage) -> Optional[IntRect]:
        cfg = self.cfg
        center_x = round_half_up(suspect.point[0] * cfg.model_side)
        center_y = round_half_up(suspect.point[1] * cfg.model_side)
        side = round_half_up(max(cfg.roi_min_side, min(cfg.roi_max_side, suspect.mean_side * cfg.roi_side_ratio)))
        half = side // 2

        x0 = max(0, center_x - half)
        y0 = max(0, center_y - half)
        rect = IntRect(x=x0, y=y0, width=min(side, image.width - x0), height=min(side, image.height - y0))
        if rect.width < cfg.roi_min_extent or rect.height < cfg.roi_min_extent:
            return None
        return rect

    def split_merged_detection(self, suspect: PillDetection, image: GrayscaleImage) -> Optional[List[PillDetection]]:
        cfg = self.cfg
        roi = self.region_for(suspect, image)
        if roi is None:
            return None

        patch = image.crop(roi).pixels
        threshold = otsu_threshold(patch)
        bright = (patch >= threshold).astype(np.uint8)
        dark = (patch <= threshold).astype(np.uint8)

        side = suspect.mean_side
        selected = select_foreground_mask(
            bright,
            dark,
            side * side * cfg.merged_area_ratio,
            connectivity=cfg.connectivity,
            min_area=cfg.min_component_area,
            max_area_ratio=cfg.max_component_ratio,
            area_weight=cfg.area_weight,
            center_weight=cfg.center_weight,
        )
        if selected is None:
            return None

        dt = chamfer_distance_transform(selected.mask)
        min_peak_distance = max(cfg.min_peak_distance, round_half_up(side * cfg.peak_distance_ratio))
        peak_floor = max(cfg.peak_floor_min, round_half_up(side * cfg.peak_floor_ratio) * 3)
        peaks = find_peaks(dt, selected.mask, min_distance=min_peak_distance, floor=peak_floor, max_count=cfg.max_peaks)
        if len(peaks) < 2:
            return None

        instances = assign_pixels_to_peaks(peaks, selected.mask)
        min_cluster = max(cfg.min_cluster_pixels, round_half_up(side * side * cfg.cluster_area_ratio))
        valid = [c for c in instances if c.count >= min_cluster]
        if len(valid) < 2:
            return None

        mapped = [self._to_detection(c.count, c.centroid, roi, suspect) for c in valid[: cfg.max_split_per_region]]
        if minimum_separation([d.point for d in mapped]) <= cfg.min_separation:
            return None
        return mapped

    def deduplicate(self, detections: Sequence[PillDetection]) -> List[PillDetection]:
        cfg = self.cfg
        if len(detections) <= 1:
            return list(detections)

        ordered = sorted(detections, key=lambda d: (-d.variant_hits, -d.avg_score, -d.mean_side))
        sides = sorted(d.mean_side for d in ordered)
        median_side = sides[len(sides) // 2]
        radius = max(cfg.dedup_radius_min, min(cfg.dedup_radius_max, (median_side / cfg.model_side) * cfg.dedup_radius_ratio))

        kept: List[PillDetection] = []
        for det in ordered:
            if any(normalized_distance(k.point, det.point) <= radius for k in kept):
                continue
            kept.append(det)
        return kept

    def _to_detection(
        self,
        count: int,
        centroid: Tuple[float, float],
        roi: IntRect,
        suspect: PillDetection,
    ) -> PillDetection:
        cfg = self.cfg
        gx = (roi.x + centroid[0]) / cfg.model_side
        gy = (roi.y + centroid[1]) / cfg.model_side
        return PillDetection(
            point=(min(1.0, max(0.0, gx)), min(1.0, max(0.0, gy))),
            mean_side=math.sqrt(float(count)) * cfg.split_side_ratio,
            avg_score=max(cfg.split_min_score, suspect.avg_score * cfg.split_score_ratio),
            variant_hits=max(cfg.min_split_hits, suspect.variant_hits),
        )
