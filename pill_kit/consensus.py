"""
Cross-variant consensus: fuse per-variant detections into stable pill locations.

Clustering is greedy and order dependent (score-descending, nearest existing
cluster within radius). The filters after it guard against single-variant
noise, a recurring top-of-frame artifact, scan-line stripes and runaway counts.
"""

from __future__ import annotations

import logging
import math
from typing import List, Sequence, Tuple

import numpy as np

from .config import ConsensusConfig
from .types import ConsensusCluster, Detection

LOGGER = logging.getLogger(__name__)


class ClusterBuilder:
    """
    Accumulates detections from several variants at one location.
    """

    __slots__ = (
        "sum_x",
        "sum_y",
        "weighted_score_sum",
        "weight_sum",
        "mean_side",
        "max_score",
        "count",
        "variants",
        "min_weight",
    )

    def __init__(self, seed: Detection, variant: int, variant_count: int, min_weight: float = 0.2):
        weight = max(min_weight, seed.score)
        self.min_weight = min_weight
        self.sum_x = seed.cx * weight
        self.sum_y = seed.cy * weight
        self.weighted_score_sum = seed.score * weight
        self.weight_sum = weight
        self.mean_side = seed.mean_side
        self.max_score = seed.score
        self.count = 1
        self.variants = np.zeros(max(1, variant_count), dtype=bool)
        self._mark(variant)

    @property
    def center_x(self) -> float:
        return self.sum_x / self.weight_sum if self.weight_sum > 0 else 0.0

    @property
    def center_y(self) -> float:
        return self.sum_y / self.weight_sum if self.weight_sum > 0 else 0.0

    def add(self, det: Detection, variant: int) -> None:
        weight = max(self.min_weight, det.score)
        self.sum_x += det.cx * weight
        self.sum_y += det.cy * weight
        self.weighted_score_sum += det.score * weight
        self.weight_sum += weight
        self.mean_side = (self.mean_side * self.count + det.mean_side) / (self.count + 1)
        self.max_score = max(self.max_score, det.score)
        self.count += 1
        self._mark(variant)

    def finalized(self) -> ConsensusCluster:
        avg = self.weighted_score_sum / self.weight_sum if self.weight_sum > 0 else 0.0
        return ConsensusCluster(
            center_x=self.center_x,
            center_y=self.center_y,
            avg_score=avg,
            max_score=self.max_score,
            mean_side=self.mean_side,
            point_count=self.count,
            variant_hits=int(np.count_nonzero(self.variants)),
        )

    def _mark(self, variant: int) -> None:
        if 0 <= variant < self.variants.size:
            self.variants[variant] = True


def median_int(values: Sequence[int]) -> int:
    """Upper median; 0 for an empty input."""
    if not values:
        return 0
    ordered = sorted(values)
    return ordered[len(ordered) // 2]


def select_reliable_variants(
    variants: Sequence[Sequence[Detection]],
    cfg: ConsensusConfig = ConsensusConfig(),
) -> List[List[Detection]]:
    """
    Drop variants whose detection count is wildly off the median.

    Only applies with at least `min_variants_for_pruning` variants, and only
    when enough variants survive; otherwise every variant is kept.
    """

    if len(variants) < cfg.min_variants_for_pruning:
        return [list(v) for v in variants]

    med = float(median_int([len(v) for v in variants]))
    upper = max(med * cfg.variant_count_high_ratio, med + cfg.variant_count_high_slack)
    lower = max(1, int(math.floor(med * cfg.variant_count_low_ratio)))

    kept = [list(v) for v in variants if lower <= len(v) <= upper]
    minimum = max(3, len(variants) // 2)
    return kept if len(kept) >= minimum else [list(v) for v in variants]


def cluster_detections(
    per_variant: Sequence[Sequence[Detection]],
    cfg: ConsensusConfig = ConsensusConfig(),
) -> List[ConsensusCluster]:
    """
    Greedy single-linkage clustering across variants, strongest detections first.
    """

    flattened: List[Tuple[int, Detection]] = []
    for variant, detections in enumerate(per_variant):
        flattened.extend((variant, det) for det in detections)
    if not flattened:
        return []
    flattened.sort(key=lambda item: -item[1].score)

    variant_count = len(per_variant)
    clusters: List[ClusterBuilder] = []

    for variant, det in flattened:
        cx, cy, side = det.cx, det.cy, det.mean_side
        best_index = -1
        best_distance2 = math.inf

        for index, cluster in enumerate(clusters):
            dx = cx - cluster.center_x
            dy = cy - cluster.center_y
            distance2 = dx * dx + dy * dy

            mean_side = max(6.0, (cluster.mean_side + side) * 0.5)
            radius = max(cfg.cluster_radius_min, min(cfg.cluster_radius_max, mean_side * cfg.cluster_radius_ratio))
            if distance2 <= radius * radius and distance2 < best_distance2:
                best_index = index
                best_distance2 = distance2

        if best_index >= 0:
            clusters[best_index].add(det, variant)
        else:
            clusters.append(ClusterBuilder(det, variant, variant_count, cfg.min_weight))

    return [c.finalized() for c in clusters]


def _near_edge(cluster: ConsensusCluster, margin: float, side: float) -> bool:
    return (
        cluster.center_x <= margin
        or cluster.center_x >= side - margin
        or cluster.center_y <= margin
        or cluster.center_y >= side - margin
    )


def apply_hit_gate(
    clusters: Sequence[ConsensusCluster],
    cfg: ConsensusConfig,
    model_side: float,
) -> List[ConsensusCluster]:
    margin = model_side * cfg.edge_margin_ratio
    kept: List[ConsensusCluster] = []
    for cluster in clusters:
        if cluster.variant_hits >= 2:
            kept.append(cluster)
        elif cluster.variant_hits == 1:
            if _near_edge(cluster, margin, model_side):
                continue
            if cluster.avg_score >= cfg.single_hit_min_score and cluster.mean_side >= cfg.single_hit_min_side:
                kept.append(cluster)
    return kept


def apply_top_band_gate(
    clusters: Sequence[ConsensusCluster],
    cfg: ConsensusConfig,
    model_side: float,
) -> List[ConsensusCluster]:
    if len(clusters) < cfg.top_band_min_clusters:
        return list(clusters)

    top_band = model_side * cfg.top_band_ratio
    top_count = sum(1 for c in clusters if c.center_y <= top_band)
    if top_count / len(clusters) <= cfg.top_band_max_share:
        return list(clusters)

    return [
        c
        for c in clusters
        if c.center_y > top_band or c.variant_hits >= cfg.top_band_keep_hits or c.avg_score >= cfg.top_band_keep_score
    ]


def suppress_top_stripe_artifacts(
    clusters: Sequence[ConsensusCluster],
    cfg: ConsensusConfig,
    model_side: float,
) -> List[ConsensusCluster]:
    """
    Drop a horizontal line of detections along the top of the frame that looks
    like a sensor scan-line rather than pills.
    """

    if len(clusters) < cfg.stripe_min_clusters:
        return list(clusters)

    top_band = model_side * cfg.stripe_band_ratio
    lower_band = model_side * cfg.stripe_lower_band_ratio
    top = [c for c in clusters if c.center_y <= top_band]
    if len(top) < cfg.stripe_min_top_clusters:
        return list(clusters)

    xs = np.array([c.center_x for c in top], dtype=np.float64)
    ys = np.array([c.center_y for c in top], dtype=np.float64)
    x_coverage = float(xs.max() - xs.min()) / model_side
    y_std = float(np.sqrt(max(0.0, float(np.mean((ys - ys.mean()) ** 2)))))
    top_ratio = len(top) / max(1, len(clusters))
    lower_count = sum(1 for c in clusters if top_band < c.center_y <= lower_band)

    looks_like_stripe = (
        x_coverage >= cfg.stripe_min_x_coverage
        and y_std <= model_side * cfg.stripe_max_y_std_ratio
        and top_ratio >= cfg.stripe_min_top_share
        and lower_count <= int(len(top) * cfg.stripe_max_lower_ratio)
    )
    if not looks_like_stripe:
        return list(clusters)

    filtered = [
        c
        for c in clusters
        if c.center_y > top_band or (c.variant_hits >= cfg.stripe_keep_hits and c.avg_score >= cfg.stripe_keep_score)
    ]
    LOGGER.debug("stripe-suppressed removed=%d", len(clusters) - len(filtered))
    return filtered


def deduplicate_clusters(
    clusters: Sequence[ConsensusCluster],
    cfg: ConsensusConfig = ConsensusConfig(),
) -> List[ConsensusCluster]:
    if len(clusters) <= 1:
        return list(clusters)

    ordered = sorted(clusters, key=lambda c: (-c.variant_hits, -c.avg_score, -c.max_score))
    kept: List[ConsensusCluster] = []
    for cluster in ordered:
        radius = max(cfg.dedup_radius_min, min(cfg.dedup_radius_max, cluster.mean_side * cfg.dedup_radius_ratio))
        radius2 = radius * radius
        duplicate = False
        for existing in kept:
            dx = cluster.center_x - existing.center_x
            dy = cluster.center_y - existing.center_y
            if dx * dx + dy * dy <= radius2:
                duplicate = True
                break
        if not duplicate:
            kept.append(cluster)
    return kept


def apply_count_guard(
    clusters: Sequence[ConsensusCluster],
    median_variant_count: int,
    variant_count: int,
    cfg: ConsensusConfig = ConsensusConfig(),
) -> List[ConsensusCluster]:
    """
    Trim weakly supported clusters when the total runs far past what a typical
    variant saw. Never empties and never grows the input.
    """

    if not clusters or median_variant_count <= 0:
        return list(clusters)

    expected = float(median_variant_count)
    if len(clusters) <= expected * cfg.guard_soft_ratio + cfg.guard_soft_slack:
        return list(clusters)

    filtered = [
        c
        for c in clusters
        if c.variant_hits >= 3 or (c.variant_hits >= 2 and c.avg_score >= cfg.guard_pair_score)
    ]

    if len(filtered) >= cfg.guard_min_remaining and len(filtered) > expected * cfg.guard_hard_ratio + cfg.guard_hard_slack:
        min_hits = min(4, max(3, variant_count // 2))
        filtered = [c for c in filtered if c.variant_hits >= min_hits or c.avg_score >= cfg.guard_strict_score]

    LOGGER.debug("count-guard expected=%d before=%d after=%d", median_variant_count, len(clusters), len(filtered))
    return filtered if filtered else list(clusters)


def merge_by_consensus(
    per_variant: Sequence[Sequence[Detection]],
    cfg: ConsensusConfig = ConsensusConfig(),
    *,
    model_side: float = 640.0,
    max_results: int = 220,
) -> List[ConsensusCluster]:
    if not per_variant:
        return []

    clusters = cluster_detections(per_variant, cfg)
    if not clusters:
        return []

    median_count = median_int([len(v) for v in per_variant])

    clusters = apply_hit_gate(clusters, cfg, model_side)
    clusters = apply_top_band_gate(clusters, cfg, model_side)
    clusters = suppress_top_stripe_artifacts(clusters, cfg, model_side)
    clusters = deduplicate_clusters(clusters, cfg)
    clusters = apply_count_guard(clusters, median_count, len(per_variant), cfg)

    clusters.sort(key=lambda c: (-c.variant_hits, -c.avg_score, c.center_y))
    return clusters[:max_results]
