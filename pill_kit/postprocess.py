from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import numpy as np

from .config import PillPostConfig
from .consensus import merge_by_consensus, select_reliable_variants
from .layout import TensorLayout, available_variants, effective_layout, infer_layout
from .nms import NMSConfig, deduplicate_by_center, nms_detections
from .types import ConsensusCluster, Detection, ModelOutputTensor, PillDetection, PillInferenceResult

LOGGER = logging.getLogger(__name__)


def decode_confidence(raw: np.ndarray, max_logit_abs: float = 16.0) -> np.ndarray:
    """
    Map raw class outputs to probabilities whether or not the head already
    applied a sigmoid.

    - non-finite -> 0
    - [0, 1]     -> unchanged
    - beyond +/- max_logit_abs -> 0.999 / 0.001
    - otherwise  -> logistic sigmoid
    """

    r = np.asarray(raw, dtype=np.float64)
    out = np.zeros_like(r)
    finite = np.isfinite(r)

    in_unit = finite & (r >= 0.0) & (r <= 1.0)
    high = finite & ~in_unit & (r > max_logit_abs)
    low = finite & ~in_unit & (r < -max_logit_abs)
    logit = finite & ~in_unit & ~high & ~low

    out[in_unit] = r[in_unit]
    out[high] = 0.999
    out[low] = 0.001
    out[logit] = 1.0 / (1.0 + np.exp(-r[logit]))
    return out


def infer_coordinate_scale(
    view: np.ndarray,
    model_side: float,
    *,
    sample_boxes: int = 1200,
    normalized_max: float = 2.5,
) -> float:
    """
    Return `model_side` when box coordinates look normalized to ~[0, 1], else 1.

    `view` is the (features, boxes) matrix of a single variant.
    """

    n = min(view.shape[1], sample_boxes)
    if n <= 0:
        return float(model_side)
    sample = np.abs(np.asarray(view[0:4, :n], dtype=np.float64))
    sample = sample[~np.isnan(sample)]
    max_abs = float(sample.max()) if sample.size else 0.0
    return float(model_side) if max_abs <= normalized_max else 1.0


class PillPostprocessor:
    """
    Turn raw detector output for a batch of augmented variants into one
    deduplicated set of pill centers.

    Per variant: decode -> top-K -> adaptive threshold -> edge/tiny noise
    removal -> NMS -> center dedup. Across variants: reliable-variant
    pre-filter -> consensus clustering -> artifact and count guards.

    Malformed model output never raises; it degrades to an empty result.
    """

    def __init__(self, cfg: PillPostConfig = PillPostConfig()):
        self.cfg = cfg

    def process(
        self,
        tensor: ModelOutputTensor,
        expected_variants: int,
        score_threshold: Optional[float] = None,
        iou_threshold: Optional[float] = None,
    ) -> PillInferenceResult:
        per_variant = self.detect_variants(
            tensor,
            expected_variants,
            score_threshold=score_threshold,
            iou_threshold=iou_threshold,
        )
        if per_variant is None:
            return PillInferenceResult.empty()

        selected = select_reliable_variants(per_variant, self.cfg.consensus)
        if len(selected) != len(per_variant):
            LOGGER.debug("variant-pruned from=%d to=%d", len(per_variant), len(selected))

        clusters = merge_by_consensus(
            selected,
            self.cfg.consensus,
            model_side=self.cfg.model_side,
            max_results=self.cfg.max_final_points,
        )
        LOGGER.debug("consensus variants=%d merged=%d", len(selected), len(clusters))

        return PillInferenceResult.from_detections(self._to_pill_detection(c) for c in clusters)

    def detect_variants(
        self,
        tensor: ModelOutputTensor,
        expected_variants: int,
        score_threshold: Optional[float] = None,
        iou_threshold: Optional[float] = None,
    ) -> Optional[List[List[Detection]]]:
        """
        Run the per-variant detector over every variant present in `tensor`.

        Returns None when the tensor layout cannot be recognized.
        """

        cfg = self.cfg
        values = np.asarray(tensor.values, dtype=np.float32).reshape(-1)
        layout = infer_layout(
            tensor.shape,
            values.size,
            min_features=cfg.min_features,
            max_features=cfg.max_features,
            min_boxes=cfg.min_boxes,
            fallback_features=cfg.fallback_features,
        )
        if layout is None:
            LOGGER.debug("start shape=%s values=%d layout=none", list(tensor.shape), values.size)
            return None

        available = available_variants(layout, values.size)
        layout = effective_layout(layout, values.size)
        batch_count = max(1, min(int(expected_variants), available))
        LOGGER.debug(
            "start shape=%s values=%d layout=features:%d boxes:%d channel_major:%s batch=%d",
            list(tensor.shape),
            values.size,
            layout.features,
            layout.boxes,
            layout.channel_major,
            batch_count,
        )

        score_thr = cfg.score_threshold if score_threshold is None else float(score_threshold)
        iou_thr = cfg.iou_threshold if iou_threshold is None else float(iou_threshold)

        per_variant: List[List[Detection]] = []
        for variant in range(batch_count):
            decoded = self.decode_variant(values, layout, variant, score_thr, iou_thr)
            LOGGER.debug("variant[%d] detections=%d", variant, len(decoded))
            per_variant.append(decoded)
        return per_variant

    def decode_variant(
        self,
        values: np.ndarray,
        layout: TensorLayout,
        batch_index: int,
        score_threshold: float,
        iou_threshold: float,
    ) -> List[Detection]:
        cfg = self.cfg
        candidates = self._decode_candidates(layout.variant_view(values, batch_index))
        if not candidates:
            return []

        top_score = candidates[0].score
        adaptive = max(score_threshold, min(cfg.adaptive_cap, top_score * cfg.adaptive_ratio))
        thresholded = [d for d in candidates if d.score >= adaptive]
        thresholded = self._remove_weak_edge_noise(thresholded)

        kept = nms_detections(
            thresholded,
            NMSConfig(iou_threshold=iou_threshold, max_detections=cfg.max_per_variant),
        )
        deduped = deduplicate_by_center(
            kept,
            radius_ratio=cfg.center_radius_ratio,
            radius_min=cfg.center_radius_min,
            radius_max=cfg.center_radius_max,
            side_ratio=cfg.center_side_ratio,
        )
        return deduped[: cfg.max_per_variant]

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _decode_candidates(self, view: np.ndarray) -> List[Detection]:
        """
        Decode one (features, boxes) matrix into valid boxes, best score first,
        capped at `pre_nms_top_k`.
        """

        cfg = self.cfg
        features = view.shape[0]
        if features < cfg.min_features:
            return []

        side = float(cfg.model_side)
        scale = infer_coordinate_scale(
            view,
            side,
            sample_boxes=cfg.scale_sample_boxes,
            normalized_max=cfg.normalized_coord_max,
        )

        class_scores = decode_confidence(view[4:, :], cfg.max_confidence_logit_abs)
        scores = np.maximum(class_scores.max(axis=0), 0.0)

        with np.errstate(over="ignore", invalid="ignore"):
            p = view[0:4, :].astype(np.float64) * scale
            cx, cy = p[0], p[1]
            w, h = np.abs(p[2]), np.abs(p[3])

            max_side = side * cfg.max_box_side_ratio
            valid = (scores > 0) & np.isfinite(cx) & np.isfinite(cy) & np.isfinite(w) & np.isfinite(h)
            valid &= (w >= cfg.min_box_side) & (h >= cfg.min_box_side)
            valid &= (w <= max_side) & (h <= max_side)
            aspect = np.maximum(w / np.maximum(1.0, h), h / np.maximum(1.0, w))
            valid &= aspect <= cfg.max_aspect

            x1 = np.maximum(0.0, cx - w * 0.5)
            y1 = np.maximum(0.0, cy - h * 0.5)
            x2 = np.minimum(side, cx + w * 0.5)
            y2 = np.minimum(side, cy + h * 0.5)
            valid &= (x2 - x1 >= cfg.min_box_side) & (y2 - y1 >= cfg.min_box_side)

        idx = np.nonzero(valid)[0]
        if idx.size == 0:
            return []
        order = idx[np.argsort(-scores[idx], kind="stable")][: cfg.pre_nms_top_k]

        return [
            Detection(
                x1=float(x1[i]),
                y1=float(y1[i]),
                x2=float(x2[i]),
                y2=float(y2[i]),
                score=float(scores[i]),
            )
            for i in order
        ]

    def _remove_weak_edge_noise(self, detections: Sequence[Detection]) -> List[Detection]:
        if not detections:
            return []

        cfg = self.cfg
        side = float(cfg.model_side)
        margin = side * cfg.edge_margin_ratio
        top_score = detections[0].score
        weak_edge_floor = max(cfg.weak_edge_floor, top_score * cfg.weak_edge_ratio)
        tiny_floor = max(cfg.tiny_floor, top_score * cfg.tiny_ratio)

        kept: List[Detection] = []
        for det in detections:
            cx, cy = det.cx, det.cy
            near_edge = cx <= margin or cx >= side - margin or cy <= margin or cy >= side - margin
            if near_edge and det.score < weak_edge_floor:
                continue
            if det.area < cfg.tiny_area and det.score < tiny_floor:
                continue
            kept.append(det)
        return kept

    def _to_pill_detection(self, cluster: ConsensusCluster) -> PillDetection:
        side = float(self.cfg.model_side)
        return PillDetection(
            point=(
                min(1.0, max(0.0, cluster.center_x / side)),
                min(1.0, max(0.0, cluster.center_y / side)),
            ),
            mean_side=cluster.mean_side,
            avg_score=cluster.avg_score,
            variant_hits=cluster.variant_hits,
        )
