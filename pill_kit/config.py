from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Type, TypeVar


@dataclass(frozen=True)
class ConsensusConfig:
    """
    Policy constants for cross-variant consensus.

    Band and stripe ratios were tuned against one camera/tray setup; they are
    exposed so a different rig can override them, not derived from anything.
    """

    # Reliable-variant pre-filter
    min_variants_for_pruning: int = 4
    variant_count_low_ratio: float = 0.20
    variant_count_high_ratio: float = 1.85
    variant_count_high_slack: float = 14.0

    # Clustering
    cluster_radius_ratio: float = 0.48
    cluster_radius_min: float = 10.0
    cluster_radius_max: float = 24.0
    min_weight: float = 0.2

    # Hit-count / edge gate
    edge_margin_ratio: float = 0.04
    single_hit_min_score: float = 0.95
    single_hit_min_side: float = 10.0

    # Top-band anomaly gate
    top_band_min_clusters: int = 70
    top_band_ratio: float = 0.18
    top_band_max_share: float = 0.22
    top_band_keep_hits: int = 3
    top_band_keep_score: float = 0.90

    # Scan-line stripe artifact
    stripe_min_clusters: int = 20
    stripe_min_top_clusters: int = 10
    stripe_band_ratio: float = 0.17
    stripe_lower_band_ratio: float = 0.32
    stripe_min_x_coverage: float = 0.55
    stripe_max_y_std_ratio: float = 0.034
    stripe_min_top_share: float = 0.22
    stripe_max_lower_ratio: float = 0.55
    stripe_keep_hits: int = 6
    stripe_keep_score: float = 0.90

    # Cluster-level dedup
    dedup_radius_ratio: float = 0.52
    dedup_radius_min: float = 10.0
    dedup_radius_max: float = 22.0

    # Count guard
    guard_soft_ratio: float = 1.35
    guard_soft_slack: float = 6.0
    guard_hard_ratio: float = 1.25
    guard_hard_slack: float = 5.0
    guard_min_remaining: int = 6
    guard_pair_score: float = 0.88
    guard_strict_score: float = 0.92

    def __post_init__(self) -> None:
        for name in (
            "edge_margin_ratio",
            "top_band_ratio",
            "top_band_max_share",
            "stripe_band_ratio",
            "stripe_lower_band_ratio",
            "stripe_min_x_coverage",
            "stripe_min_top_share",
        ):
            value = getattr(self, name)
            if not (0.0 <= value <= 1.0):
                raise ValueError(f"{name} must be within [0, 1]")
        if self.stripe_lower_band_ratio < self.stripe_band_ratio:
            raise ValueError("stripe_lower_band_ratio must be >= stripe_band_ratio")
        if self.cluster_radius_min > self.cluster_radius_max:
            raise ValueError("cluster_radius_min must be <= cluster_radius_max")
        if self.dedup_radius_min > self.dedup_radius_max:
            raise ValueError("dedup_radius_min must be <= dedup_radius_max")
        if self.min_weight <= 0:
            raise ValueError("min_weight must be > 0")


@dataclass(frozen=True)
class PillPostConfig:
    """
    Decode and per-variant detection settings.
    """

    model_side: float = 640.0
    score_threshold: float = 0.24
    iou_threshold: float = 0.50
    pre_nms_top_k: int = 700
    max_per_variant: int = 180
    max_final_points: int = 220

    # Decode
    max_confidence_logit_abs: float = 16.0
    normalized_coord_max: float = 2.5
    scale_sample_boxes: int = 1200
    min_box_side: float = 5.0
    max_box_side_ratio: float = 0.56
    max_aspect: float = 6.5
    fallback_features: int = 6
    min_features: int = 5
    max_features: int = 16
    min_boxes: int = 64

    # Adaptive threshold / weak edge noise
    adaptive_cap: float = 0.72
    adaptive_ratio: float = 0.62
    edge_margin_ratio: float = 0.03
    weak_edge_floor: float = 0.40
    weak_edge_ratio: float = 0.58
    tiny_area: float = 65.0
    tiny_floor: float = 0.42
    tiny_ratio: float = 0.60

    # Center dedup
    center_radius_ratio: float = 0.38
    center_radius_min: float = 7.0
    center_radius_max: float = 16.0
    center_side_ratio: float = 0.34

    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)

    def __post_init__(self) -> None:
        if self.model_side <= 0:
            raise ValueError("model_side must be > 0")
        if not (0.0 <= self.score_threshold <= 1.0):
            raise ValueError("score_threshold must be within [0, 1]")
        if not (0.0 <= self.iou_threshold <= 1.0):
            raise ValueError("iou_threshold must be within [0, 1]")
        if self.pre_nms_top_k < 1:
            raise ValueError("pre_nms_top_k must be >= 1")
        if self.max_per_variant < 1:
            raise ValueError("max_per_variant must be >= 1")
        if self.max_final_points < 1:
            raise ValueError("max_final_points must be >= 1")
        if self.min_features < 5 or self.max_features < self.min_features:
            raise ValueError("feature bounds must satisfy 5 <= min_features <= max_features")
        if self.fallback_features < 5:
            raise ValueError("fallback_features must be >= 5")


@dataclass(frozen=True)
class SplitterConfig:
    """
    Settings for splitting merged (touching) pills within one frame.
    """

    model_side: float = 640.0
    max_regions: int = 3
    max_split_per_region: int = 3
    max_gain_per_region: int = 2

    suspect_min_side: float = 22.0
    suspect_side_ratio: float = 1.35
    suspect_min_hits: int = 2
    suspect_min_score: float = 0.45

    roi_side_ratio: float = 3.1
    roi_min_side: float = 100.0
    roi_max_side: float = 280.0
    roi_min_extent: int = 72

    min_component_area: int = 20
    max_component_ratio: float = 0.86
    merged_area_ratio: float = 1.7
    area_weight: float = 1.4
    center_weight: float = 1.2
    connectivity: int = 4

    peak_floor_min: int = 10
    peak_floor_ratio: float = 0.12
    min_peak_distance: int = 6
    peak_distance_ratio: float = 0.22
    max_peaks: int = 4

    min_cluster_pixels: int = 18
    cluster_area_ratio: float = 0.08
    split_side_ratio: float = 1.3
    split_score_ratio: float = 0.9
    split_min_score: float = 0.5
    min_split_hits: int = 2
    min_separation: float = 0.008

    remove_radius_ratio: float = 0.36
    remove_radius_min: float = 0.01
    remove_radius_max: float = 0.05
    dedup_radius_ratio: float = 0.20
    dedup_radius_min: float = 0.007
    dedup_radius_max: float = 0.028

    def __post_init__(self) -> None:
        if self.model_side <= 0:
            raise ValueError("model_side must be > 0")
        if self.connectivity not in (4, 8):
            raise ValueError("connectivity must be 4 or 8")
        if self.max_peaks < 2:
            raise ValueError("max_peaks must be >= 2")
        if self.max_split_per_region < 2:
            raise ValueError("max_split_per_region must be >= 2")
        if self.roi_min_side > self.roi_max_side:
            raise ValueError("roi_min_side must be <= roi_max_side")
        if not (0.0 < self.max_component_ratio <= 1.0):
            raise ValueError("max_component_ratio must be within (0, 1]")


@dataclass(frozen=True)
class PipelineProfile:
    schema_version: int = 1
    post: PillPostConfig = field(default_factory=PillPostConfig)
    splitter: SplitterConfig = field(default_factory=SplitterConfig)
    enable_splitter: bool = True

    def __post_init__(self) -> None:
        if self.schema_version != 1:
            raise ValueError("pipeline profile schema_version must be 1")
        if abs(self.post.model_side - self.splitter.model_side) > 1e-6:
            raise ValueError("post.model_side must match splitter.model_side")


_C = TypeVar("_C")


def _coerce_section(cls: Type[_C], payload: Any, section: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError(f"{section} must be a JSON object")
    known = {f.name: f for f in fields(cls) if f.name != "consensus"}
    unknown = sorted(set(payload.keys()) - set(known.keys()))
    if unknown:
        raise ValueError(f"Unknown {section} keys: {unknown}")

    out: Dict[str, Any] = {}
    for key, value in payload.items():
        default = getattr(cls(), key)
        if isinstance(default, bool):
            if not isinstance(value, bool):
                raise ValueError(f"{section}.{key} must be a boolean")
            out[key] = value
        elif isinstance(default, int):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{section}.{key} must be an integer")
            if isinstance(value, float) and not value.is_integer():
                raise ValueError(f"{section}.{key} must be an integer")
            out[key] = int(value)
        else:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{section}.{key} must be a number")
            out[key] = float(value)
    return out


def load_pipeline_profile(path: Path) -> PipelineProfile:
    """
    Load a JSON pipeline profile. Every section is optional:

        {
          "schema_version": 1,
          "post": {"score_threshold": 0.3},
          "consensus": {"stripe_keep_hits": 5},
          "splitter": {"connectivity": 8},
          "enable_splitter": true
        }
    """

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Pipeline profile not found: {path}")
    raw = path.read_text(encoding="utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid pipeline profile JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Pipeline profile must be a JSON object")

    allowed = {"schema_version", "post", "consensus", "splitter", "enable_splitter", "notes"}
    unknown = sorted(set(payload.keys()) - allowed)
    if unknown:
        raise ValueError(f"Unknown pipeline profile keys: {unknown}")

    schema_version = payload.get("schema_version", 1)
    if isinstance(schema_version, bool) or not isinstance(schema_version, int):
        raise ValueError("schema_version must be an integer")

    enable_splitter = payload.get("enable_splitter", True)
    if not isinstance(enable_splitter, bool):
        raise ValueError("enable_splitter must be a boolean")

    notes = payload.get("notes")
    if notes is not None and not isinstance(notes, str):
        raise ValueError("notes must be a string if provided")

    consensus = ConsensusConfig(**_coerce_section(ConsensusConfig, payload.get("consensus", {}), "consensus"))
    post = PillPostConfig(**_coerce_section(PillPostConfig, payload.get("post", {}), "post"))
    post = replace(post, consensus=consensus)

    splitter_kwargs = _coerce_section(SplitterConfig, payload.get("splitter", {}), "splitter")
    # The splitter maps back into the same model space unless told otherwise.
    splitter_kwargs.setdefault("model_side", post.model_side)
    splitter = SplitterConfig(**splitter_kwargs)

    return PipelineProfile(
        schema_version=schema_version,
        post=post,
        splitter=splitter,
        enable_splitter=enable_splitter,
    )
