from __future__ import annotations

import argparse
import statistics
import time
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
from tqdm import tqdm

from pill_kit import PillCountPipeline, PillPostConfig, PixelBuffer
from pill_kit.types import ModelOutputTensor


@dataclass(frozen=True)
class TimingSummary:
    n: int
    mean_ms: float
    p50_ms: float
    p90_ms: float
    p95_ms: float


def _percentile(sorted_values: List[float], q: float) -> float:
    if not sorted_values:
        raise ValueError("No values provided.")
    if q < 0.0 or q > 100.0:
        raise ValueError("q must be in [0, 100].")
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    # Linear interpolation between closest ranks.
    pos = (q / 100.0) * (len(sorted_values) - 1)
    lo = int(np.floor(pos))
    hi = int(np.ceil(pos))
    if lo == hi:
        return float(sorted_values[lo])
    t = pos - lo
    return float(sorted_values[lo] * (1.0 - t) + sorted_values[hi] * t)


def _summarize_ms(values_s: List[float]) -> TimingSummary:
    ms_sorted = sorted(v * 1000.0 for v in values_s)
    return TimingSummary(
        n=len(ms_sorted),
        mean_ms=float(statistics.fmean(ms_sorted)) if ms_sorted else 0.0,
        p50_ms=_percentile(ms_sorted, 50.0) if ms_sorted else 0.0,
        p90_ms=_percentile(ms_sorted, 90.0) if ms_sorted else 0.0,
        p95_ms=_percentile(ms_sorted, 95.0) if ms_sorted else 0.0,
    )


def _format_summary(label: str, s: TimingSummary) -> str:
    return (
        f"{label}: n={s.n} mean={s.mean_ms:.3f}ms p50={s.p50_ms:.3f}ms "
        f"p90={s.p90_ms:.3f}ms p95={s.p95_ms:.3f}ms"
    )


def _synthetic_scene(pills: int, side: float, rng: np.random.Generator) -> np.ndarray:
    # Pills on a jittered grid so they do not overlap.
    cols = int(np.ceil(np.sqrt(pills)))
    step = (side * 0.9) / max(cols, 1)
    centers = []
    for i in range(pills):
        cx = side * 0.05 + step * (i % cols + 0.5)
        cy = side * 0.05 + step * (i // cols + 0.5)
        centers.append((cx, cy))
    jitter = rng.uniform(-0.15, 0.15, size=(pills, 2)) * step
    return (np.asarray(centers, dtype=np.float64) + jitter).astype(np.float32)


def _synthetic_tensor(
    centers: np.ndarray,
    variants: int,
    boxes: int,
    pill_side: float,
    rng: np.random.Generator,
) -> np.ndarray:
    out = np.zeros((variants, 6, boxes), dtype=np.float32)
    n = min(len(centers), boxes)
    for v in range(variants):
        # A few jittered copies per pill, the way real heads fire on neighbouring anchors.
        copies = max(1, boxes // max(n, 1))
        slot = 0
        for _ in range(copies):
            if slot >= boxes:
                break
            take = min(n, boxes - slot)
            jitter = rng.normal(0.0, 1.5, size=(take, 2)).astype(np.float32)
            out[v, 0:2, slot : slot + take] = (centers[:take] + jitter).T
            out[v, 2:4, slot : slot + take] = pill_side + rng.normal(0.0, 1.0, size=(2, take))
            out[v, 4, slot : slot + take] = rng.uniform(0.3, 0.98, size=take)
            slot += take
    return out


def _synthetic_frame(centers: np.ndarray, side: int, pill_side: float, rng: np.random.Generator) -> np.ndarray:
    gray = rng.integers(20, 61, size=(side, side)).astype(np.uint8)
    yy, xx = np.mgrid[0:side, 0:side]
    r2 = (pill_side * 0.5) ** 2
    for cx, cy in centers:
        disk = (xx - cx) ** 2 + (yy - cy) ** 2 <= r2
        gray[disk] = 200
    return np.repeat(gray[:, :, None], 3, axis=2)


def main() -> int:
    parser = argparse.ArgumentParser(description="Benchmark pill post-processing latency on synthetic detector output.")
    parser.add_argument("--pills", type=int, default=60, help="Pills in the synthetic scene.")
    parser.add_argument("--variants", type=int, default=6, help="Augmented variants per frame.")
    parser.add_argument("--boxes", type=int, default=8400, help="Candidate boxes per variant.")
    parser.add_argument("--pill-side", type=float, default=28.0, help="Pill side in model pixels.")
    parser.add_argument("--imgsz", type=int, default=640, help="Model input side.")
    parser.add_argument("--with-splitter", action="store_true", help="Also time the instance splitter.")
    parser.add_argument("--warmup", type=int, default=5, help="Warmup iterations to run but not record.")
    parser.add_argument("--repeats", type=int, default=50, help="Recorded iterations.")
    parser.add_argument("--seed", type=int, default=0, help="RNG seed.")
    args = parser.parse_args()

    if args.pills < 1:
        raise ValueError("--pills must be >= 1")
    if args.variants < 1:
        raise ValueError("--variants must be >= 1")
    if args.boxes < 64:
        raise ValueError("--boxes must be >= 64")
    if args.imgsz < 32:
        raise ValueError("--imgsz must be >= 32")
    if args.warmup < 0:
        raise ValueError("--warmup must be >= 0")
    if args.repeats < 1:
        raise ValueError("--repeats must be >= 1")

    rng = np.random.default_rng(args.seed)
    pipeline = PillCountPipeline(post_cfg=PillPostConfig(model_side=float(args.imgsz)))
    centers = _synthetic_scene(int(args.pills), float(args.imgsz), rng)
    tensor = ModelOutputTensor.from_array(
        _synthetic_tensor(centers, int(args.variants), int(args.boxes), float(args.pill_side), rng)
    )
    frame: Optional[PixelBuffer] = None
    if args.with_splitter:
        frame = PixelBuffer.from_bgr(_synthetic_frame(centers, int(args.imgsz), float(args.pill_side), rng))

    t_post: List[float] = []
    counts: List[int] = []
    for i in tqdm(range(int(args.warmup) + int(args.repeats)), unit="iter"):
        t0 = time.perf_counter()
        result = pipeline.count_tensor(tensor, expected_variants=int(args.variants), pixel_buffer=frame)
        t1 = time.perf_counter()
        if i < int(args.warmup):
            continue
        t_post.append(t1 - t0)
        counts.append(result.count)

    print(_format_summary("postprocess_with_splitter" if frame is not None else "postprocess", _summarize_ms(t_post)))
    print(f"pills={args.pills} counted={counts[-1]} variants={args.variants} boxes={args.boxes}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
