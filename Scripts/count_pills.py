from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import cv2
import numpy as np
from tqdm import tqdm

from pill_kit import (
    PillCountPipeline,
    PipelineProfile,
    PixelBuffer,
    PreparedFrame,
    draw_points,
    load_pipeline_profile,
)
from pill_kit.types import ModelOutputTensor


def _load_tensor(path: Path, key: Optional[str]) -> np.ndarray:
    if path.suffix.lower() == ".npz":
        with np.load(path) as archive:
            names = list(archive.keys())
            if not names:
                raise ValueError(f"Empty .npz archive: {path}")
            name = key if key is not None else names[0]
            if name not in archive:
                raise KeyError(f"Array {name!r} not found in {path} (have: {names})")
            return np.asarray(archive[name], dtype=np.float32)
    if path.suffix.lower() == ".npy":
        return np.asarray(np.load(path), dtype=np.float32)
    raise ValueError(f"Unsupported tensor file (expected .npy or .npz): {path}")


def _iter_tensor_paths(inputs: Iterable[str]) -> List[Path]:
    paths: List[Path] = []
    for raw in inputs:
        p = Path(raw)
        if p.is_dir():
            paths.extend(sorted(q for q in p.iterdir() if q.suffix.lower() in (".npy", ".npz")))
        elif p.exists():
            paths.append(p)
        else:
            raise FileNotFoundError(f"Input not found: {p}")
    return paths


def _parse_roi(raw: Optional[str]) -> Optional[PreparedFrame]:
    if raw is None:
        return None
    parts = [float(v) for v in raw.split(",")]
    if len(parts) not in (4, 5):
        raise ValueError('--roi must be "x,y,w,h" or "x,y,w,h,trim"')
    trim = parts[4] if len(parts) == 5 else 0.0
    return PreparedFrame(inference_roi=(parts[0], parts[1], parts[2], parts[3]), edge_trim_ratio=trim)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Count pills from saved detector outputs (.npy/.npz), one tensor per frame."
    )
    parser.add_argument("inputs", nargs="+", help="Tensor files or directories of tensor files.")
    parser.add_argument("--variants", type=int, default=None, help="Expected variants per tensor (default: batch dim).")
    parser.add_argument("--key", default=None, help="Array name inside .npz files (default: first array).")
    parser.add_argument("--profile", default=None, help="Optional pipeline profile JSON.")
    parser.add_argument("--conf", type=float, default=None, help="Override score threshold.")
    parser.add_argument("--iou", type=float, default=None, help="Override IoU threshold for NMS.")
    parser.add_argument(
        "--image",
        default=None,
        help="Model-space frame for the instance splitter and overlay (single input only).",
    )
    parser.add_argument("--out", default=None, help="Optional output path for the overlay image (needs --image).")
    parser.add_argument(
        "--roi",
        default=None,
        help='Inference ROI "x,y,w,h[,trim]" in model pixels; adds display-space points to the output.',
    )
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging from pill_kit.")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.variants is not None and args.variants < 1:
        raise ValueError("--variants must be >= 1")
    if args.out and not args.image:
        raise ValueError("--out requires --image")

    profile = load_pipeline_profile(Path(args.profile)) if args.profile else PipelineProfile()
    pipeline = PillCountPipeline.from_profile(profile)
    prepared = _parse_roi(args.roi)

    paths = _iter_tensor_paths(args.inputs)
    if not paths:
        raise RuntimeError("No .npy/.npz inputs found.")

    image = None
    pixel_buffer = None
    if args.image:
        if len(paths) != 1:
            raise ValueError("--image can only be used with a single tensor input")
        image = cv2.imread(args.image)
        if image is None:
            raise FileNotFoundError(f"Could not read image at path: {args.image}")
        pixel_buffer = PixelBuffer.from_bgr(pipeline.resize_to_model(image))

    iterator = paths if args.no_progress else tqdm(paths, unit="tensor")
    results: List[Dict[str, object]] = []
    for path in iterator:
        arr = _load_tensor(path, args.key)
        expected = args.variants if args.variants is not None else (int(arr.shape[0]) if arr.ndim >= 3 else 1)
        result = pipeline.count_tensor(
            ModelOutputTensor.from_array(arr),
            expected_variants=expected,
            pixel_buffer=pixel_buffer,
            score_threshold=args.conf,
            iou_threshold=args.iou,
        )
        record: Dict[str, object] = {
            "input": str(path),
            "count": result.count,
            "points": [[round(x, 5), round(y, 5)] for x, y in result.points],
            "variant_hits": [d.variant_hits for d in result.detections],
        }
        if prepared is not None:
            record["display_points"] = [
                [round(x, 5), round(y, 5)] for x, y in prepared.map_points_to_display(result.points)
            ]
        results.append(record)

        if args.out and image is not None:
            vis = draw_points(image, result.detections, model_side=pipeline.model_side, show_hits=True)
            ok = cv2.imwrite(args.out, vis)
            if not ok:
                raise RuntimeError(f"Failed to write output image: {args.out}")

    print(json.dumps(results if len(results) > 1 else results[0], indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
