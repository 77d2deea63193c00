import unittest

import numpy as np

from pill_kit.nms import NMSConfig, deduplicate_by_center, nms, nms_detections
from pill_kit.types import Detection


def _det(cx: float, cy: float, side: float, score: float) -> Detection:
    half = side * 0.5
    return Detection(x1=cx - half, y1=cy - half, x2=cx + half, y2=cy + half, score=score)


class TestNMS(unittest.TestCase):
    def test_empty(self) -> None:
        keep = nms(np.zeros((0, 4), dtype=np.float32), np.zeros((0,), dtype=np.float32), NMSConfig())
        self.assertEqual(keep.shape, (0,))

    def test_overlapping_boxes_suppressed(self) -> None:
        boxes = np.array(
            [
                [0, 0, 10, 10],
                [1, 1, 11, 11],
                [50, 50, 60, 60],
            ],
            dtype=np.float32,
        )
        scores = np.array([0.8, 0.9, 0.7], dtype=np.float32)
        keep = nms(boxes, scores, NMSConfig(iou_threshold=0.5))
        self.assertEqual(keep.tolist(), [1, 2])

    def test_equal_scores_keep_input_order(self) -> None:
        boxes = np.array([[0, 0, 10, 10], [1, 0, 11, 10], [30, 30, 40, 40]], dtype=np.float32)
        scores = np.array([0.5, 0.5, 0.5], dtype=np.float32)
        keep = nms(boxes, scores, NMSConfig(iou_threshold=0.5))
        self.assertEqual(keep.tolist(), [0, 2])

    def test_max_detections(self) -> None:
        boxes = np.array([[i * 20, 0, i * 20 + 10, 10] for i in range(10)], dtype=np.float32)
        scores = np.linspace(0.9, 0.5, 10).astype(np.float32)
        keep = nms(boxes, scores, NMSConfig(max_detections=3))
        self.assertEqual(keep.tolist(), [0, 1, 2])

    def test_degenerate_boxes_do_not_divide_by_zero(self) -> None:
        boxes = np.array([[5, 5, 5, 5], [5, 5, 5, 5]], dtype=np.float32)
        scores = np.array([0.9, 0.8], dtype=np.float32)
        keep = nms(boxes, scores, NMSConfig())
        self.assertEqual(keep.tolist(), [0, 1])

    def test_idempotent_on_detections(self) -> None:
        rng = np.random.default_rng(3)
        dets = [
            _det(float(x), float(y), 20.0, float(s))
            for x, y, s in zip(rng.uniform(20, 620, 80), rng.uniform(20, 620, 80), rng.uniform(0.3, 1.0, 80))
        ]
        cfg = NMSConfig(iou_threshold=0.5, max_detections=200)
        once = nms_detections(dets, cfg)
        twice = nms_detections(once, cfg)
        self.assertEqual(once, twice)


class TestCenterDedup(unittest.TestCase):
    def test_close_centers_collapse_to_first(self) -> None:
        dets = [_det(100, 100, 30, 0.9), _det(105, 102, 30, 0.8), _det(200, 200, 30, 0.7)]
        kept = deduplicate_by_center(dets)
        self.assertEqual(kept, [dets[0], dets[2]])

    def test_radius_clamped(self) -> None:
        # Median side 30 -> radius 11.4; centers 12 apart survive.
        dets = [_det(100, 100, 30, 0.9), _det(112, 100, 30, 0.8)]
        self.assertEqual(len(deduplicate_by_center(dets)), 2)

    def test_large_box_widens_own_radius(self) -> None:
        dets = [
            _det(100, 100, 20, 0.9),
            _det(300, 300, 20, 0.9),
            _det(500, 500, 20, 0.9),
            _det(112, 100, 60, 0.8),
        ]
        kept = deduplicate_by_center(dets)
        self.assertEqual(len(kept), 3)

    def test_idempotent(self) -> None:
        rng = np.random.default_rng(5)
        dets = [_det(float(x), float(y), 24.0, 0.9) for x, y in zip(rng.uniform(20, 620, 120), rng.uniform(20, 620, 120))]
        once = deduplicate_by_center(dets)
        self.assertEqual(deduplicate_by_center(once), once)

    def test_radius_comes_from_median_side(self) -> None:
        # Median side 40 -> radius 15.2 (under the 16 cap); centers 15 apart collapse.
        dets = [_det(100, 100, 40, 0.9), _det(115, 100, 40, 0.8), _det(300, 300, 40, 0.7)]
        self.assertEqual(deduplicate_by_center(dets), [dets[0], dets[2]])
        with self.assertRaises(TypeError):
            deduplicate_by_center(dets, base_radius=30.0)


if __name__ == "__main__":
    unittest.main()
