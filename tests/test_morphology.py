import unittest

import numpy as np

from pill_kit.morphology import (
    close_mask,
    connected_components,
    dilate,
    erode,
    evaluate_mask,
    open_mask,
    otsu_threshold,
    select_foreground_mask,
)


class TestOtsu(unittest.TestCase):
    def test_degenerate_inputs(self) -> None:
        self.assertEqual(otsu_threshold(np.zeros((0,), dtype=np.uint8)), 128)
        self.assertEqual(otsu_threshold(np.full((8, 8), 77, dtype=np.uint8)), 128)

    def test_bimodal(self) -> None:
        rng = np.random.default_rng(0)
        dark = rng.integers(10, 21, size=500)
        bright = rng.integers(200, 211, size=500)
        t = otsu_threshold(np.concatenate([dark, bright]).astype(np.uint8))
        self.assertGreaterEqual(t, 20)
        self.assertLess(t, 200)

    def test_two_levels_returns_lower(self) -> None:
        pixels = np.array([40] * 50 + [200] * 50, dtype=np.uint8)
        self.assertEqual(otsu_threshold(pixels), 40)

    def test_uniform_black_is_not_zero(self) -> None:
        self.assertEqual(otsu_threshold(np.zeros((16, 16), dtype=np.uint8)), 128)

    def test_three_levels_on_patch(self) -> None:
        patch = np.array([10] * 30 + [50] * 30 + [200] * 40, dtype=np.uint8).reshape(10, 10)
        self.assertEqual(otsu_threshold(patch), 50)

    def test_matches_histogram_definition(self) -> None:
        rng = np.random.default_rng(11)
        levels = np.arange(256, dtype=np.float64)
        for _ in range(20):
            lo, hi = sorted(rng.integers(0, 256, size=2))
            patch = rng.integers(lo, hi + 2, size=(24, 24)).clip(0, 255).astype(np.uint8)
            if patch.min() == patch.max():
                continue
            hist = np.bincount(patch.reshape(-1), minlength=256).astype(np.float64)
            w_b = np.cumsum(hist)
            w_f = patch.size - w_b
            sum_b = np.cumsum(levels * hist)
            valid = (w_b > 0) & (w_f > 0)
            with np.errstate(divide="ignore", invalid="ignore"):
                between = w_b * w_f * (sum_b / w_b - (sum_b[-1] - sum_b) / w_f) ** 2
            expected = int(np.argmax(np.where(valid, between, -1.0)))
            self.assertEqual(otsu_threshold(patch), expected)


class TestMorphology(unittest.TestCase):
    def test_erode_square(self) -> None:
        m = np.ones((5, 5), dtype=np.uint8)
        out = erode(m)
        expected = np.zeros((5, 5), dtype=np.uint8)
        expected[1:4, 1:4] = 1
        self.assertTrue(np.array_equal(out, expected))

    def test_dilate_point(self) -> None:
        m = np.zeros((5, 5), dtype=np.uint8)
        m[2, 2] = 1
        self.assertEqual(int(dilate(m).sum()), 9)

    def test_dilate_keeps_border_clear(self) -> None:
        m = np.zeros((5, 5), dtype=np.uint8)
        m[1, 1] = 1
        out = dilate(m)
        self.assertEqual(int(out.sum()), 4)
        self.assertEqual(int(out[0, :].sum() + out[:, 0].sum()), 0)

    def test_tiny_masks(self) -> None:
        m = np.ones((2, 2), dtype=np.uint8)
        self.assertFalse(erode(m).any())
        self.assertFalse(dilate(m).any())

    def test_open_removes_speck_close_fills_hole(self) -> None:
        m = np.zeros((20, 20), dtype=np.uint8)
        m[4:14, 4:14] = 1
        m[17, 17] = 1
        opened = open_mask(m)
        self.assertEqual(opened[17, 17], 0)
        self.assertEqual(int(opened.sum()), 100)

        holed = np.zeros((20, 20), dtype=np.uint8)
        holed[4:14, 4:14] = 1
        holed[8, 8] = 0
        self.assertEqual(close_mask(holed)[8, 8], 1)


class TestComponents(unittest.TestCase):
    def test_connectivity(self) -> None:
        m = np.zeros((6, 6), dtype=np.uint8)
        m[1, 1] = 1
        m[2, 2] = 1
        _, four = connected_components(m, connectivity=4)
        _, eight = connected_components(m, connectivity=8)
        self.assertEqual(len(four), 2)
        self.assertEqual(len(eight), 1)
        self.assertEqual(eight[0].area, 2)

    def test_centroids(self) -> None:
        m = np.zeros((10, 10), dtype=np.uint8)
        m[2:4, 2:4] = 1
        labels, comps = connected_components(m)
        self.assertEqual(len(comps), 1)
        self.assertAlmostEqual(comps[0].centroid[0], 2.5)
        self.assertAlmostEqual(comps[0].centroid[1], 2.5)
        self.assertEqual(int((labels == comps[0].label).sum()), 4)

    def test_empty(self) -> None:
        _, comps = connected_components(np.zeros((4, 4), dtype=np.uint8))
        self.assertEqual(comps, [])


class TestMaskSelection(unittest.TestCase):
    def test_evaluate_picks_plausible_blob(self) -> None:
        m = np.zeros((40, 40), dtype=np.uint8)
        m[15:25, 15:25] = 1
        m[2:5, 30:37] = 1
        selected = evaluate_mask(m, expected_area=100.0)
        self.assertIsNotNone(selected)
        self.assertEqual(selected.area, 100)
        self.assertEqual(int(selected.mask[20, 20]), 1)
        self.assertEqual(int(selected.mask[3, 33]), 0)

    def test_evaluate_rejects_specks(self) -> None:
        m = np.zeros((40, 40), dtype=np.uint8)
        m[10:12, 10:12] = 1
        self.assertIsNone(evaluate_mask(m, expected_area=100.0))

    def test_evaluate_rejects_blob_filling_region(self) -> None:
        m = np.ones((80, 80), dtype=np.uint8)
        self.assertIsNone(evaluate_mask(m, expected_area=100.0))

    def test_falls_back_to_dark(self) -> None:
        bright = np.zeros((40, 40), dtype=np.uint8)
        dark = np.zeros((40, 40), dtype=np.uint8)
        dark[15:25, 15:25] = 1
        selected = select_foreground_mask(bright, dark, 100.0)
        self.assertIsNotNone(selected)
        self.assertEqual(selected.area, 100)

    def test_prefers_better_reading(self) -> None:
        bright = np.zeros((40, 40), dtype=np.uint8)
        bright[2:8, 2:8] = 1
        dark = np.zeros((40, 40), dtype=np.uint8)
        dark[15:25, 15:25] = 1
        selected = select_foreground_mask(bright, dark, 100.0)
        self.assertEqual(int(selected.mask[20, 20]), 1)


if __name__ == "__main__":
    unittest.main()
