import unittest

import numpy as np

from pill_kit.layout import TensorLayout, available_variants, effective_layout, infer_layout


class TestInferLayout(unittest.TestCase):
    def test_channel_major(self) -> None:
        layout = infer_layout((1, 6, 8400), 6 * 8400)
        self.assertEqual(layout, TensorLayout(batch=1, boxes=8400, features=6, channel_major=True))

    def test_box_major(self) -> None:
        layout = infer_layout((4, 8400, 6), 4 * 6 * 8400)
        self.assertEqual(layout, TensorLayout(batch=4, boxes=8400, features=6, channel_major=False))

    def test_two_dims(self) -> None:
        layout = infer_layout((7, 100), 700)
        self.assertEqual(layout, TensorLayout(batch=1, boxes=100, features=7, channel_major=True))
        layout = infer_layout((100, 7), 700)
        self.assertEqual(layout, TensorLayout(batch=1, boxes=100, features=7, channel_major=False))

    def test_leading_degenerate_dims_ignored(self) -> None:
        layout = infer_layout((1, 1, 2, 6, 64), 2 * 6 * 64)
        self.assertEqual(layout, TensorLayout(batch=2, boxes=64, features=6, channel_major=True))

    def test_flat_fallback(self) -> None:
        layout = infer_layout((384,), 384)
        self.assertEqual(layout, TensorLayout(batch=1, boxes=64, features=6, channel_major=True))

    def test_declared_shape_larger_than_buffer_falls_back(self) -> None:
        # (2, 6, 64) does not fit in one variant's worth of values.
        layout = infer_layout((2, 6, 64), 6 * 64)
        self.assertEqual(layout, TensorLayout(batch=1, boxes=64, features=6, channel_major=True))

    def test_unrecognized(self) -> None:
        self.assertIsNone(infer_layout((1, 3, 10), 30))
        self.assertIsNone(infer_layout((), 0))
        self.assertIsNone(infer_layout((1, 6, 32), 6 * 32))


class TestLayoutViews(unittest.TestCase):
    def test_variant_view_channel_major(self) -> None:
        values = np.arange(2 * 6 * 64, dtype=np.float32)
        layout = TensorLayout(batch=2, boxes=64, features=6, channel_major=True)
        view = layout.variant_view(values, 1)
        self.assertEqual(view.shape, (6, 64))
        self.assertEqual(view[0, 0], 384.0)
        self.assertEqual(view[1, 0], 384.0 + 64)

    def test_variant_view_box_major(self) -> None:
        values = np.arange(6 * 64, dtype=np.float32)
        layout = TensorLayout(batch=1, boxes=64, features=6, channel_major=False)
        view = layout.variant_view(values, 0)
        self.assertEqual(view.shape, (6, 64))
        self.assertEqual(view[1, 0], 1.0)
        self.assertEqual(view[0, 1], 6.0)

    def test_variant_view_pads_short_buffer(self) -> None:
        values = np.ones(100, dtype=np.float32)
        layout = TensorLayout(batch=1, boxes=64, features=6, channel_major=True)
        view = layout.variant_view(values, 0)
        self.assertEqual(view.shape, (6, 64))
        self.assertEqual(float(view.sum()), 100.0)

    def test_variant_view_out_of_range(self) -> None:
        layout = TensorLayout(batch=1, boxes=64, features=6, channel_major=True)
        view = layout.variant_view(np.ones(384, dtype=np.float32), 3)
        self.assertFalse(view.any())

    def test_effective_layout_widens_batch(self) -> None:
        layout = TensorLayout(batch=1, boxes=64, features=6, channel_major=True)
        self.assertEqual(available_variants(layout, 3 * 384), 3)
        self.assertEqual(effective_layout(layout, 3 * 384).batch, 3)
        self.assertEqual(effective_layout(layout, 100).batch, 1)

    def test_effective_batch_matches_available_variants(self) -> None:
        for declared in (1, 2, 5):
            layout = TensorLayout(batch=declared, boxes=64, features=6, channel_major=True)
            for values in (384, 2 * 384, 5 * 384, 7 * 384 + 10):
                expected = max(declared, available_variants(layout, values))
                self.assertEqual(effective_layout(layout, values).batch, expected)


if __name__ == "__main__":
    unittest.main()
