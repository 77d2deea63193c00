import json
import tempfile
import unittest
from pathlib import Path

from pill_kit.config import (
    ConsensusConfig,
    PillPostConfig,
    PipelineProfile,
    SplitterConfig,
    load_pipeline_profile,
)


class TestConfigValidation(unittest.TestCase):
    def test_defaults_valid(self) -> None:
        profile = PipelineProfile()
        self.assertEqual(profile.post.model_side, 640.0)
        self.assertEqual(profile.splitter.connectivity, 4)
        self.assertIsInstance(profile.post.consensus, ConsensusConfig)

    def test_invalid_values(self) -> None:
        with self.assertRaises(ValueError):
            PillPostConfig(score_threshold=1.5)
        with self.assertRaises(ValueError):
            PillPostConfig(model_side=0)
        with self.assertRaises(ValueError):
            SplitterConfig(connectivity=6)
        with self.assertRaises(ValueError):
            ConsensusConfig(cluster_radius_min=30.0, cluster_radius_max=20.0)
        with self.assertRaises(ValueError):
            ConsensusConfig(stripe_band_ratio=0.5, stripe_lower_band_ratio=0.3)

    def test_model_side_mismatch(self) -> None:
        with self.assertRaises(ValueError):
            PipelineProfile(post=PillPostConfig(model_side=512), splitter=SplitterConfig(model_side=640))


class TestLoadPipelineProfile(unittest.TestCase):
    def _write_profile(self, payload) -> Path:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        path = Path(tmpdir.name) / "profile.json"
        path.write_text(json.dumps(payload), encoding="utf-8")
        return path

    def test_load_overrides(self) -> None:
        path = self._write_profile(
            {
                "schema_version": 1,
                "post": {"score_threshold": 0.3, "max_per_variant": 120.0},
                "consensus": {"stripe_keep_hits": 5},
                "splitter": {"connectivity": 8},
                "enable_splitter": False,
                "notes": "tray B",
            }
        )
        profile = load_pipeline_profile(path)
        self.assertEqual(profile.post.score_threshold, 0.3)
        self.assertEqual(profile.post.max_per_variant, 120)
        self.assertIsInstance(profile.post.max_per_variant, int)
        self.assertEqual(profile.post.consensus.stripe_keep_hits, 5)
        self.assertEqual(profile.splitter.connectivity, 8)
        self.assertFalse(profile.enable_splitter)

    def test_empty_profile_uses_defaults(self) -> None:
        profile = load_pipeline_profile(self._write_profile({}))
        self.assertEqual(profile, PipelineProfile())

    def test_splitter_follows_post_model_side(self) -> None:
        profile = load_pipeline_profile(self._write_profile({"post": {"model_side": 512}}))
        self.assertEqual(profile.splitter.model_side, 512.0)

    def test_missing_file(self) -> None:
        with self.assertRaises(FileNotFoundError):
            load_pipeline_profile(Path(tempfile.gettempdir()) / "does-not-exist-pill-profile.json")

    def test_invalid_json(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        path = Path(tmpdir.name) / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        with self.assertRaises(ValueError):
            load_pipeline_profile(path)

    def test_unknown_keys_rejected(self) -> None:
        with self.assertRaises(ValueError):
            load_pipeline_profile(self._write_profile({"extra": 1}))
        with self.assertRaises(ValueError):
            load_pipeline_profile(self._write_profile({"post": {"conf": 0.5}}))
        with self.assertRaises(ValueError):
            load_pipeline_profile(self._write_profile({"post": {"consensus": {}}}))

    def test_type_errors(self) -> None:
        with self.assertRaises(ValueError):
            load_pipeline_profile(self._write_profile({"post": {"max_per_variant": True}}))
        with self.assertRaises(ValueError):
            load_pipeline_profile(self._write_profile({"post": {"max_per_variant": 1.5}}))
        with self.assertRaises(ValueError):
            load_pipeline_profile(self._write_profile({"post": {"score_threshold": "high"}}))
        with self.assertRaises(ValueError):
            load_pipeline_profile(self._write_profile({"enable_splitter": "yes"}))
        with self.assertRaises(ValueError):
            load_pipeline_profile(self._write_profile({"schema_version": 2}))


if __name__ == "__main__":
    unittest.main()
