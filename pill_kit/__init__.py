"""
Post-processing for counting small, densely packed pills from a YOLO-style
detector run over several augmented variants of the same frame.

Works on NumPy arrays from any runtime; OpenCV is used for morphology,
labeling and drawing.
"""

from .types import ConsensusCluster, Detection, ModelOutputTensor, PillDetection, PillInferenceResult
from .config import ConsensusConfig, PillPostConfig, PipelineProfile, SplitterConfig, load_pipeline_profile
from .layout import TensorLayout, infer_layout
from .nms import NMSConfig, deduplicate_by_center, nms
from .consensus import merge_by_consensus, select_reliable_variants
from .postprocess import PillPostprocessor
from .grayscale import GrayscaleImage, PixelBuffer
from .splitter import PillInstanceSplitter
from .mapping import PreparedFrame
from .runtime import PillCountPipeline
from .visualize import draw_points

__all__ = [
    "ConsensusCluster",
    "Detection",
    "ModelOutputTensor",
    "PillDetection",
    "PillInferenceResult",
    "ConsensusConfig",
    "PillPostConfig",
    "PipelineProfile",
    "SplitterConfig",
    "load_pipeline_profile",
    "TensorLayout",
    "infer_layout",
    "NMSConfig",
    "deduplicate_by_center",
    "nms",
    "merge_by_consensus",
    "select_reliable_variants",
    "PillPostprocessor",
    "GrayscaleImage",
    "PixelBuffer",
    "PillInstanceSplitter",
    "PreparedFrame",
    "PillCountPipeline",
    "draw_points",
]
