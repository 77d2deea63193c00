from __future__ import annotations

import logging
from typing import Callable, Optional, Sequence

import cv2
import numpy as np

from .config import PillPostConfig, PipelineProfile, SplitterConfig
from .grayscale import PixelBuffer
from .postprocess import PillPostprocessor
from .splitter import PillInstanceSplitter
from .types import ModelOutputTensor, PillInferenceResult

LOGGER = logging.getLogger(__name__)


class PillCountPipeline:
    """
    Plug-and-play pipeline: variant images -> inference -> post-process -> split.

    Inference is supplied by the caller as `infer_fn(blob) -> np.ndarray`, where
    `blob` is a float32 (N, 3, S, S) RGB batch in [0, 1] (in [0, 255] with
    `scale_to_unit=False`). Callers that already hold a model output can use
    `count_tensor` directly.
    """

    def __init__(
        self,
        infer_fn: Optional[Callable[[np.ndarray], np.ndarray]] = None,
        *,
        post_cfg: PillPostConfig = PillPostConfig(),
        splitter_cfg: Optional[SplitterConfig] = None,
        enable_splitter: bool = True,
        batch_size: Optional[int] = None,
        scale_to_unit: bool = True,
    ):
        self._infer_fn = infer_fn
        self.post = PillPostprocessor(post_cfg)
        if splitter_cfg is None:
            splitter_cfg = SplitterConfig(model_side=post_cfg.model_side)
        self.splitter = PillInstanceSplitter(splitter_cfg)
        self.enable_splitter = enable_splitter
        self.batch_size = batch_size
        # False for exports that expect raw 0..255 pixel values.
        self.scale_to_unit = scale_to_unit

    @classmethod
    def from_profile(
        cls,
        profile: PipelineProfile,
        infer_fn: Optional[Callable[[np.ndarray], np.ndarray]] = None,
        *,
        batch_size: Optional[int] = None,
        scale_to_unit: bool = True,
    ) -> "PillCountPipeline":
        return cls(
            infer_fn,
            post_cfg=profile.post,
            splitter_cfg=profile.splitter,
            enable_splitter=profile.enable_splitter,
            batch_size=batch_size,
            scale_to_unit=scale_to_unit,
        )

    @property
    def model_side(self) -> int:
        return int(round(self.post.cfg.model_side))

    def resize_to_model(self, image_bgr: np.ndarray) -> np.ndarray:
        if image_bgr is None or not hasattr(image_bgr, "shape"):
            raise TypeError("image_bgr must be a NumPy array (BGR).")
        if image_bgr.ndim != 3 or image_bgr.shape[2] != 3:
            raise ValueError(f"Expected image shape (H, W, 3), got {getattr(image_bgr, 'shape', None)}")
        side = self.model_side
        if image_bgr.shape[0] == side and image_bgr.shape[1] == side:
            return image_bgr
        return cv2.resize(image_bgr, (side, side), interpolation=cv2.INTER_LINEAR)

    def preprocess(self, variant_images_bgr: Sequence[np.ndarray], batch_size: Optional[int] = None) -> np.ndarray:
        """
        Stack variants into one NCHW blob. A fixed-batch export gets the last
        variant repeated up to `batch_size`.
        """

        if not variant_images_bgr:
            raise ValueError("At least one variant image is required")

        n = len(variant_images_bgr) if batch_size is None else max(int(batch_size), 1)
        planes = []
        for index in range(n):
            source = variant_images_bgr[min(index, len(variant_images_bgr) - 1)]
            img = self.resize_to_model(source)
            # BGR -> RGB, optional normalize, HWC -> CHW
            blob = img[:, :, ::-1].astype(np.float32)
            if self.scale_to_unit:
                blob /= 255.0
            planes.append(np.transpose(blob, (2, 0, 1)))
        return np.stack(planes, axis=0)

    def count_tensor(
        self,
        tensor: ModelOutputTensor,
        expected_variants: int,
        pixel_buffer: Optional[PixelBuffer] = None,
        score_threshold: Optional[float] = None,
        iou_threshold: Optional[float] = None,
    ) -> PillInferenceResult:
        result = self.post.process(
            tensor,
            expected_variants,
            score_threshold=score_threshold,
            iou_threshold=iou_threshold,
        )
        if pixel_buffer is None or not self.enable_splitter or result.count < 2:
            return result

        refined = self.splitter.refine(result.detections, pixel_buffer)
        if len(refined) != result.count:
            LOGGER.debug("splitter count before=%d after=%d", result.count, len(refined))
        return PillInferenceResult.from_detections(refined)

    def __call__(self, variant_images_bgr: Sequence[np.ndarray]) -> PillInferenceResult:
        if self._infer_fn is None:
            raise RuntimeError("PillCountPipeline was created without an infer_fn; use count_tensor instead.")

        blob = self.preprocess(variant_images_bgr, batch_size=self.batch_size)
        preds = self._infer_fn(blob)
        tensor = ModelOutputTensor.from_array(np.asarray(preds))
        pixel_buffer = PixelBuffer.from_bgr(self.resize_to_model(variant_images_bgr[0]))
        return self.count_tensor(tensor, expected_variants=len(variant_images_bgr), pixel_buffer=pixel_buffer)
