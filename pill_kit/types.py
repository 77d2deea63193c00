from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np


Point = Tuple[float, float]


@dataclass(frozen=True)
class ModelOutputTensor:
    """
    Raw model output: flat float32 values plus the shape reported by the runtime.

    The shape may carry degenerate dims or disagree with the buffer length;
    layout inference decides how to read it.
    """

    values: np.ndarray
    shape: Tuple[int, ...]

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "ModelOutputTensor":
        a = np.asarray(arr, dtype=np.float32)
        return cls(values=a.reshape(-1), shape=tuple(int(d) for d in a.shape))


@dataclass(frozen=True)
class Detection:
    """
    One decoded candidate box of a single variant, in model pixel space.
    """

    x1: float
    y1: float
    x2: float
    y2: float
    score: float

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    @property
    def cx(self) -> float:
        return self.x1 + self.width * 0.5

    @property
    def cy(self) -> float:
        return self.y1 + self.height * 0.5

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def mean_side(self) -> float:
        return (self.width + self.height) * 0.5

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        return self.x1, self.y1, self.x2, self.y2


@dataclass(frozen=True)
class ConsensusCluster:
    center_x: float
    center_y: float
    avg_score: float
    max_score: float
    mean_side: float
    point_count: int
    # Number of distinct variants that contributed to this location.
    variant_hits: int


@dataclass(frozen=True)
class PillDetection:
    point: Point  # normalized 0..1
    mean_side: float  # model-space pixels
    avg_score: float
    variant_hits: int


@dataclass(frozen=True)
class PillInferenceResult:
    count: int
    points: Tuple[Point, ...]
    detections: Tuple[PillDetection, ...] = ()

    @classmethod
    def empty(cls) -> "PillInferenceResult":
        return cls(count=0, points=(), detections=())

    @classmethod
    def from_detections(cls, detections) -> "PillInferenceResult":
        dets = tuple(detections)
        return cls(count=len(dets), points=tuple(d.point for d in dets), detections=dets)
