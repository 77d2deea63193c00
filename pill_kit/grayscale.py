from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

import cv2
import numpy as np


Buffer = Union[bytes, bytearray, memoryview, np.ndarray]


@dataclass(frozen=True)
class PixelBuffer:
    """
    Read-only view over a 4-byte-per-pixel frame (BGRA byte order).

    Rows may be padded: `bytes_per_row` can exceed `width * 4`.
    """

    width: int
    height: int
    bytes_per_row: int
    data: Buffer
    pixel_format: str = "BGRA"

    @classmethod
    def from_bgr(cls, image_bgr: np.ndarray) -> "PixelBuffer":
        """Wrap an OpenCV BGR (H, W, 3) or BGRA (H, W, 4) uint8 image."""
        if image_bgr is None or not hasattr(image_bgr, "shape"):
            raise TypeError("image_bgr must be a NumPy array.")
        if image_bgr.ndim != 3 or image_bgr.shape[2] not in (3, 4):
            raise ValueError(f"Expected image shape (H, W, 3|4), got {getattr(image_bgr, 'shape', None)}")

        if image_bgr.shape[2] == 3:
            bgra = cv2.cvtColor(image_bgr, cv2.COLOR_BGR2BGRA)
        else:
            bgra = image_bgr
        bgra = np.ascontiguousarray(bgra, dtype=np.uint8)
        h, w = bgra.shape[:2]
        return cls(width=w, height=h, bytes_per_row=w * 4, data=bgra.reshape(-1))


@dataclass(frozen=True)
class IntRect:
    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class GrayscaleImage:
    """
    Single-channel 8-bit intensities, row-major (height, width).
    """

    pixels: np.ndarray

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @classmethod
    def from_pixel_buffer(cls, buffer: PixelBuffer) -> Optional["GrayscaleImage"]:
        """
        Convert a BGRA buffer with integer luma weights (77R + 150G + 29B) >> 8.

        Returns None for other pixel formats or a buffer too short for its
        declared geometry.
        """

        if buffer.pixel_format.upper() != "BGRA":
            return None
        if buffer.width <= 0 or buffer.height <= 0 or buffer.bytes_per_row < buffer.width * 4:
            return None

        raw = np.frombuffer(buffer.data, dtype=np.uint8) if not isinstance(buffer.data, np.ndarray) else buffer.data
        raw = raw.reshape(-1).astype(np.uint8, copy=False)
        needed = (buffer.height - 1) * buffer.bytes_per_row + buffer.width * 4
        if raw.size < needed:
            return None

        padded_len = buffer.height * buffer.bytes_per_row
        if raw.size < padded_len:
            raw = np.concatenate([raw, np.zeros(padded_len - raw.size, dtype=np.uint8)])
        rows = raw[:padded_len].reshape(buffer.height, buffer.bytes_per_row)
        bgra = rows[:, : buffer.width * 4].reshape(buffer.height, buffer.width, 4).astype(np.int32)

        b = bgra[:, :, 0]
        g = bgra[:, :, 1]
        r = bgra[:, :, 2]
        gray = (77 * r + 150 * g + 29 * b) >> 8
        return cls(pixels=np.clip(gray, 0, 255).astype(np.uint8))

    def crop(self, rect: IntRect) -> "GrayscaleImage":
        patch = self.pixels[rect.y : rect.y + rect.height, rect.x : rect.x + rect.width]
        return GrayscaleImage(pixels=np.ascontiguousarray(patch))
