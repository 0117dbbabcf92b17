"""
Intensity and depth pyramids (coarse-to-fine input of the optimizer).

Level 0 is the input frame; every further level halves both dimensions.
"""

from __future__ import annotations

import cv2
import numpy as np

from .errors import ConfigurationError, validate_and_raise


def downsample_image(img: np.ndarray, smooth: bool = False) -> np.ndarray:
    """2x downsample by 2x2 area averaging (odd trailing row/col dropped)."""
    H2, W2 = img.shape[0] // 2, img.shape[1] // 2
    if smooth:
        img = cv2.GaussianBlur(img, (5, 5), 1.0)
    img = np.ascontiguousarray(img[:2 * H2, :2 * W2])
    return cv2.resize(img, (W2, H2), interpolation=cv2.INTER_AREA)


def downsample_depth(D: np.ndarray) -> np.ndarray:
    """2x downsample by averaging valid (> 0) depths; empty blocks become 0."""
    H2, W2 = D.shape[0] // 2, D.shape[1] // 2
    blocks = D[:2 * H2, :2 * W2].reshape(H2, 2, W2, 2)
    valid = blocks > 0
    total = np.where(valid, blocks, 0.0).sum(axis=(1, 3))
    count = valid.sum(axis=(1, 3))
    return np.where(count > 0, total / np.maximum(count, 1), 0.0)


class _Pyramid:
    kind = "image"

    def __init__(self, levels: int, base: np.ndarray):
        validate_and_raise(levels > 0, f"levels must be > 0, got {levels}")
        base = np.asarray(base)
        if base.ndim != 2 or base.size == 0:
            raise ConfigurationError(f"{self.kind} must be a non-empty 2D array, got shape {base.shape}")
        self._levels = [np.ascontiguousarray(base, dtype=np.float64)]
        for lvl in range(1, levels):
            prev = self._levels[-1]
            if prev.shape[0] < 4 or prev.shape[1] < 4:
                raise ConfigurationError(
                    f"{self.kind} of shape {base.shape} is too small for {levels} pyramid levels")
            self._levels.append(np.ascontiguousarray(self._downsample(prev), dtype=np.float64))

    def _downsample(self, img: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def at(self, level: int) -> np.ndarray:
        return self._levels[level]

    def level_count(self) -> int:
        return len(self._levels)

    def __len__(self) -> int:
        return len(self._levels)

    def __getitem__(self, level: int) -> np.ndarray:
        return self._levels[level]


class ImagePyramid(_Pyramid):
    """Grayscale intensity pyramid (float, any consistent unit)."""

    def __init__(self, levels: int, image: np.ndarray, smooth: bool = False):
        self.smooth = smooth
        super().__init__(levels, image)

    def _downsample(self, img: np.ndarray) -> np.ndarray:
        return downsample_image(img, self.smooth)


class DepthPyramid(_Pyramid):
    """Metric depth pyramid, 0 = no measurement."""
    kind = "depth"

    def __init__(self, levels: int, depth: np.ndarray):
        depth = np.asarray(depth, dtype=np.float64)
        depth = np.where(np.isfinite(depth) & (depth > 0), depth, 0.0)
        super().__init__(levels, depth)

    def _downsample(self, img: np.ndarray) -> np.ndarray:
        return downsample_depth(img)
