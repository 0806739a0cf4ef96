# src/fiducial_omr/tools/preprocess.py
from __future__ import annotations

from typing import Optional

import cv2
import numpy as np

from ..errors import InvalidImageError
from ..pipeline_defaults import PreprocessSettings


def ensure_image(image: Optional[np.ndarray]) -> np.ndarray:
    if image is None:
        raise InvalidImageError("No image supplied")
    if not isinstance(image, np.ndarray) or image.ndim not in (2, 3) or image.size == 0:
        raise InvalidImageError("Image has zero area")
    if image.shape[0] == 0 or image.shape[1] == 0:
        raise InvalidImageError("Image has zero area")
    return image


def to_gray(image: np.ndarray) -> np.ndarray:
    image = ensure_image(image)
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)
    if image.ndim == 2:
        return image
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    if image.shape[2] == 1:
        return image[:, :, 0]
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def _odd(k: int) -> int:
    k = max(1, int(k))
    return k if k % 2 == 1 else k + 1


class Preprocessor:
    """
    Raster -> binary mask with marks as foreground (255).
    Every threshold is inverse so ink is always white in the mask.
    """

    def __init__(self, settings: Optional[PreprocessSettings] = None):
        self.settings = settings or PreprocessSettings()

    def normalize(self, image: np.ndarray,
                  block_size: Optional[int] = None,
                  bias: Optional[float] = None,
                  blur_ksize: Optional[int] = None) -> np.ndarray:
        s = self.settings
        gray = to_gray(image)
        k = s.blur_ksize if blur_ksize is None else blur_ksize
        if k and k > 1:
            gray = cv2.GaussianBlur(gray, (_odd(k), _odd(k)), 0)
        block = _odd(s.block_size if block_size is None else block_size)
        block = max(3, block)
        c = s.bias if bias is None else bias
        return cv2.adaptiveThreshold(gray, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
                                     cv2.THRESH_BINARY_INV, block, c)

    def normalize_deskewed(self, image: np.ndarray) -> np.ndarray:
        s = self.settings
        return self.normalize(image, s.deskewed_block_size, s.deskewed_bias)

    def binarize_identity(self, image: np.ndarray) -> np.ndarray:
        s = self.settings
        return self.normalize(image, s.identity_block_size, s.identity_bias, blur_ksize=0)

    def otsu(self, image: np.ndarray, blur_ksize: Optional[int] = None) -> np.ndarray:
        """Global inverse Otsu, used where lighting is already uniform (warped answer block)."""
        gray = to_gray(image)
        k = self.settings.answer_blur_ksize if blur_ksize is None else blur_ksize
        if k and k > 1:
            gray = cv2.GaussianBlur(gray, (_odd(k), _odd(k)), 0)
        _, mask = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY_INV | cv2.THRESH_OTSU)
        return mask
