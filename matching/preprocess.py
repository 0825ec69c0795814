from __future__ import annotations
"""
Image preparation for feature matching:
- Validate input arrays (empty / zero-sized -> InvalidImage)
- Intensity conversion (BGR/BGRA -> gray, non-u8 -> u8)
- Canonical resize for query frames
- Optional CLAHE contrast equalization
"""

from typing import Optional, Tuple

import cv2
import numpy as np

from common.errors import InvalidImage


def validate_image(img: np.ndarray, name: str = "image") -> np.ndarray:
    """
    Check that `img` is a non-empty (H,W), (H,W,1), (H,W,3) or (H,W,4) array
    of real or boolean pixels.

    None / non-arrays are programming errors (TypeError); empty, oddly
    shaped or non-numeric arrays are InvalidImage.
    """
    if img is None:
        raise TypeError(f"{name} must not be None")
    if not isinstance(img, np.ndarray):
        raise TypeError(f"{name} must be a numpy ndarray")
    if img.ndim not in (2, 3):
        raise InvalidImage(f"{name} must be 2D (gray) or 3D (color), got ndim={img.ndim}")
    if img.shape[0] == 0 or img.shape[1] == 0:
        raise InvalidImage(f"{name} has zero width or height {img.shape[:2]}")
    if img.ndim == 3 and img.shape[2] not in (1, 3, 4):
        raise InvalidImage(f"{name} has unsupported channel count {img.shape[2]}")
    if not (img.dtype == np.bool_ or np.issubdtype(img.dtype, np.integer) or np.issubdtype(img.dtype, np.floating)):
        raise InvalidImage(f"{name} has unsupported pixel type {img.dtype}")
    return img


def to_u8(img: np.ndarray) -> np.ndarray:
    """uint8 pixels: bool -> {0, 255}, everything else clipped to [0, 255]."""
    if img.dtype == np.uint8:
        return img
    if img.dtype == np.bool_:
        return img.astype(np.uint8) * 255
    return np.clip(np.nan_to_num(img), 0, 255).astype(np.uint8)


def to_gray_u8(img: np.ndarray) -> np.ndarray:
    """Single-channel uint8 view of `img`; gray u8 input is returned unchanged."""
    img = to_u8(validate_image(img))
    if img.ndim == 2:
        return img
    if img.shape[2] == 1:
        return img[:, :, 0]
    if img.shape[2] == 4:
        return cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)


def clahe(gray_u8: np.ndarray, clip_limit: float = 3.0, tile_grid: Tuple[int, int] = (8, 8)) -> np.ndarray:
    cl = cv2.createCLAHE(clipLimit=float(clip_limit), tileGridSize=tile_grid)
    return cl.apply(gray_u8)


# pixel types cv2.resize accepts as-is
_RESIZABLE = (np.dtype(np.uint8), np.dtype(np.uint16), np.dtype(np.float32), np.dtype(np.float64))


def resize_to(img: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
    """
    Resize to exactly (W, H). INTER_AREA when shrinking, INTER_LINEAR when
    enlarging; returns the input untouched when it already has that size.
    """
    validate_image(img)
    w, h = int(size[0]), int(size[1])
    H, W = img.shape[:2]
    if (W, H) == (w, h):
        return img
    if img.dtype not in _RESIZABLE:
        img = to_u8(img)
    interp = cv2.INTER_AREA if (w * h) < (W * H) else cv2.INTER_LINEAR
    return cv2.resize(img, (w, h), interpolation=interp)


def prepare_for_detection(img: np.ndarray, *, clahe_clip: Optional[float] = None) -> np.ndarray:
    """Gray u8 image ready for a detector, optionally contrast-equalized."""
    gray = to_gray_u8(img)
    if clahe_clip and clahe_clip > 0:
        gray = clahe(gray, clip_limit=float(clahe_clip), tile_grid=(8, 8))
    return gray
