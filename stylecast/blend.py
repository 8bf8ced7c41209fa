from __future__ import annotations

import math
from typing import Sequence, Tuple, Union

import numpy as np

from stylecast.errors import ShapeError

PixelLike = Union[np.ndarray, Sequence[int]]


def clamp_weight(weight: float) -> float:
    """Restrict a strength value to [0, 1]. NaN maps to 0 (pure original)."""
    w = float(weight)
    if math.isnan(w):
        return 0.0
    return min(max(w, 0.0), 1.0)


def blend_pixels(original: PixelLike, stylized: PixelLike, weight: float) -> np.ndarray:
    """Linearly mix two RGB(A) pixel arrays of matching shape.

    Each color channel becomes `original*(1-weight) + stylized*weight`,
    rounded and saturated to [0, 255]. Alpha is always 255 in the result.
    Weights outside [0, 1] extrapolate and saturate instead of wrapping.
    """
    o = np.asarray(original)
    s = np.asarray(stylized)
    if (
        o.ndim == 0
        or o.shape[:-1] != s.shape[:-1]
        or o.shape[-1] not in (3, 4)
        or s.shape[-1] not in (3, 4)
    ):
        raise ShapeError(f"Cannot blend pixel arrays of shape {o.shape} and {s.shape}")

    with np.errstate(invalid="ignore", over="ignore"):
        w = np.float32(weight)
        mixed = o[..., :3].astype(np.float32) * (np.float32(1.0) - w) + s[..., :3].astype(np.float32) * w
    mixed = np.nan_to_num(mixed, nan=0.0, posinf=255.0, neginf=0.0)

    out = np.empty(o.shape[:-1] + (4,), dtype=np.uint8)
    out[..., :3] = np.clip(np.rint(mixed), 0.0, 255.0).astype(np.uint8)
    out[..., 3] = 255
    return out


def blend_pixel(
    original: PixelLike, stylized: PixelLike, weight: float
) -> Tuple[int, int, int, int]:
    r, g, b, a = (int(v) for v in blend_pixels(original, stylized, weight))
    return r, g, b, a
