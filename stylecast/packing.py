from __future__ import annotations

from typing import Sequence, Union

import numpy as np
import torch

from stylecast.errors import ShapeError
from stylecast.normalize import UNIT_RANGE, Normalization

TensorLike = Union[torch.Tensor, np.ndarray, Sequence[float]]


def expected_length(width: int, height: int, channels: int = 3) -> int:
    """Number of values a `width`x`height` buffer with `channels` planes must hold."""
    width, height = int(width), int(height)
    if width <= 0 or height <= 0:
        raise ShapeError(f"Width and height must be > 0 (got {width}x{height})")
    return channels * width * height


def pack(
    pixels: np.ndarray,
    width: int,
    height: int,
    norm: Normalization = UNIT_RANGE,
) -> torch.Tensor:
    """Pack an (H, W, 3|4) uint8 pixel grid into a flat planar R,G,B tensor.

    The value for pixel (x, y) lands at offset `y*W + x` inside each plane.
    Alpha, if present, is dropped.
    """
    expected_length(width, height)
    arr = np.asarray(pixels)
    if arr.ndim != 3 or arr.shape[:2] != (height, width) or arr.shape[2] not in (3, 4):
        raise ShapeError(f"Expected pixels of shape ({height}, {width}, 3|4), got {arr.shape}")

    rgb = np.array(arr[:, :, :3], dtype=np.uint8)
    t = norm.forward(torch.from_numpy(rgb))
    return t.permute(2, 0, 1).contiguous().reshape(-1)


def unpack(
    tensor: TensorLike,
    width: int,
    height: int,
    norm: Normalization = UNIT_RANGE,
) -> np.ndarray:
    """Unpack a planar R,G,B tensor into an (H, W, 4) uint8 grid, alpha 255.

    Any batch/channel shape is accepted as long as the total number of values
    is exactly `3*width*height`.
    """
    n = expected_length(width, height)
    if isinstance(tensor, torch.Tensor):
        t = tensor.detach().cpu().reshape(-1)
    else:
        t = torch.from_numpy(np.array(tensor, dtype=np.float32).reshape(-1))
    if t.numel() != n:
        raise ShapeError(f"Tensor has {t.numel()} values, expected 3*{width}*{height}={n}")

    rgb = norm.inverse(t.view(3, height, width)).permute(1, 2, 0).numpy()
    out = np.empty((height, width, 4), dtype=np.uint8)
    out[:, :, :3] = rgb
    out[:, :, 3] = 255
    return out
