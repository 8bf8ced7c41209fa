from __future__ import annotations

import io
from typing import Callable

import numpy as np
import pytest
from PIL import Image


def _encode(arr: np.ndarray, fmt: str) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(np.asarray(arr, dtype=np.uint8)).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def png_bytes() -> Callable[[np.ndarray], bytes]:
    """Encode an (H, W, 3|4) uint8 array as PNG."""
    return lambda arr: _encode(arr, "PNG")


@pytest.fixture
def jpeg_bytes() -> Callable[[np.ndarray], bytes]:
    """Encode an (H, W, 3) uint8 array as JPEG."""
    return lambda arr: _encode(arr, "JPEG")


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


def solid(width: int, height: int, rgba) -> np.ndarray:
    arr = np.empty((height, width, len(rgba)), dtype=np.uint8)
    arr[:, :] = rgba
    return arr


@pytest.fixture
def solid_pixels() -> Callable[..., np.ndarray]:
    return solid
