from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Union

import numpy as np
import torch
from PIL import Image

from stylecast.blend import blend_pixels
from stylecast.errors import DecodeError, ShapeError
from stylecast.normalize import UNIT_RANGE, Normalization
from stylecast.packing import TensorLike, expected_length, pack, unpack

logger = logging.getLogger(__name__)

# Triangle filter; Pillow widens its support when downscaling.
RESIZE_FILTER = Image.BILINEAR

RawBytes = Union[bytes, bytearray, memoryview]


@dataclass(frozen=True, eq=False)
class PixelBuffer:
    """A width x height RGBA grid backed by an (H, W, 4) uint8 array."""

    width: int
    height: int
    data: np.ndarray

    @classmethod
    def from_raw(cls, raw: Union[RawBytes, np.ndarray], width: int, height: int) -> "PixelBuffer":
        n = expected_length(width, height, channels=4)
        if isinstance(raw, (bytes, bytearray, memoryview)):
            arr = np.frombuffer(raw, dtype=np.uint8)
        else:
            arr = np.asarray(raw, dtype=np.uint8).reshape(-1)
        if arr.size != n:
            raise ShapeError(f"Raw RGBA buffer has {arr.size} bytes, expected 4*{width}*{height}={n}")
        return cls(int(width), int(height), arr.reshape(int(height), int(width), 4).copy())

    @classmethod
    def from_image(cls, img: Image.Image) -> "PixelBuffer":
        """Wrap an image's RGB samples; alpha is set to 255."""
        arr = np.empty((img.height, img.width, 4), dtype=np.uint8)
        arr[:, :, :3] = np.asarray(_to_rgb(img), dtype=np.uint8)
        arr[:, :, 3] = 255
        return cls(img.width, img.height, arr)

    @property
    def rgb(self) -> np.ndarray:
        return self.data[:, :, :3]

    def to_bytes(self) -> bytes:
        return self.data.tobytes()

    def to_image(self) -> Image.Image:
        return Image.fromarray(self.data)


@dataclass(frozen=True)
class FromEncodedBytes:
    """Original image given as PNG/JPEG/... bytes; decoded and resized on use."""

    data: RawBytes


@dataclass(frozen=True, eq=False)
class FromRawBuffer:
    """Original frame given as raw RGBA bytes already at the target size."""

    data: Union[RawBytes, np.ndarray]


OriginalSource = Union[FromEncodedBytes, FromRawBuffer]


_WIDE_GRAY_MODES = {"I", "I;16", "I;16B", "I;16L", "I;16N"}


def _to_rgb(img: Image.Image) -> Image.Image:
    # Pillow clips 16-bit gray to 255 on convert; keep the high byte instead.
    if img.mode in _WIDE_GRAY_MODES:
        arr = np.asarray(img).astype(np.int64) >> 8
        img = Image.fromarray(np.clip(arr, 0, 255).astype(np.uint8))
    return img.convert("RGB")


def decode_image(data: RawBytes) -> Image.Image:
    """Decode encoded image bytes into an RGB PIL image.

    The container format is detected from the bytes themselves. Alpha is
    discarded here, so color channels are never weighted by it.
    """
    try:
        img = Image.open(io.BytesIO(bytes(data)))
        img.load()
        return _to_rgb(img)
    except Exception as e:
        raise DecodeError(f"Could not decode image from {len(data)} bytes: {e}") from e


def load_resized(data: RawBytes, width: int, height: int) -> PixelBuffer:
    """Decode `data` and resize it to exactly width x height (aspect ratio is not kept)."""
    expected_length(width, height)
    img = decode_image(data)
    resized = img.resize((int(width), int(height)), resample=RESIZE_FILTER)
    return PixelBuffer.from_image(resized)


def resolve_original(source: Union[OriginalSource, RawBytes], width: int, height: int) -> PixelBuffer:
    if isinstance(source, FromRawBuffer):
        return PixelBuffer.from_raw(source.data, width, height)
    if isinstance(source, FromEncodedBytes):
        return load_resized(source.data, width, height)
    if isinstance(source, (bytes, bytearray, memoryview)):
        return load_resized(source, width, height)
    raise TypeError(f"Unsupported original source: {type(source).__name__}")


def preprocess(
    encoded_bytes: RawBytes,
    target_width: int,
    target_height: int,
    norm: Normalization = UNIT_RANGE,
) -> torch.Tensor:
    """Encoded image -> flat planar float32 tensor of length 3*W*H."""
    pixels = load_resized(encoded_bytes, target_width, target_height)
    tensor = pack(pixels.data, pixels.width, pixels.height, norm)
    logger.debug(
        "preprocess: %d bytes -> %dx%d tensor (%s)", len(encoded_bytes), pixels.width, pixels.height, norm.name
    )
    return tensor


def preprocess_frame(
    raw_rgba: Union[RawBytes, np.ndarray],
    width: int,
    height: int,
    norm: Normalization = UNIT_RANGE,
) -> torch.Tensor:
    """Raw RGBA frame (already width x height) -> flat planar float32 tensor."""
    pixels = PixelBuffer.from_raw(raw_rgba, width, height)
    return pack(pixels.data, pixels.width, pixels.height, norm)


def postprocess(
    output_tensor: TensorLike,
    original: Union[OriginalSource, RawBytes],
    width: int,
    height: int,
    blend_weight: float,
    norm: Normalization = UNIT_RANGE,
) -> PixelBuffer:
    """Unpack a model output and blend it over the original at `blend_weight`.

    `original` is either a `FromEncodedBytes` (decoded and resized like in
    `preprocess`) or a `FromRawBuffer` (used as-is, must be width x height).
    Plain bytes are treated as encoded bytes.
    """
    stylized = unpack(output_tensor, width, height, norm)
    base = resolve_original(original, width, height)
    blended = blend_pixels(base.data, stylized, blend_weight)
    logger.debug("postprocess: %dx%d weight=%s (%s)", width, height, blend_weight, type(original).__name__)
    return PixelBuffer(int(width), int(height), blended)


def postprocess_image(
    output_tensor: TensorLike,
    original_image_bytes: RawBytes,
    width: int,
    height: int,
    strength: float,
    norm: Normalization = UNIT_RANGE,
) -> bytes:
    return postprocess(output_tensor, FromEncodedBytes(original_image_bytes), width, height, strength, norm).to_bytes()


def postprocess_video_frame(
    output_tensor: TensorLike,
    original_frame_pixels: Union[RawBytes, np.ndarray],
    width: int,
    height: int,
    strength: float,
    norm: Normalization = UNIT_RANGE,
) -> bytes:
    return postprocess(output_tensor, FromRawBuffer(original_frame_pixels), width, height, strength, norm).to_bytes()
