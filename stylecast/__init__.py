"""Stylecast: image <-> tensor conversion for feed-forward style transfer models.

Encoded images (or raw RGBA frames) are packed into the flat planar R,G,B float
tensor a style model consumes; the model's output is unpacked and blended back
over the original at a chosen strength.
"""

from stylecast.adapter import (
    FromEncodedBytes,
    FromRawBuffer,
    PixelBuffer,
    postprocess,
    postprocess_image,
    postprocess_video_frame,
    preprocess,
    preprocess_frame,
)
from stylecast.blend import blend_pixel, blend_pixels
from stylecast.errors import DecodeError, ShapeError, StylecastError
from stylecast.normalize import RAW_RANGE, UNIT_RANGE, Normalization
from stylecast.packing import pack, unpack

__all__ = [
    "DecodeError",
    "FromEncodedBytes",
    "FromRawBuffer",
    "Normalization",
    "PixelBuffer",
    "RAW_RANGE",
    "ShapeError",
    "StylecastError",
    "UNIT_RANGE",
    "blend_pixel",
    "blend_pixels",
    "pack",
    "postprocess",
    "postprocess_image",
    "postprocess_video_frame",
    "preprocess",
    "preprocess_frame",
    "unpack",
]
