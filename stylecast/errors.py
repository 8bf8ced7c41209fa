from __future__ import annotations


class StylecastError(Exception):
    """Base class for conversion failures raised by stylecast."""


class DecodeError(StylecastError):
    """The encoded bytes could not be parsed as a supported raster image."""


class ShapeError(StylecastError, ValueError):
    """A buffer length disagrees with its width/height/channel arithmetic."""
