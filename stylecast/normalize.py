from __future__ import annotations

import math
from dataclasses import dataclass

import torch


@dataclass(frozen=True)
class Normalization:
    """A matched forward/inverse pair between 8-bit samples and model floats.

    `scale` is the model value that corresponds to a full-intensity sample:
    255.0 for models trained on `[0, 1]` inputs, 1.0 for models that take and
    emit raw `[0, 255]` floats. Both directions always use the same scale.
    """

    name: str
    scale: float

    def forward(self, samples: torch.Tensor) -> torch.Tensor:
        """uint8-range samples -> float32 model values."""
        return torch.as_tensor(samples).to(torch.float32) / self.scale

    def inverse(self, values: torch.Tensor) -> torch.Tensor:
        """Model values -> uint8 samples, clamped and rounded; NaN becomes 0."""
        v = torch.as_tensor(values).to(torch.float32) * self.scale
        v = torch.nan_to_num(v, nan=0.0, posinf=255.0, neginf=0.0)
        return v.clamp_(0.0, 255.0).round_().to(torch.uint8)


UNIT_RANGE = Normalization(name="unit", scale=255.0)
RAW_RANGE = Normalization(name="raw", scale=1.0)

_BY_NAME = {n.name: n for n in (UNIT_RANGE, RAW_RANGE)}


def get_normalization(name: str) -> Normalization:
    try:
        return _BY_NAME[name.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown normalization {name!r} (expected one of: {', '.join(sorted(_BY_NAME))})"
        ) from None


def normalize_sample(sample: int, norm: Normalization = UNIT_RANGE) -> float:
    return float(sample) / norm.scale


def denormalize_value(value: float, norm: Normalization = UNIT_RANGE) -> int:
    v = float(value) * norm.scale
    if math.isnan(v):
        return 0
    return int(round(min(max(v, 0.0), 255.0)))
