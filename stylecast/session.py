from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import torch

from stylecast.adapter import RawBytes, postprocess_image, postprocess_video_frame, preprocess, preprocess_frame
from stylecast.errors import ShapeError
from stylecast.normalize import Normalization, get_normalization
from stylecast.packing import expected_length

logger = logging.getLogger(__name__)

MANIFEST_ENV = "STYLECAST_MANIFEST"


@dataclass(frozen=True)
class ModelSpec:
    """One entry of `models/manifest.json`."""

    id: str
    name: str
    file: Path
    input_shape: Tuple[int, ...]
    output_shape: Tuple[int, ...]
    normalization: Normalization
    hash: Optional[str] = None

    @property
    def height(self) -> int:
        return int(self.input_shape[2])

    @property
    def width(self) -> int:
        return int(self.input_shape[3])

    @classmethod
    def from_dict(cls, entry: Dict[str, Any], base_dir: Path) -> "ModelSpec":
        try:
            model_id = str(entry["id"])
            in_shape = tuple(int(v) for v in entry["input"]["shape"])
            out_shape = tuple(int(v) for v in entry.get("output", {}).get("shape", in_shape))
            file = Path(entry["file"]).expanduser()
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Invalid manifest entry {entry!r}: {e}") from e

        if len(in_shape) != 4 or in_shape[0] != 1 or in_shape[1] != 3:
            raise ValueError(f"Model {model_id!r}: input shape must be [1, 3, H, W], got {list(in_shape)}")
        expected_length(in_shape[3], in_shape[2])
        if out_shape != in_shape:
            raise ValueError(
                f"Model {model_id!r}: output shape {list(out_shape)} must equal input shape {list(in_shape)}"
            )

        if not file.is_absolute():
            file = base_dir / file
        return cls(
            id=model_id,
            name=str(entry.get("name", model_id)),
            file=file,
            input_shape=in_shape,
            output_shape=out_shape,
            normalization=get_normalization(str(entry.get("normalization", "unit"))),
            hash=entry.get("hash") or None,
        )


def _repo_root() -> Path:
    return Path(__file__).resolve().parent.parent


def find_manifest() -> Path:
    """Locate the model manifest.

    `$STYLECAST_MANIFEST` wins when it points at an existing file; otherwise
    `models/manifest.json` is looked up under the project checkout, then under
    the working directory.
    """
    searched: List[Path] = []
    override = os.environ.get(MANIFEST_ENV)
    if override:
        searched.append(Path(override).expanduser())
    searched += [base / "models" / "manifest.json" for base in (_repo_root(), Path.cwd())]
    found = next((p for p in searched if p.is_file()), None)
    if found is None:
        tried = ", ".join(str(p) for p in searched)
        raise FileNotFoundError(f"No model manifest found (tried: {tried})")
    return found


def load_manifest(path: Union[str, Path]) -> List[ModelSpec]:
    manifest_path = Path(path)
    with manifest_path.open("r", encoding="utf-8") as f:
        try:
            raw = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Manifest {manifest_path} is not valid JSON: {e}") from e

    entries = raw.get("models") if isinstance(raw, dict) else None
    if not isinstance(entries, list):
        raise ValueError(f"Manifest {manifest_path} must contain a `models` list")

    specs = [ModelSpec.from_dict(entry, manifest_path.parent) for entry in entries]
    ids = [s.id for s in specs]
    if len(set(ids)) != len(ids):
        raise ValueError(f"Manifest {manifest_path} has duplicate model ids")
    return specs


def _sha256(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()


class StyleSession:
    """A loaded TorchScript style model plus the conversions around it."""

    def __init__(self, spec: ModelSpec, module: torch.nn.Module, device: torch.device) -> None:
        self.spec = spec
        self.module = module
        self.device = device

    @classmethod
    def load(cls, spec: ModelSpec, device: str = "cpu") -> "StyleSession":
        if not spec.file.exists():
            raise FileNotFoundError(f"Missing model file for {spec.id!r}: {spec.file}")
        if spec.hash:
            digest = _sha256(spec.file)
            if digest.lower() != spec.hash.lower():
                raise ValueError(f"Model {spec.id!r}: sha256 mismatch (manifest {spec.hash}, file {digest})")
        else:
            logger.warning("Model %r has no hash in the manifest; skipping integrity check", spec.id)

        torch_device = torch.device(device)
        module = torch.jit.load(str(spec.file), map_location=torch_device).eval()
        for p in module.parameters():
            p.requires_grad_(False)
        logger.info("Loaded model %r (%s) from %s on %s", spec.id, spec.name, spec.file, torch_device)
        return cls(spec, module, torch_device)

    def run(self, tensor: torch.Tensor) -> torch.Tensor:
        """Run the model on one flat planar tensor and return a flat output tensor."""
        w, h = self.spec.width, self.spec.height
        n = expected_length(w, h)
        if tensor.numel() != n:
            raise ShapeError(f"Input tensor has {tensor.numel()} values, model {self.spec.id!r} expects {n}")
        x = tensor.reshape(1, 3, h, w).to(device=self.device, dtype=torch.float32)
        with torch.no_grad():
            y = self.module(x)
        if tuple(y.shape) != self.spec.output_shape:
            raise ShapeError(
                f"Model {self.spec.id!r} produced shape {list(y.shape)}, expected {list(self.spec.output_shape)}"
            )
        return y.detach().cpu().reshape(-1).to(torch.float32)

    def stylize(self, image_bytes: RawBytes, strength: float) -> bytes:
        """Encoded image -> RGBA bytes at the model's resolution."""
        w, h, norm = self.spec.width, self.spec.height, self.spec.normalization
        out = self.run(preprocess(image_bytes, w, h, norm))
        return postprocess_image(out, image_bytes, w, h, strength, norm)

    def stylize_frame(self, frame_rgba: Union[RawBytes, np.ndarray], strength: float) -> bytes:
        """Raw RGBA frame at the model's resolution -> RGBA bytes."""
        w, h, norm = self.spec.width, self.spec.height, self.spec.normalization
        out = self.run(preprocess_frame(frame_rgba, w, h, norm))
        return postprocess_video_frame(out, frame_rgba, w, h, strength, norm)


class SessionCache:
    """Loads each manifest model at most once and shares the handle."""

    def __init__(self, models: List[ModelSpec], device: str = "cpu") -> None:
        self._specs: Dict[str, ModelSpec] = {m.id: m for m in models}
        self._sessions: Dict[str, StyleSession] = {}
        self._lock = threading.Lock()
        self.device = device

    @classmethod
    def from_manifest(cls, path: Optional[Union[str, Path]] = None, device: str = "cpu") -> "SessionCache":
        return cls(load_manifest(path if path is not None else find_manifest()), device=device)

    @property
    def models(self) -> List[ModelSpec]:
        return list(self._specs.values())

    def get(self, model_id: str) -> StyleSession:
        spec = self._specs.get(model_id)
        if spec is None:
            raise KeyError(f"Model {model_id!r} not found")
        with self._lock:
            session = self._sessions.get(model_id)
            if session is None:
                session = StyleSession.load(spec, device=self.device)
                self._sessions[model_id] = session
            return session
