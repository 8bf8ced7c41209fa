from __future__ import annotations

import hashlib
import json
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import pytest
import torch
import torch.nn as nn

from stylecast.errors import ShapeError
from stylecast.normalize import RAW_RANGE, UNIT_RANGE
from stylecast.session import (
    MANIFEST_ENV,
    SessionCache,
    StyleSession,
    find_manifest,
    load_manifest,
)


class _Invert(nn.Module):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return 1.0 - x


class _Identity(nn.Module):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x


class _Shrink(nn.Module):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x[:, :, :1, :]


class _Flatten(nn.Module):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x.reshape(-1)


def _save(module: nn.Module, path: Path) -> Path:
    torch.jit.script(module).save(str(path))
    return path


def _entry(model_id: str, file: str, size: int = 4, **extra: Any) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "id": model_id,
        "name": model_id.title(),
        "file": file,
        "size_mb": 0.01,
        "input": {"name": "input", "shape": [1, 3, size, size], "dtype": "float32"},
        "output": {"name": "output", "shape": [1, 3, size, size], "dtype": "float32"},
    }
    entry.update(extra)
    return entry


def _write_manifest(tmp_path: Path, *entries: Dict[str, Any]) -> Path:
    path = tmp_path / "manifest.json"
    path.write_text(json.dumps({"models": list(entries)}), encoding="utf-8")
    return path


@pytest.fixture
def models_dir(tmp_path: Path) -> Path:
    _save(_Invert(), tmp_path / "invert.pt")
    _save(_Identity(), tmp_path / "identity.pt")
    _save(_Shrink(), tmp_path / "shrink.pt")
    _save(_Flatten(), tmp_path / "flatten.pt")
    return tmp_path


@pytest.fixture
def cache(models_dir: Path) -> SessionCache:
    manifest = _write_manifest(
        models_dir,
        _entry("invert", "invert.pt"),
        _entry("identity", "identity.pt", normalization="raw"),
        _entry("shrink", "shrink.pt"),
        _entry("flatten", "flatten.pt"),
    )
    return SessionCache.from_manifest(manifest)


def test_load_manifest_resolves_relative_files(models_dir: Path):
    manifest = _write_manifest(models_dir, _entry("invert", "invert.pt", size=8))
    (spec,) = load_manifest(manifest)
    assert spec.id == "invert"
    assert spec.name == "Invert"
    assert spec.file == models_dir / "invert.pt"
    assert (spec.width, spec.height) == (8, 8)
    assert spec.normalization is UNIT_RANGE
    assert spec.hash is None


def test_load_manifest_reads_normalization(models_dir: Path):
    manifest = _write_manifest(models_dir, _entry("identity", "identity.pt", normalization="raw"))
    assert load_manifest(manifest)[0].normalization is RAW_RANGE


@pytest.mark.parametrize(
    "payload",
    [
        {"no_models": []},
        {"models": [{"id": "x"}]},
        {"models": [_entry("x", "x.pt", input={"shape": [1, 1, 4, 4]})]},
        {"models": [_entry("x", "x.pt", input={"shape": [1, 3, 0, 4]})]},
        {"models": [_entry("x", "x.pt", normalization="imagenet")]},
        {"models": [_entry("x", "x.pt", output={"shape": [1, 3, 2, 2]})]},
        {"models": [_entry("x", "x.pt"), _entry("x", "y.pt")]},
    ],
)
def test_load_manifest_rejects_bad_entries(tmp_path: Path, payload: Dict[str, Any]):
    path = tmp_path / "manifest.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    with pytest.raises(ValueError):
        load_manifest(path)


def test_load_manifest_rejects_invalid_json(tmp_path: Path):
    path = tmp_path / "manifest.json"
    path.write_text("{models: ", encoding="utf-8")
    with pytest.raises(ValueError):
        load_manifest(path)


def test_find_manifest_uses_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    manifest = _write_manifest(tmp_path)
    monkeypatch.setenv(MANIFEST_ENV, str(manifest))
    assert find_manifest() == manifest


def test_find_manifest_missing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv(MANIFEST_ENV, str(tmp_path / "nope.json"))
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("stylecast.session._repo_root", lambda: tmp_path)
    with pytest.raises(FileNotFoundError, match="nope.json"):
        find_manifest()


def test_find_manifest_falls_back_to_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    (tmp_path / "models").mkdir()
    manifest = _write_manifest(tmp_path / "models")
    monkeypatch.delenv(MANIFEST_ENV, raising=False)
    monkeypatch.setattr("stylecast.session._repo_root", lambda: tmp_path / "elsewhere")
    monkeypatch.chdir(tmp_path)
    assert find_manifest().resolve() == manifest.resolve()


def test_cache_shares_one_session(cache: SessionCache):
    first = cache.get("invert")
    assert cache.get("invert") is first
    with ThreadPoolExecutor(max_workers=4) as pool:
        sessions = list(pool.map(lambda _: cache.get("identity"), range(8)))
    assert all(s is sessions[0] for s in sessions)
    assert [m.id for m in cache.models] == ["invert", "identity", "shrink", "flatten"]


def test_cache_unknown_model(cache: SessionCache):
    with pytest.raises(KeyError):
        cache.get("mosaic")


def test_stylize_full_strength(cache: SessionCache, png_bytes, solid_pixels):
    data = png_bytes(solid_pixels(9, 5, (0, 0, 0)))
    out = cache.get("invert").stylize(data, 1.0)
    assert out == bytes([255, 255, 255, 255]) * 16


def test_stylize_zero_strength_keeps_original(cache: SessionCache, png_bytes, solid_pixels):
    data = png_bytes(solid_pixels(4, 4, (10, 20, 30)))
    out = cache.get("invert").stylize(data, 0.0)
    assert out == bytes([10, 20, 30, 255]) * 16


def test_stylize_frame(cache: SessionCache, solid_pixels):
    frame = solid_pixels(4, 4, (100, 0, 255, 255)).tobytes()
    out = cache.get("invert").stylize_frame(frame, 1.0)
    assert out == bytes([155, 255, 0, 255]) * 16


def test_raw_normalization_model_round_trips(cache: SessionCache, rng):
    frame = rng.integers(0, 256, size=(4, 4, 4), dtype=np.uint8)
    frame[:, :, 3] = 255
    session = cache.get("identity")
    assert session.spec.normalization is RAW_RANGE
    assert session.stylize_frame(frame, 1.0) == frame.tobytes()


def test_run_checks_shapes(cache: SessionCache):
    with pytest.raises(ShapeError):
        cache.get("invert").run(torch.zeros(3 * 4 * 4 - 1))
    with pytest.raises(ShapeError):
        cache.get("shrink").run(torch.zeros(3 * 4 * 4))
    with pytest.raises(ShapeError):
        cache.get("flatten").run(torch.zeros(3 * 4 * 4))


def _spec_with_hash(models_dir: Path, digest: Optional[str]):
    extra = {"hash": digest} if digest else {}
    manifest = _write_manifest(models_dir, _entry("invert", "invert.pt", **extra))
    return load_manifest(manifest)[0]


def test_load_verifies_hash(models_dir: Path):
    digest = hashlib.sha256((models_dir / "invert.pt").read_bytes()).hexdigest()
    session = StyleSession.load(_spec_with_hash(models_dir, digest.upper()))
    assert session.spec.hash == digest.upper()

    with pytest.raises(ValueError):
        StyleSession.load(_spec_with_hash(models_dir, "0" * 64))


def test_load_missing_file(models_dir: Path):
    manifest = _write_manifest(models_dir, _entry("gone", "gone.pt"))
    with pytest.raises(FileNotFoundError):
        StyleSession.load(load_manifest(manifest)[0])
