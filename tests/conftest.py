"""Shared fixtures: real images built with Pillow and size-controlled fakes."""

from __future__ import annotations

import random
from pathlib import Path

import pytest
from PIL import Image

from webpcrunch import DecodedImage, DecodeError, EncodingConfig


def make_image(path: Path, size: tuple[int, int] = (48, 32), fmt: str | None = None,
               mode: str = "RGB", seed: int = 0) -> Path:
    """Write a small noisy image so encoders have something to compress."""
    rng = random.Random(seed)
    img = Image.new(mode, size)
    channels = len(img.getbands())
    img.putdata([
        tuple(rng.randrange(256) for _ in range(channels)) if channels > 1 else rng.randrange(256)
        for _ in range(size[0] * size[1])
    ])
    path.parent.mkdir(parents=True, exist_ok=True)
    img.save(path, fmt)
    return path


def write_blob(path: Path, size: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\x01" * size)
    return path


def path_decoder(path: Path) -> DecodedImage:
    """Stand-in decoder that hands the path through as the "pixels"."""
    if path.read_bytes().startswith(b"CORRUPT"):
        raise DecodeError("not an image")
    return DecodedImage(pixels=path)


class RatioEncoder:
    """Encodes to ratio * source size bytes, making the policy outcome predictable."""

    def __init__(self, ratio: float):
        self.ratio = ratio
        self.calls = 0

    def encode(self, image: DecodedImage, config: EncodingConfig) -> bytes:
        self.calls += 1
        return b"\x00" * int(image.pixels.stat().st_size * self.ratio)


@pytest.fixture
def image_tree(tmp_path: Path) -> Path:
    """One image per level (depth 0, 1, 2) plus a non-image file."""
    root = tmp_path / "photos"
    make_image(root / "top.png")
    make_image(root / "sub" / "mid.jpg", fmt="JPEG", seed=1)
    make_image(root / "sub" / "deeper" / "low.bmp", fmt="BMP", seed=2)
    (root / "notes.txt").write_text("not an image")
    return root


@pytest.fixture
def blob_tree(tmp_path: Path) -> Path:
    """Ten fake images of distinct sizes spread over two levels."""
    root = tmp_path / "blobs"
    for i in range(10):
        folder = root if i % 2 else root / "nested"
        write_blob(folder / f"img{i:02d}.png", 1000 + 100 * i)
    return root
