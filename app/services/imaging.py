"""
Image feature extraction used by the fingerprinter.

- ``perceptual_hash``: 64-bit DCT hash (32x32 luminance, low 8x8 band vs median).
- ``embed``: compact, deterministic feature vector (centred colour histogram
  plus coarse luminance layout), L2-normalised.
- ``hamming`` / ``cosine``: comparison helpers.

Pillow does decoding/resizing; scipy does the DCT and numpy the rest of the
arithmetic. Everything here is synchronous and CPU-bound; async callers run it
in a worker thread.
"""

from __future__ import annotations

import math
from io import BytesIO
from typing import Sequence, Tuple

import numpy as np
from PIL import Image, ImageOps
from scipy.fft import dct

from app.services.errors import FingerprintError

HASH_BITS = 64
_HASH_SIDE = 32
_HASH_LOW = 8
_HIST_BINS = 8
_LAYOUT_SIDE = 4

EMBEDDING_DIM = 3 * _HIST_BINS + _LAYOUT_SIDE * _LAYOUT_SIDE

# Images larger than this are refused before any pixel data is decoded.
MAX_IMAGE_PIXELS = 16_000_000


def load_image(data: bytes, max_pixels: int = MAX_IMAGE_PIXELS) -> Image.Image:
    if not data:
        raise FingerprintError("empty image payload")
    try:
        img = Image.open(BytesIO(data))
    except Exception as exc:
        raise FingerprintError(f"undecodable image: {type(exc).__name__}") from exc
    # Only the header has been read so far.
    width, height = img.size
    if width * height > max_pixels:
        raise FingerprintError(f"image of {width}x{height} exceeds {max_pixels} pixels")
    try:
        if getattr(img, "is_animated", False):
            img.seek(0)
        img.load()
        return ImageOps.exif_transpose(img)
    except Image.DecompressionBombError as exc:
        raise FingerprintError("image exceeds decompression limits") from exc
    except Exception as exc:
        raise FingerprintError(f"undecodable image: {type(exc).__name__}") from exc


def perceptual_hash(img: Image.Image) -> str:
    gray = img.convert("L").resize((_HASH_SIDE, _HASH_SIDE), Image.Resampling.LANCZOS)
    pixels = np.asarray(gray, dtype=np.float64)
    coeffs = dct(dct(pixels, axis=0, norm="ortho"), axis=1, norm="ortho")
    low = coeffs[:_HASH_LOW, :_HASH_LOW].flatten()
    med = np.median(low)
    h = 0
    for bit in low > med:
        h = (h << 1) | int(bit)
    return f"{h:0{HASH_BITS // 4}x}"


def perceptual_hash_bytes(data: bytes) -> str:
    return perceptual_hash(load_image(data))


def hamming(a: str, b: str) -> int:
    """Bit distance between two hex-encoded hashes."""
    return bin(int(a, 16) ^ int(b, 16)).count("1")


def embed(img: Image.Image) -> Tuple[float, ...]:
    rgb = img.convert("RGB").resize((64, 64), Image.Resampling.BILINEAR)
    arr = np.asarray(rgb, dtype=np.float64)
    parts = []
    for ch in range(3):
        hist, _ = np.histogram(arr[:, :, ch], bins=_HIST_BINS, range=(0.0, 256.0))
        hist = hist / max(1.0, float(hist.sum()))
        parts.append(hist - 1.0 / _HIST_BINS)
    gray = np.asarray(
        img.convert("L").resize((_LAYOUT_SIDE, _LAYOUT_SIDE), Image.Resampling.BOX),
        dtype=np.float64,
    ).flatten() / 255.0
    parts.append(gray - gray.mean())
    vec = np.concatenate(parts)
    norm = float(np.linalg.norm(vec))
    if norm > 0:
        vec = vec / norm
    return tuple(float(x) for x in vec)


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b) or not a:
        raise ValueError("embedding dimensions differ")
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    sim = float(va @ vb) / denom
    if math.isnan(sim):
        return 0.0
    return sim
