"""
PNG fixture builders. Images are filtered and compressed here, independently of the
decoder under test, so every chunk layout can be produced directly.
"""

import os
import sys
import zlib
import struct
import pytest
import numpy as np

# Project root on path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

SIGNATURE = b"\x89PNG\r\n\x1a\n"


def chunk(chunkType: bytes, data: bytes = b"") -> bytes:
    """Length, type, payload and a valid CRC."""
    return struct.pack(">I", len(data)) + chunkType + data + struct.pack(">I", zlib.crc32(chunkType + data))


def ihdr(width, height, colorType=0, bitDepth=8, compress=0, filt=0, interlace=0) -> bytes:
    return chunk(b"IHDR", struct.pack(">IIBBBBB", width, height, bitDepth, colorType,
                                      compress, filt, interlace))


def _predict(filterType, a, b, c):
    if filterType == 0:
        return 0
    if filterType == 1:
        return a
    if filterType == 2:
        return b
    if filterType == 3:
        return (a + b) // 2
    p = a + b - c
    pa, pb, pc = abs(p - a), abs(p - b), abs(p - c)
    if pa <= pb and pa <= pc:
        return a
    if pb <= pc:
        return b
    return c


def filter_rows(pixels: np.ndarray, filters, bpp: int) -> bytes:
    """Forward PNG filtering of a (height, width*bpp) uint8 array."""
    rows = pixels.astype(int).tolist()
    out = bytearray()
    for r, row in enumerate(rows):
        filterType = filters[r % len(filters)]
        prev = rows[r - 1] if r > 0 else [0] * len(row)
        out.append(filterType)
        for j, x in enumerate(row):
            a = row[j - bpp] if j >= bpp else 0
            b = prev[j]
            c = prev[j - bpp] if j >= bpp else 0
            out.append((x - _predict(filterType, a, b, c)) & 0xFF)
    return bytes(out)


def random_pixels(width, height, colorType, seed=0) -> np.ndarray:
    channels = 3 if colorType == 2 else 1
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width * channels), dtype=np.uint8)


def idat_chunks(raw: bytes, pieces: int = 1):
    compressed = zlib.compress(raw)
    step = max(1, -(-len(compressed) // pieces))
    return [chunk(b"IDAT", compressed[i:i + step]) for i in range(0, len(compressed), step)]


def build_png(width, height, colorType=0, pixels=None, filters=(0, 1, 2, 3, 4), pieces=1,
              before=(), between=None, after=(), header=None, raw=None, trailer=b""):
    """
    Assemble a PNG: IHDR, `before` chunks, IDAT run (optionally split by `between`),
    `after` chunks, IEND and `trailer` bytes.
    """
    channels = 3 if colorType == 2 else 1
    if raw is None:
        if pixels is None:
            pixels = random_pixels(width, height, colorType)
        raw = filter_rows(pixels, filters, channels)
    idats = idat_chunks(raw, pieces)
    if between is not None:
        idats.insert(1, between)
    parts = [SIGNATURE, header if header is not None else ihdr(width, height, colorType)]
    parts.extend(before)
    parts.extend(idats)
    parts.extend(after)
    parts.append(chunk(b"IEND"))
    parts.append(trailer)
    return b"".join(parts)


@pytest.fixture
def write_png(tmp_path):
    """Write PNG bytes into tmp_path and return the path."""
    def _write(data: bytes, name="in.png"):
        path = tmp_path / name
        path.write_bytes(data)
        return path
    return _write
