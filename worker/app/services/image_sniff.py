# worker/app/services/image_sniff.py
"""
Header-only image dimension sniffer.

Reads pixel width/height straight from container headers, no decoder:

- JPEG: walk marker segments from offset 2 until a Start-Of-Frame marker
- PNG:  IHDR is always the first chunk, width/height at offsets 16/20
- GIF:  logical screen size at offsets 6/8 (little-endian)
- WebP: lossy "VP8 " only; VP8L/VP8X report None
- AVIF/HEIF: scan for the `ispe` property box

Contract: `sniff(data)` returns an `ImageInfo` or None. It never raises and
never invents values; None means "dimensions unknown, retry later".
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Optional

log = logging.getLogger(__name__)

MAX_DIM = 20000  # JPEG/PNG/GIF/WebP plausibility cap
MAX_DIM_ISOBMFF = 50000

# SOF0-3, SOF5-7, SOF9-11, SOF13-15 (0xC4 DHT, 0xC8 JPG, 0xCC DAC excluded)
SOF_MARKERS = frozenset(
    list(range(0xC0, 0xC4)) + list(range(0xC5, 0xC8)) + list(range(0xC9, 0xCC)) + list(range(0xCD, 0xD0))
)
# markers without a length field
_STANDALONE = frozenset([0x01, 0xD8] + list(range(0xD0, 0xD8)))


@dataclass(frozen=True)
class ImageInfo:
    format: str
    width: int
    height: int

    @property
    def aspect_ratio(self) -> float:
        return round(self.width / self.height, 6)


def detect_format(data: bytes) -> Optional[str]:
    """Identify the container by magic bytes; None for unknown patterns."""
    if not data or len(data) < 4:
        return None
    if data[:2] == b"\xff\xd8":
        return "jpeg"
    if data[:4] == b"\x89PNG":
        return "png"
    if data[:3] == b"GIF":
        return "gif"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    if len(data) >= 12 and data[4:8] == b"ftyp":
        brand = bytes(data[8:12])
        return "avif" if brand.startswith(b"avi") else "heif"
    return None


def _plausible(w: int, h: int, cap: int = MAX_DIM) -> bool:
    return 0 < w < cap and 0 < h < cap


def _jpeg(data: bytes) -> Optional[ImageInfo]:
    n = len(data)
    offset = 2
    while offset + 1 < n:
        if data[offset] != 0xFF:
            offset += 1
            continue
        marker = data[offset + 1]
        if marker == 0xFF:  # fill byte
            offset += 1
            continue
        if marker in _STANDALONE:
            offset += 2
            continue
        if marker in SOF_MARKERS and offset + 8 < n:
            height, width = struct.unpack_from(">HH", data, offset + 5)
            if _plausible(width, height):
                return ImageInfo("jpeg", width, height)
            # implausible frame header; keep scanning
        if offset + 3 >= n:
            break
        (length,) = struct.unpack_from(">H", data, offset + 2)
        if length < 2:
            break
        offset += 2 + length
    return None


def _png(data: bytes) -> Optional[ImageInfo]:
    if len(data) < 24 or data[12:16] != b"IHDR":
        return None
    width, height = struct.unpack_from(">II", data, 16)
    return ImageInfo("png", width, height) if _plausible(width, height) else None


def _gif(data: bytes) -> Optional[ImageInfo]:
    if len(data) < 10:
        return None
    width, height = struct.unpack_from("<HH", data, 6)
    return ImageInfo("gif", width, height) if _plausible(width, height) else None


def _webp(data: bytes) -> Optional[ImageInfo]:
    # simple lossy bitstream only
    if len(data) < 30 or data[12:16] != b"VP8 ":
        return None
    raw_w, raw_h = struct.unpack_from("<HH", data, 26)
    width = (raw_w & 0x3FFF) + 1
    height = (raw_h & 0x3FFF) + 1
    return ImageInfo("webp", width, height) if _plausible(width, height) else None


def _isobmff(data: bytes, fmt: str) -> Optional[ImageInfo]:
    n = len(data)
    idx = data.find(b"ispe")
    while idx != -1:
        off = idx + 8  # box type + version/flags
        if off + 8 > n:
            return None
        width, height = struct.unpack_from(">II", data, off)
        if _plausible(width, height, MAX_DIM_ISOBMFF):
            return ImageInfo(fmt, width, height)
        idx = data.find(b"ispe", idx + 4)
    return None


_PARSERS = {
    "jpeg": _jpeg,
    "png": _png,
    "gif": _gif,
    "webp": _webp,
}


def sniff(data: bytes) -> Optional[ImageInfo]:
    try:
        buf = bytes(data) if not isinstance(data, bytes) else data
        fmt = detect_format(buf)
        if fmt is None:
            return None
        if fmt in ("avif", "heif"):
            return _isobmff(buf, fmt)
        return _PARSERS[fmt](buf)
    except (struct.error, IndexError, ValueError, TypeError) as e:
        log.debug("sniff failed: %s", e)
        return None


__all__ = ["ImageInfo", "detect_format", "sniff"]
