# safescan/image_preprocess.py
"""
SafeScan Image Preprocessing — menu photo normalization ahead of OCR / AI.

Pipeline shape:
- Pure transforms over an immutable RasterImage (RGBA uint8, read-only numpy buffer).
  Each transform returns a NEW RasterImage; nothing is modified in place.
- ImagePreprocessor is the per-capture session: it threads the latest value
  through the transforms, keeps the decoded original separately, and re-encodes
  the current value (JPEG q=92 blob + base64 data URI) after every change.

Transforms:
    orient(raster, orientation)     EXIF orientation 1..8 correction
    rotate(raster, degrees)         multiples of 90, clockwise for positive values
    crop(raster, x, y, w, h)        exact sub-rectangle, bounds-checked
    auto_crop(raster)               trim near-white margins (threshold 250, pad 10)
    adjust_contrast(raster, c)      c in [-1, 1], RGB only, alpha untouched
    optimize_for_ocr(raster)        grayscale -> min/max stretch -> Laplacian sharpen

Every intermediate stage is rounded half-to-even and clamped to [0, 255], the
same way an 8-bit clamped pixel store behaves, so results are reproducible.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
import re
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import (
    InvalidContrast,
    InvalidCropArea,
    InvalidRotation,
    MissingImage,
    NoImageLoaded,
    UnsupportedFormat,
)

log = logging.getLogger(__name__)

# =============================
# Constants
# =============================

ALLOWED_MIME_TYPES = {
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
}
DECODABLE_FORMATS = ("JPEG", "PNG", "WEBP")

EXIF_ORIENTATION_TAG = 0x0112
JPEG_QUALITY = 92

AUTO_CROP_THRESHOLD = 250
AUTO_CROP_PADDING = 10

SHARPEN_STRENGTH = 0.5
LUMA_WEIGHTS = (0.299, 0.587, 0.114)

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[\w=.-]+)*;base64,(?P<data>.*)$", re.S)


# =============================
# Value type
# =============================

@dataclass(frozen=True, eq=False)
class RasterImage:
    """Immutable RGBA pixel buffer, shape (height, width, 4)."""
    pixels: np.ndarray

    def __post_init__(self) -> None:
        arr = np.array(self.pixels, dtype=np.uint8, copy=True)
        if arr.ndim != 3 or arr.shape[2] != 4:
            raise ValueError(f"RasterImage expects (h, w, 4) RGBA pixels, got shape {arr.shape}")
        arr.flags.writeable = False
        object.__setattr__(self, "pixels", arr)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @classmethod
    def from_pil(cls, img: Image.Image) -> "RasterImage":
        return cls(np.asarray(img.convert("RGBA")))

    def to_pil(self) -> Image.Image:
        return Image.fromarray(np.ascontiguousarray(self.pixels))

    def encode_jpeg(self, quality: int = JPEG_QUALITY) -> bytes:
        buf = io.BytesIO()
        self.to_pil().convert("RGB").save(buf, "JPEG", quality=quality, optimize=True)
        return buf.getvalue()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RasterImage):
            return NotImplemented
        return self.pixels.shape == other.pixels.shape and bool(np.array_equal(self.pixels, other.pixels))


def to_data_uri(blob: bytes, mime_type: str = "image/jpeg") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(blob).decode('ascii')}"


def decode_data_uri(uri: str) -> Tuple[bytes, str]:
    """Split a base64 data URI into (bytes, mime_type). Bare base64 is read as JPEG."""
    if not uri or not isinstance(uri, str):
        raise MissingImage()
    uri = uri.strip()
    m = _DATA_URI_RE.match(uri)
    if m:
        mime = (m.group("mime") or "image/jpeg").lower()
        payload = m.group("data")
    elif uri.startswith("data:"):
        raise UnsupportedFormat()
    else:
        mime, payload = "image/jpeg", uri
    try:
        data = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise UnsupportedFormat() from e
    if not data:
        raise MissingImage()
    return data, mime


# =============================
# Decode + EXIF
# =============================

def _format_for_mime(mime_type: str) -> str:
    fmt = ALLOWED_MIME_TYPES.get((mime_type or "").split(";")[0].strip().lower())
    if fmt is None:
        raise UnsupportedFormat()
    return fmt


def read_exif_orientation(img: Image.Image) -> int:
    """EXIF orientation tag for a decoded JPEG; 1 when missing or unreadable."""
    try:
        value = int(img.getexif().get(EXIF_ORIENTATION_TAG, 1))
    except Exception as e:  # Pillow raises a grab-bag of errors on corrupt EXIF
        log.debug("EXIF orientation unreadable, using 1: %s", e)
        return 1
    return value if 1 <= value <= 8 else 1


def decode_image(data: bytes, mime_type: str) -> Tuple[RasterImage, int]:
    """
    Decode bytes of an allowed MIME type. Returns (raster, exif_orientation).

    The bytes themselves must also be JPEG, PNG or WebP; the declared type alone
    is client-controlled.
    """
    fmt = _format_for_mime(mime_type)
    if not data:
        raise MissingImage()
    try:
        with Image.open(io.BytesIO(data), formats=DECODABLE_FORMATS) as im:
            im.load()
            orientation = 1
            if fmt == "JPEG" and im.format == "JPEG":
                orientation = read_exif_orientation(im)
            raster = RasterImage.from_pil(im)
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
        raise UnsupportedFormat() from e
    return raster, orientation


# =============================
# Pure transforms
# =============================

def orient(raster: RasterImage, orientation: int) -> RasterImage:
    """Apply the corrective transform for an EXIF orientation value (5..8 swap w/h)."""
    px = raster.pixels
    if orientation == 2:
        out = px[:, ::-1]
    elif orientation == 3:
        out = px[::-1, ::-1]
    elif orientation == 4:
        out = px[::-1]
    elif orientation == 5:
        out = px.transpose(1, 0, 2)
    elif orientation == 6:
        out = np.rot90(px, k=-1)
    elif orientation == 7:
        out = px[::-1, ::-1].transpose(1, 0, 2)
    elif orientation == 8:
        out = np.rot90(px, k=1)
    else:
        return raster
    return RasterImage(out)


def rotate(raster: RasterImage, degrees: int = 90) -> RasterImage:
    try:
        deg = int(degrees)
    except (TypeError, ValueError, OverflowError) as e:
        raise InvalidRotation() from e
    if isinstance(degrees, bool) or deg != degrees or deg % 90 != 0:
        raise InvalidRotation()
    # np.rot90 turns counter-clockwise for positive k
    k = (-(deg // 90)) % 4
    if k == 0:
        return raster
    return RasterImage(np.rot90(raster.pixels, k=k))


def crop(raster: RasterImage, x: int, y: int, width: int, height: int) -> RasterImage:
    try:
        x, y, width, height = int(x), int(y), int(width), int(height)
    except (TypeError, ValueError, OverflowError) as e:
        raise InvalidCropArea() from e
    if (
        x < 0 or y < 0 or width <= 0 or height <= 0
        or x + width > raster.width or y + height > raster.height
    ):
        raise InvalidCropArea()
    return RasterImage(raster.pixels[y:y + height, x:x + width])


def auto_crop(raster: RasterImage) -> RasterImage:
    """Trim near-white margins. A blank or single-line image comes back unchanged."""
    mask = (raster.pixels[..., :3] < AUTO_CROP_THRESHOLD).any(axis=2)
    if not mask.any():
        return raster

    ys, xs = np.nonzero(mask)
    min_x, max_x = int(xs.min()), int(xs.max())
    min_y, max_y = int(ys.min()), int(ys.max())
    if not (max_x > min_x and max_y > min_y):
        return raster

    pad = AUTO_CROP_PADDING
    crop_x = max(0, min_x - pad)
    crop_y = max(0, min_y - pad)
    crop_w = min(raster.width - crop_x, max_x - min_x + pad * 2)
    crop_h = min(raster.height - crop_y, max_y - min_y + pad * 2)
    return crop(raster, crop_x, crop_y, crop_w, crop_h)


def _to_u8(values: np.ndarray) -> np.ndarray:
    return np.clip(np.rint(values), 0, 255).astype(np.uint8)


def contrast_factor(contrast: float) -> float:
    c = contrast * 255.0
    return (259.0 * (c + 255.0)) / (255.0 * (259.0 - c))


def adjust_contrast(raster: RasterImage, contrast: float) -> RasterImage:
    try:
        c = float(contrast)
    except (TypeError, ValueError) as e:
        raise InvalidContrast() from e
    if not (-1.0 <= c <= 1.0):
        raise InvalidContrast()

    factor = contrast_factor(c)
    out = raster.pixels.copy()
    rgb = out[..., :3].astype(np.float64)
    out[..., :3] = _to_u8(factor * (rgb - 128.0) + 128.0)
    return RasterImage(out)


def optimize_for_ocr(raster: RasterImage) -> RasterImage:
    px = raster.pixels
    rgb = px[..., :3].astype(np.float64)

    # 1) grayscale
    wr, wg, wb = LUMA_WEIGHTS
    gray = _to_u8(wr * rgb[..., 0] + wg * rgb[..., 1] + wb * rgb[..., 2]).astype(np.float64)

    # 2) min/max stretch
    lo, hi = float(gray.min()), float(gray.max())
    span = (hi - lo) or 1.0
    stretched = _to_u8((gray - lo) / span * 255.0).astype(np.float64)

    # 3) Laplacian sharpen, interior only; neighbours read from the stretched copy
    result = stretched.copy()
    if stretched.shape[0] >= 3 and stretched.shape[1] >= 3:
        c = stretched[1:-1, 1:-1]
        lap = (
            4.0 * c
            - stretched[:-2, 1:-1]
            - stretched[2:, 1:-1]
            - stretched[1:-1, :-2]
            - stretched[1:-1, 2:]
        )
        result[1:-1, 1:-1] = np.clip(np.rint(c + SHARPEN_STRENGTH * lap), 0, 255)

    g8 = result.astype(np.uint8)
    out = px.copy()
    out[..., 0] = g8
    out[..., 1] = g8
    out[..., 2] = g8
    return RasterImage(out)


# =============================
# Session
# =============================

class ImagePreprocessor:
    """
    One capture's preprocessing session.

    Each operation either completes and replaces the current value, or raises and
    leaves it untouched. `original` is the decoded buffer before any correction.
    """

    def __init__(self, *, jpeg_quality: int = JPEG_QUALITY):
        self._jpeg_quality = jpeg_quality
        self.reset()

    # ---- state ----
    def reset(self) -> None:
        self._original: Optional[RasterImage] = None
        self._current: Optional[RasterImage] = None
        self._orientation = 1
        self._blob: Optional[bytes] = None
        self._data_uri: Optional[str] = None

    @property
    def loaded(self) -> bool:
        return self._current is not None

    @property
    def current(self) -> RasterImage:
        return self._require()

    @property
    def original(self) -> RasterImage:
        if self._original is None:
            raise NoImageLoaded()
        return self._original

    @property
    def orientation(self) -> int:
        return self._orientation

    @property
    def blob(self) -> bytes:
        if self._blob is None:
            raise NoImageLoaded()
        return self._blob

    @property
    def data_uri(self) -> str:
        if self._data_uri is None:
            raise NoImageLoaded()
        return self._data_uri

    @property
    def dimensions(self) -> Tuple[int, int]:
        return self._require().size

    def _require(self) -> RasterImage:
        if self._current is None:
            raise NoImageLoaded()
        return self._current

    def _commit(self, raster: RasterImage) -> RasterImage:
        blob = raster.encode_jpeg(self._jpeg_quality)
        self._current = raster
        self._blob = blob
        self._data_uri = to_data_uri(blob, "image/jpeg")
        return raster

    # ---- operations ----
    def load(self, data: bytes, mime_type: str) -> RasterImage:
        raster, orientation = decode_image(data, mime_type)
        corrected = orient(raster, orientation)
        self.reset()
        self._original = raster
        self._orientation = orientation
        log.debug("Loaded %dx%d image (exif orientation=%d)", raster.width, raster.height, orientation)
        return self._commit(corrected)

    def rotate(self, degrees: int = 90) -> RasterImage:
        return self._commit(rotate(self._require(), degrees))

    def crop(self, x: int, y: int, width: int, height: int) -> RasterImage:
        return self._commit(crop(self._require(), x, y, width, height))

    def auto_crop(self) -> RasterImage:
        return self._commit(auto_crop(self._require()))

    def adjust_contrast(self, contrast: float) -> RasterImage:
        return self._commit(adjust_contrast(self._require(), contrast))

    def optimize_for_ocr(self) -> RasterImage:
        return self._commit(optimize_for_ocr(self._require()))
