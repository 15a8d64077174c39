# safescan/ocr_adapter.py
"""
OCR adapters — turn a prepared menu image into ExtractedText.

Two engines behind one async interface:
- TesseractOCRAdapter (default, local): OpenCV CLAHE + Otsu cleanup, then
  pytesseract image_to_data in a worker thread.
- VisionOCRAdapter: Google Cloud Vision `images:annotate` (DOCUMENT_TEXT_DETECTION)
  over REST with an API key, via httpx.

Post-processing shared by both:
- clean_menu_text(): newline/tab/space normalization
- confidence_tier(): low / medium / high from page confidence or text shape

Adapters raise OCRError on any failure; the scan pipeline turns that into
`ocr_failed` and keeps going.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import cv2
import httpx
import numpy as np
import pytesseract
from PIL import Image, UnidentifiedImageError

from . import settings
from .errors import OCRError
from .ocr_types import BBox, ExtractedText, TextSpan
from .scan_types import CONFIDENCE_HIGH, CONFIDENCE_LOW, CONFIDENCE_MEDIUM

log = logging.getLogger(__name__)

VISION_ENDPOINT = "https://vision.googleapis.com/v1/images:annotate"

MIN_CONFIDENT_CHARS = 10
_HAS_DIGIT = re.compile(r"\d")
_HAS_WORDS = re.compile(r"[가-힣A-Za-z]")


# =============================
# Text post-processing
# =============================

def clean_menu_text(text: Optional[str]) -> str:
    if not text:
        return ""
    t = text.replace("\r\n", "\n").replace("\r", "\n")
    t = t.replace("\t", " ")
    t = re.sub(r" {2,}", " ", t)
    t = re.sub(r"\n{3,}", "\n\n", t)
    return t.strip()


def confidence_tier(text: str, page_confidence: Optional[float] = None) -> str:
    """
    Heuristic OCR quality tier.

    Short text is always low. With an engine-reported confidence:
    >= 0.9 high, >= 0.7 medium. Without one, fall back to the shape of the
    text (enough lines, digits for prices, real words).
    """
    t = (text or "").strip()
    if len(t) < MIN_CONFIDENT_CHARS:
        return CONFIDENCE_LOW

    if page_confidence is not None:
        if page_confidence >= 0.9:
            return CONFIDENCE_HIGH
        if page_confidence >= 0.7:
            return CONFIDENCE_MEDIUM
        return CONFIDENCE_LOW

    lines = [ln for ln in t.split("\n") if ln.strip()]
    if len(lines) >= 5 and _HAS_DIGIT.search(t) and _HAS_WORDS.search(t):
        return CONFIDENCE_HIGH
    if len(lines) >= 2 and len(t) >= 50:
        return CONFIDENCE_MEDIUM
    return CONFIDENCE_LOW


def _image_size(image_bytes: bytes) -> Tuple[int, int]:
    try:
        with Image.open(io.BytesIO(image_bytes)) as im:
            return im.size
    except (UnidentifiedImageError, OSError) as e:
        raise OCRError(f"unreadable image: {e}") from e


# =============================
# Interface
# =============================

class OCRAdapter:
    """Boundary to a text-extraction engine."""

    name = "base"

    async def extract(self, image_bytes: bytes, language: str = "ko") -> ExtractedText:
        raise NotImplementedError


# =============================
# Tesseract (local)
# =============================

_TESS_LANGS = {"ko": "kor+eng", "en": "eng", "ja": "jpn+eng", "zh": "chi_sim+eng", "es": "spa+eng"}


def prepare_for_tesseract(img: Image.Image) -> np.ndarray:
    """Grayscale -> CLAHE -> Otsu binarize. Returns a uint8 single-channel array."""
    bgr = cv2.cvtColor(np.asarray(img.convert("RGB")), cv2.COLOR_RGB2BGR)
    gray = cv2.cvtColor(bgr, cv2.COLOR_BGR2GRAY)
    clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
    g1 = clahe.apply(gray)
    return cv2.threshold(g1, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)[1]


def spans_from_tesseract(data: Dict[str, List[Any]]) -> Tuple[List[TextSpan], str]:
    """
    Convert pytesseract DICT output into spans + newline-joined line text.
    Entries with conf == -1 (layout rows) or blank text are skipped.
    """
    spans: List[TextSpan] = []
    lines: Dict[Tuple[int, int, int], List[str]] = {}
    order: List[Tuple[int, int, int]] = []
    n = len(data.get("text", []))
    for i in range(n):
        text = str(data["text"][i] or "").strip()
        try:
            conf = float(data["conf"][i])
        except (TypeError, ValueError):
            conf = -1.0
        if not text or conf < 0:
            continue
        spans.append(TextSpan(
            text=text,
            confidence=conf / 100.0,
            bbox=BBox(int(data["left"][i]), int(data["top"][i]),
                      int(data["width"][i]), int(data["height"][i])),
        ))
        key = (int(data.get("block_num", [0] * n)[i]),
               int(data.get("par_num", [0] * n)[i]),
               int(data.get("line_num", [0] * n)[i]))
        if key not in lines:
            lines[key] = []
            order.append(key)
        lines[key].append(text)
    full_text = "\n".join(" ".join(lines[k]) for k in order)
    return spans, full_text


class TesseractOCRAdapter(OCRAdapter):
    name = "tesseract"

    def __init__(self, *, lang: Optional[str] = None, config: str = settings.TESSERACT_CONFIG,
                 timeout_s: int = settings.OCR_TIMEOUT_S):
        self.lang = lang
        self.config = config
        self.timeout_s = timeout_s
        if settings.TESSERACT_CMD:
            pytesseract.pytesseract.tesseract_cmd = settings.TESSERACT_CMD

    def _run(self, image_bytes: bytes, language: str) -> ExtractedText:
        try:
            with Image.open(io.BytesIO(image_bytes)) as im:
                im.load()
                size = im.size
                work = prepare_for_tesseract(im)
            data = pytesseract.image_to_data(
                work,
                lang=self.lang or _TESS_LANGS.get(language, settings.TESSERACT_LANG),
                config=self.config,
                output_type=pytesseract.Output.DICT,
                timeout=self.timeout_s,
            )
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, RuntimeError) as e:
            raise OCRError(f"tesseract failed: {e}") from e
        except (UnidentifiedImageError, OSError) as e:
            raise OCRError(f"unreadable image: {e}") from e

        spans, raw_text = spans_from_tesseract(data)
        return ExtractedText(
            spans=tuple(spans),
            full_text=clean_menu_text(raw_text),
            image_size=size,
            engine=self.name,
        )

    async def extract(self, image_bytes: bytes, language: str = "ko") -> ExtractedText:
        return await asyncio.to_thread(self._run, image_bytes, language)


# =============================
# Google Cloud Vision (REST)
# =============================

def _vertices_to_bbox(poly: Dict[str, Any]) -> BBox:
    vs = poly.get("vertices") or []
    xs = [int(v.get("x", 0)) for v in vs] or [0]
    ys = [int(v.get("y", 0)) for v in vs] or [0]
    return BBox(min(xs), min(ys), max(xs) - min(xs), max(ys) - min(ys))


def parse_vision_response(payload: Dict[str, Any], image_size: Tuple[int, int]) -> ExtractedText:
    responses = payload.get("responses") or [{}]
    first = responses[0] or {}
    if first.get("error"):
        raise OCRError(f"vision error: {first['error'].get('message', 'unknown')}")

    full = first.get("fullTextAnnotation") or {}
    annotations = first.get("textAnnotations") or []
    text = full.get("text") or (annotations[0].get("description") if annotations else "") or ""

    page_conf: Optional[float] = None
    pages = full.get("pages") or []
    if pages and pages[0].get("confidence") is not None:
        page_conf = float(pages[0]["confidence"])

    spans = tuple(
        TextSpan(
            text=a.get("description", ""),
            confidence=page_conf if page_conf is not None else 1.0,
            bbox=_vertices_to_bbox(a.get("boundingPoly") or {}),
        )
        for a in annotations[1:]
    )
    return ExtractedText(
        spans=spans,
        full_text=clean_menu_text(text),
        image_size=image_size,
        page_confidence=page_conf,
        engine="vision",
    )


class VisionOCRAdapter(OCRAdapter):
    name = "vision"

    def __init__(self, api_key: str = settings.GOOGLE_VISION_API_KEY, *,
                 timeout_s: float = settings.OCR_TIMEOUT_S,
                 client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._client = client

    async def extract(self, image_bytes: bytes, language: str = "ko") -> ExtractedText:
        if not self.api_key:
            raise OCRError("GOOGLE_VISION_API_KEY is not configured")
        size = _image_size(image_bytes)
        body = {
            "requests": [{
                "image": {"content": base64.b64encode(image_bytes).decode("ascii")},
                "features": [{"type": "DOCUMENT_TEXT_DETECTION"}],
                "imageContext": {"languageHints": [language, "en"] if language != "en" else ["en"]},
            }]
        }
        try:
            if self._client is not None:
                resp = await self._client.post(VISION_ENDPOINT, params={"key": self.api_key},
                                               json=body, timeout=self.timeout_s)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                    resp = await client.post(VISION_ENDPOINT, params={"key": self.api_key}, json=body)
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPError as e:
            raise OCRError(f"vision request failed: {e}") from e
        except ValueError as e:
            raise OCRError("vision returned non-JSON body") from e
        return parse_vision_response(payload, size)


def build_ocr_adapter(provider: str = settings.OCR_PROVIDER) -> OCRAdapter:
    if provider == "vision":
        return VisionOCRAdapter()
    return TesseractOCRAdapter()


def tesseract_version() -> Optional[str]:
    try:
        return str(pytesseract.get_tesseract_version())
    except (pytesseract.TesseractNotFoundError, OSError) as e:
        log.info("tesseract not available: %s", e)
        return None
