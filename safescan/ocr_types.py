"""
SafeScan OCR Types — text spans, bounding boxes and the extracted-text envelope
handed from an OCR adapter to the analyzers.

ExtractedText is built once per analysis attempt and never changed afterwards.
Construction clamps every span's bbox into the source image, so downstream code
can rely on: 0 <= x <= image_w, 0 <= y <= image_h, w/h >= 0 and the box never
extends past the image edge.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple


# ────────────────────────────────────────────────
# 🧩 Base geometric unit: bounding box
# ────────────────────────────────────────────────

@dataclass(frozen=True)
class BBox:
    x: int
    y: int
    w: int
    h: int

    def clamped(self, image_w: int, image_h: int) -> "BBox":
        x = min(max(int(self.x), 0), max(image_w, 0))
        y = min(max(int(self.y), 0), max(image_h, 0))
        x2 = min(max(int(self.x) + max(int(self.w), 0), x), max(image_w, 0))
        y2 = min(max(int(self.y) + max(int(self.h), 0), y), max(image_h, 0))
        return BBox(x, y, x2 - x, y2 - y)


# ────────────────────────────────────────────────
# 🔤 Spans + envelope
# ────────────────────────────────────────────────

@dataclass(frozen=True)
class TextSpan:
    text: str
    confidence: float   # 0.0–1.0
    bbox: BBox


@dataclass(frozen=True)
class ExtractedText:
    spans: Tuple[TextSpan, ...]
    full_text: str
    image_size: Tuple[int, int]          # (width, height) of the OCR'd image
    page_confidence: Optional[float] = None
    engine: str = ""

    def __post_init__(self) -> None:
        w, h = self.image_size
        fixed = tuple(
            TextSpan(
                text=s.text,
                confidence=min(max(float(s.confidence), 0.0), 1.0),
                bbox=s.bbox.clamped(w, h),
            )
            for s in self.spans
        )
        object.__setattr__(self, "spans", fixed)

    @classmethod
    def empty(cls, image_size: Tuple[int, int] = (0, 0), engine: str = "") -> "ExtractedText":
        return cls(spans=(), full_text="", image_size=image_size, engine=engine)

    @property
    def is_empty(self) -> bool:
        return not self.full_text.strip()

    @property
    def mean_confidence(self) -> Optional[float]:
        """Page-level confidence if the engine reported one, else the span mean."""
        if self.page_confidence is not None:
            return self.page_confidence
        if not self.spans:
            return None
        return sum(s.confidence for s in self.spans) / len(self.spans)
