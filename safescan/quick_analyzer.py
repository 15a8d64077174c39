# safescan/quick_analyzer.py
"""
Quick (first-pass) safety check — keyword scan of the OCR text.

Runs synchronously right after OCR and before the AI call is awaited, so the
caller always has a provisional verdict. It is an early warning, not a safety
certificate: a keyword hit means DANGER, the absence of hits only means SAFE
until the AI path says otherwise.

Rules, first applicable wins for the level:
  1. OCR failed or produced no text     -> CAUTION, [_OCR_FAILED], low
  2. stripped text shorter than 10 chars -> CAUTION, [_TEXT_TOO_SHORT], medium
  3. keyword scan (case-insensitive substring) over the user's allergy codes,
     then diet codes (emitted as _DIET_<code>)
  4. any trigger                         -> DANGER, high
  5. otherwise                           -> SAFE, confidence = OCR tier
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

from .i18n import Locale
from .scan_types import (
    CAUTION,
    CONFIDENCE_HIGH,
    CONFIDENCE_LEVELS,
    CONFIDENCE_LOW,
    CONFIDENCE_MEDIUM,
    DANGER,
    DIET_TRIGGER_PREFIX,
    SAFE,
    TRIGGER_OCR_FAILED,
    TRIGGER_TEXT_TOO_SHORT,
    QuickVerdict,
    UserSafetyContext,
)

MIN_TEXT_CHARS = 10

# ---------------------------------------------------------------------------
# Keyword tables
# ---------------------------------------------------------------------------
ALLERGY_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "eggs": ("계란", "달걀", "egg", "에그", "란", "마요네즈"),
    "milk": ("우유", "치즈", "버터", "milk", "cheese", "cream", "크림", "유제품"),
    "peanuts": ("땅콩", "peanut", "피넛"),
    "tree_nuts": ("호두", "아몬드", "캐슈넛", "피스타치오", "견과류", "nut", "walnut", "almond"),
    "fish": ("생선", "연어", "참치", "고등어", "fish", "salmon", "tuna"),
    "shellfish": ("새우", "게", "랍스터", "가재", "갑각류", "shrimp", "crab", "lobster"),
    "wheat": ("밀", "글루텐", "빵", "면", "wheat", "gluten", "flour"),
    "soy": ("대두", "두부", "된장", "간장", "soy", "tofu"),
    "sesame": ("참깨", "깨", "sesame"),
    "pork": ("돼지", "삼겹", "베이컨", "햄", "pork", "bacon", "ham"),
    "beef": ("소고기", "불고기", "beef", "스테이크"),
    "chicken": ("닭", "치킨", "chicken"),
    "lamb": ("양고기", "램", "lamb"),
    "buckwheat": ("메밀", "buckwheat", "소바"),
    "peach": ("복숭아", "peach"),
    "alcohol": ("알코올", "술", "맥주", "와인", "alcohol", "beer", "wine"),
}

_VEGETARIAN_BASE = ("고기", "육류", "meat", "소고기", "돼지", "닭", "생선", "해산물")
_EGG = ("계란", "달걀", "egg", "에그")
_DAIRY = ("우유", "치즈", "버터", "milk", "cheese", "cream", "크림", "유제품")
_GARLIC_ONION = ("마늘", "양파", "파", "대파", "쪽파", "garlic", "onion")

DIET_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "vegetarian": _VEGETARIAN_BASE,
    "vegan": ("고기", "육류", "meat", "우유", "계란", "꿀", "honey", "유제품", "dairy"),
    "lacto_vegetarian": _VEGETARIAN_BASE + _EGG,
    "ovo_vegetarian": _VEGETARIAN_BASE + _DAIRY,
    "pesco_vegetarian": ("고기", "육류", "meat", "소고기", "돼지", "닭"),
    "flexitarian": _VEGETARIAN_BASE,
    "halal": ("돼지", "pork", "베이컨", "햄", "알코올", "alcohol", "술", "와인"),
    "kosher": ("돼지", "pork", "갑각류", "shellfish", "새우", "게"),
    "buddhist_vegetarian": _VEGETARIAN_BASE + _GARLIC_ONION,
    "gluten_free": ("밀", "wheat", "글루텐", "gluten", "빵", "면", "파스타"),
    "pork_free": ("돼지", "pork", "베이컨", "햄"),
    "alcohol_free": ("알코올", "술", "맥주", "와인", "소주", "alcohol", "beer", "wine"),
    "garlic_onion_free": _GARLIC_ONION,
}

# allergy codes with their own staff question; everything else uses the default template
_SPECIFIC_ALLERGY_QUESTIONS = ("shellfish", "pork", "eggs", "milk")


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------
def _first_hit(text_lower: str, keywords: Sequence[str]) -> Optional[str]:
    for kw in keywords:
        if kw.lower() in text_lower:
            return kw
    return None


def scan_keywords(
    text: str,
    allergy_codes: Sequence[str],
    diet_codes: Sequence[str],
) -> Tuple[List[str], List[str]]:
    """Return (allergy_triggers, diet_triggers) in profile order, deduplicated."""
    lower = text.lower()
    allergy_hits: List[str] = []
    for code in allergy_codes:
        if code not in allergy_hits and _first_hit(lower, ALLERGY_KEYWORDS.get(code, ())):
            allergy_hits.append(code)
    diet_hits: List[str] = []
    for code in diet_codes:
        if code not in diet_hits and _first_hit(lower, DIET_KEYWORDS.get(code, ())):
            diet_hits.append(code)
    return allergy_hits, diet_hits


# ---------------------------------------------------------------------------
# Staff question
# ---------------------------------------------------------------------------
def _profile_question(context: UserSafetyContext, locale: Locale) -> str:
    if context.allergy_codes:
        labels = locale.join(locale.allergy_label(c) for c in context.allergy_codes[:2])
        return locale.t("question.profile_allergies", labels=labels)
    if context.diets:
        return locale.t("question.profile_diet", diet=locale.diet_label(context.diets[0]))
    return locale.t("question.generic")


def staff_question(
    allergy_hits: Sequence[str],
    diet_hits: Sequence[str],
    context: UserSafetyContext,
    locale: Locale,
) -> str:
    if allergy_hits:
        first = allergy_hits[0]
        if first in _SPECIFIC_ALLERGY_QUESTIONS:
            return locale.t(f"question.allergy.{first}")
        return locale.t("question.allergy.default", label=locale.allergy_label(first))
    if diet_hits:
        key = f"question.diet.{diet_hits[0]}"
        return locale.t(key) if locale.has(key) else locale.t("question.diet.default")
    return _profile_question(context, locale)


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------
def quick_analyze(
    text: Optional[str],
    context: UserSafetyContext,
    locale: Locale,
    *,
    ocr_confidence: str = CONFIDENCE_HIGH,
    ocr_failed: bool = False,
) -> QuickVerdict:
    text = text or ""
    stripped = text.strip()
    if ocr_confidence not in CONFIDENCE_LEVELS:
        ocr_confidence = CONFIDENCE_MEDIUM

    if ocr_failed or not stripped:
        return QuickVerdict(
            level=CAUTION,
            trigger_codes=(TRIGGER_OCR_FAILED,),
            trigger_labels=(),
            summary=locale.t("quick.ocr_failed"),
            question_for_staff=_profile_question(context, locale),
            confidence=CONFIDENCE_LOW,
        )

    if len(stripped) < MIN_TEXT_CHARS:
        return QuickVerdict(
            level=CAUTION,
            trigger_codes=(TRIGGER_TEXT_TOO_SHORT,),
            trigger_labels=(),
            summary=locale.t("quick.text_too_short"),
            question_for_staff=_profile_question(context, locale),
            confidence=CONFIDENCE_MEDIUM,
        )

    allergy_hits, diet_hits = scan_keywords(stripped, context.allergy_codes, context.diets)
    codes = tuple(allergy_hits) + tuple(f"{DIET_TRIGGER_PREFIX}{d}" for d in diet_hits)
    labels = tuple(locale.allergy_label(c) for c in allergy_hits) + tuple(
        locale.diet_label(d) for d in diet_hits
    )
    question = staff_question(allergy_hits, diet_hits, context, locale)

    if codes:
        return QuickVerdict(
            level=DANGER,
            trigger_codes=codes,
            trigger_labels=labels,
            summary=locale.t("quick.danger", labels=locale.join(labels)),
            question_for_staff=question,
            confidence=CONFIDENCE_HIGH,
        )

    return QuickVerdict(
        level=SAFE,
        trigger_codes=(),
        trigger_labels=(),
        summary=locale.t("quick.safe"),
        question_for_staff=question,
        confidence=ocr_confidence,
    )
