"""
SafeScan verdict types shared by the analyzers, the escalation engine and the
job store.

Status values are plain strings ("SAFE" / "CAUTION" / "DANGER") because they
go straight onto the wire; SEVERITY gives them an order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

# ────────────────────────────────────────────────
# Safety levels
# ────────────────────────────────────────────────

SAFE = "SAFE"
CAUTION = "CAUTION"
DANGER = "DANGER"

SAFETY_LEVELS = (SAFE, CAUTION, DANGER)
SEVERITY = {SAFE: 0, CAUTION: 1, DANGER: 2}

CONFIDENCE_LOW = "low"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_HIGH = "high"
CONFIDENCE_LEVELS = (CONFIDENCE_LOW, CONFIDENCE_MEDIUM, CONFIDENCE_HIGH)

SEVERITY_TIERS = ("mild", "moderate", "severe", "life_threatening")
DEFAULT_SEVERITY = "moderate"

# Special trigger codes emitted by the quick analyzer
TRIGGER_OCR_FAILED = "_OCR_FAILED"
TRIGGER_TEXT_TOO_SHORT = "_TEXT_TOO_SHORT"
DIET_TRIGGER_PREFIX = "_DIET_"


# ────────────────────────────────────────────────
# User context
# ────────────────────────────────────────────────

@dataclass(frozen=True)
class UserSafetyContext:
    """Read-only allergy/diet snapshot for one analysis request."""
    allergies: Tuple[Tuple[str, str], ...] = ()   # (code, severity), codes unique, profile order
    diets: Tuple[str, ...] = ()

    @classmethod
    def build(cls, allergies: Any = (), diets: Any = ()) -> "UserSafetyContext":
        """
        Accepts allergy codes as strings, (code, severity) pairs or
        {"code"/"allergy_code", "severity"} dicts. Duplicates keep the first entry;
        unknown severities fall back to DEFAULT_SEVERITY.
        """
        seen: Dict[str, str] = {}
        for entry in allergies or ():
            if isinstance(entry, str):
                code, sev = entry, DEFAULT_SEVERITY
            elif isinstance(entry, dict):
                code = entry.get("code") or entry.get("allergy_code") or ""
                sev = entry.get("severity") or DEFAULT_SEVERITY
            else:
                code, sev = entry[0], entry[1] if len(entry) > 1 else DEFAULT_SEVERITY
            code = str(code).strip().lower()
            if not code or code in seen:
                continue
            seen[code] = sev if sev in SEVERITY_TIERS else DEFAULT_SEVERITY

        diet_list: List[str] = []
        for d in diets or ():
            code = str(d).strip().lower()
            if code and code not in diet_list:
                diet_list.append(code)

        return cls(allergies=tuple(seen.items()), diets=tuple(diet_list))

    @property
    def allergy_codes(self) -> Tuple[str, ...]:
        return tuple(code for code, _ in self.allergies)

    def severity_of(self, code: str) -> Optional[str]:
        return dict(self.allergies).get(code)

    @property
    def is_empty(self) -> bool:
        return not self.allergies and not self.diets

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allergies": [{"code": c, "severity": s} for c, s in self.allergies],
            "diets": list(self.diets),
        }


# ────────────────────────────────────────────────
# Verdicts
# ────────────────────────────────────────────────

@dataclass(frozen=True)
class QuickVerdict:
    level: str
    trigger_codes: Tuple[str, ...]
    trigger_labels: Tuple[str, ...]
    summary: str
    question_for_staff: str
    confidence: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "summaryText": self.summary,
            "triggerCodes": list(self.trigger_codes),
            "triggerLabels": list(self.trigger_labels),
            "questionForStaff": self.question_for_staff,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class ItemDBCheck:
    """Allergen DB cross-check outcome for one menu item."""
    is_dangerous: bool = False
    matched_allergens: Tuple[str, ...] = ()
    verified: bool = True        # False when the lookup itself failed
    checked: bool = False        # False when short-circuited (no ingredients / no allergies)


@dataclass(frozen=True)
class MenuItemVerdict:
    id: str
    original_name: str
    translated_name: str
    safety_status: str
    reason: str = ""
    description: Optional[str] = None
    price: Optional[str] = None
    ingredients: Tuple[str, ...] = ()
    allergens: Tuple[str, ...] = ()             # AI-reported allergen codes
    diet_violations: Tuple[str, ...] = ()
    combined_allergens: Tuple[str, ...] = ()    # AI allergens + DB matches
    db_check: Optional[ItemDBCheck] = None

    def to_dict(self) -> Dict[str, Any]:
        combined = list(self.combined_allergens or self.allergens)
        d: Dict[str, Any] = {
            "id": self.id,
            "original_name": self.original_name,
            "translated_name": self.translated_name,
            "price": self.price,
            "description": self.description,
            "safety_status": self.safety_status,
            "reason": self.reason,
            "ingredients": list(self.ingredients),
            "allergy_risk": {
                "status": self.safety_status if combined else SAFE,
                "matched_allergens": combined,
            },
            "diet_risk": {
                "status": DANGER if self.diet_violations else SAFE,
                "violations": list(self.diet_violations),
            },
        }
        if self.db_check is not None:
            d["db_verification"] = {
                "checked": self.db_check.checked,
                "verified": self.db_check.verified,
                "matched_allergens": list(self.db_check.matched_allergens),
            }
        return d


@dataclass(frozen=True)
class AnalysisRequest:
    image_bytes: bytes
    mime_type: str
    user_id: str
    context: UserSafetyContext
    language: str = "ko"
    device_info: Dict[str, Any] = field(default_factory=dict)
