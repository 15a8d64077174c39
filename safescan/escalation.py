# safescan/escalation.py
"""
Risk escalation — merges the AI's per-item status with the allergen DB check.

Per item (one-directional, DANGER is absorbing):
    SAFE    + >=1 DB match -> CAUTION
    CAUTION + >=1 DB match -> DANGER
    DANGER                 -> DANGER
    0 DB matches           -> unchanged

The overall status is derived only after every item has been finalized:
DANGER if any item is DANGER, else CAUTION if any is CAUTION, else SAFE.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Sequence

from .i18n import Locale
from .scan_types import CAUTION, DANGER, SAFE, SEVERITY, ItemDBCheck, MenuItemVerdict

_NEXT = {SAFE: CAUTION, CAUTION: DANGER, DANGER: DANGER}


def escalate(status: str, match_count: int) -> str:
    if status not in SEVERITY:
        raise ValueError(f"unknown safety status: {status!r}")
    if match_count <= 0:
        return status
    return _NEXT[status]


def overall_status(statuses: Iterable[str]) -> str:
    statuses = list(statuses)
    if any(s == DANGER for s in statuses):
        return DANGER
    if any(s == CAUTION for s in statuses):
        return CAUTION
    return SAFE


def _merge_codes(*groups: Iterable[str]) -> tuple:
    out: List[str] = []
    for group in groups:
        for code in group:
            if code and code not in out:
                out.append(code)
    return tuple(out)


def apply_verification(
    items: Sequence[MenuItemVerdict],
    checks: Sequence[ItemDBCheck],
    locale: Locale,
) -> List[MenuItemVerdict]:
    """New verdicts with DB evidence folded in; inputs are not modified."""
    if len(items) != len(checks):
        raise ValueError("items and checks must line up one-to-one")

    out: List[MenuItemVerdict] = []
    for item, check in zip(items, checks):
        matched = check.matched_allergens
        status = escalate(item.safety_status, len(matched))
        reason = item.reason
        if status != item.safety_status:
            labels = locale.join(locale.allergy_label(c) for c in matched)
            note = locale.t("escalation.db_match", labels=labels)
            reason = f"{reason} {note}".strip()
        out.append(replace(
            item,
            safety_status=status,
            reason=reason,
            combined_allergens=_merge_codes(item.allergens, matched),
            db_check=check,
        ))
    return out


def build_final_result(items: Sequence[MenuItemVerdict], locale: Locale) -> Dict[str, Any]:
    """FINAL `result` body. Overall status is computed once, over the finished list."""
    overall = overall_status(i.safety_status for i in items)
    serialized = [i.to_dict() for i in items]
    summary_key = f"final.summary.{overall}" if items else "final.summary.EMPTY"
    return {
        "menus": serialized,
        "results": serialized,
        "summary": locale.t(summary_key),
        "overall_status": overall,
        "db_enhanced": True,
        "db_verified": all(i.db_check is None or i.db_check.verified for i in items),
    }
