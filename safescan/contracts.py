# safescan/contracts.py
"""
Strict contract for AI analyzer payloads.

The AI is asked for:
    {"overall_status": "...", "results": [
        {"id", "original_name", "translated_name", "price", "description",
         "status": "SAFE|CAUTION|DANGER", "reason",
         "ingredients": [...], "allergens": [...], "diet_violations": [...]}
    ]}

parse_menu_payload() turns raw model text into MenuItemVerdicts or a ParseError;
nothing loosely-typed gets past this module. Missing or unknown statuses are
errors, never defaulted to SAFE.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple

from .scan_types import SAFETY_LEVELS, MenuItemVerdict

PARSE_ERROR = "PARSE_ERROR"
INVALID_RESPONSE_FORMAT = "INVALID_RESPONSE_FORMAT"
INVALID_STATUS_VALUE = "INVALID_STATUS_VALUE"

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.I)


@dataclass(frozen=True)
class ParseError:
    code: str
    detail: str


def _strip_fences(text: str) -> str:
    t = text.strip()
    if t.startswith("```"):
        t = _FENCE_RE.sub("", t).strip()
    return t


def _str_list(value: Any, where: str) -> Tuple[Optional[Tuple[str, ...]], str]:
    if value is None:
        return (), ""
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        return None, f"{where} must be a list of strings"
    return tuple(v.strip() for v in value if v.strip()), ""


def _opt_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, str):
        return value.strip() or None
    return None


def validate_item(raw: Any, index: int) -> Tuple[Optional[MenuItemVerdict], Optional[ParseError]]:
    where = f"results[{index}]"
    if not isinstance(raw, dict):
        return None, ParseError(INVALID_RESPONSE_FORMAT, f"{where} must be an object")

    name = raw.get("original_name")
    if not isinstance(name, str) or not name.strip():
        return None, ParseError(INVALID_RESPONSE_FORMAT, f"{where}.original_name must be a non-empty string")

    status = raw.get("status", raw.get("safety_status"))
    if not isinstance(status, str) or status.strip().upper() not in SAFETY_LEVELS:
        return None, ParseError(INVALID_STATUS_VALUE, f"{where}.status {status!r} is not SAFE/CAUTION/DANGER")

    lists: Dict[str, Tuple[str, ...]] = {}
    for key in ("ingredients", "allergens", "diet_violations"):
        vals, msg = _str_list(raw.get(key), f"{where}.{key}")
        if vals is None:
            return None, ParseError(INVALID_RESPONSE_FORMAT, msg)
        lists[key] = vals

    reason = raw.get("reason", "")
    if reason is not None and not isinstance(reason, str):
        return None, ParseError(INVALID_RESPONSE_FORMAT, f"{where}.reason must be a string")

    translated = raw.get("translated_name")
    item_id = raw.get("id")
    return MenuItemVerdict(
        id=str(item_id).strip() if item_id not in (None, "") else f"item-{index + 1}",
        original_name=name.strip(),
        translated_name=translated.strip() if isinstance(translated, str) and translated.strip() else name.strip(),
        safety_status=status.strip().upper(),
        reason=(reason or "").strip(),
        description=_opt_text(raw.get("description")),
        price=_opt_text(raw.get("price")),
        ingredients=lists["ingredients"],
        allergens=tuple(a.lower() for a in lists["allergens"]),
        diet_violations=lists["diet_violations"],
    ), None


def parse_menu_payload(raw_text: Optional[str]) -> Tuple[Optional[List[MenuItemVerdict]], Optional[ParseError]]:
    if raw_text is None or not raw_text.strip():
        return None, ParseError(PARSE_ERROR, "empty response")
    try:
        payload = json.loads(_strip_fences(raw_text))
    except json.JSONDecodeError as e:
        return None, ParseError(PARSE_ERROR, f"invalid JSON: {e.msg}")

    if not isinstance(payload, dict):
        return None, ParseError(INVALID_RESPONSE_FORMAT, "payload must be an object")
    results = payload.get("results")
    if not isinstance(results, list):
        return None, ParseError(INVALID_RESPONSE_FORMAT, "missing 'results' list")

    items: List[MenuItemVerdict] = []
    seen_ids: Dict[str, int] = {}
    for i, raw in enumerate(results):
        item, err = validate_item(raw, i)
        if item is None:
            return None, err
        # ids must be unique within one result set
        if item.id in seen_ids:
            seen_ids[item.id] += 1
            item = replace(item, id=f"{item.id}-{seen_ids[item.id]}")
        else:
            seen_ids[item.id] = 1
        items.append(item)
    return items, None
