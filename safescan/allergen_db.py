# safescan/allergen_db.py
"""
Allergen DB verifier — an independent cross-check of AI-extracted ingredients
against the `allergen_mappings` keyword table.

A mapping row says "an ingredient whose name contains <keyword> carries
<allergen_type>". Matching is a case-insensitive substring test done in SQL:

    lower(?) LIKE '%' || lower(ingredient_keyword) || '%'

Only allergen codes the user actually has are reported.

Failure policy: a DB error is logged and reported as "no match"
(is_dangerous=False) so the request still completes, but the result carries
verified=False so callers can tell "checked, nothing found" from "could not check".
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Iterable, List, Sequence, Tuple

from . import db
from .scan_types import ItemDBCheck, MenuItemVerdict

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Seed data (keyword -> allergen code)
# ---------------------------------------------------------------------------
DEFAULT_ALLERGEN_MAPPINGS: Tuple[Tuple[str, str], ...] = (
    # milk
    ("우유", "milk"), ("치즈", "milk"), ("버터", "milk"), ("크림", "milk"), ("요거트", "milk"),
    ("milk", "milk"), ("cheese", "milk"), ("butter", "milk"), ("cream", "milk"),
    # eggs
    ("계란", "eggs"), ("달걀", "eggs"), ("마요네즈", "eggs"), ("egg", "eggs"),
    # shellfish
    ("새우", "shellfish"), ("꽃게", "shellfish"), ("대게", "shellfish"), ("랍스터", "shellfish"),
    ("가재", "shellfish"), ("shrimp", "shellfish"), ("crab", "shellfish"), ("lobster", "shellfish"),
    # mollusks
    ("오징어", "mollusks"), ("문어", "mollusks"), ("낙지", "mollusks"), ("조개", "mollusks"),
    ("굴", "mollusks"), ("홍합", "mollusks"),
    # fish
    ("고등어", "fish"), ("연어", "fish"), ("참치", "fish"), ("멸치", "fish"), ("생선", "fish"),
    ("salmon", "fish"), ("tuna", "fish"), ("anchovy", "fish"),
    # soy
    ("대두", "soy"), ("된장", "soy"), ("간장", "soy"), ("두부", "soy"), ("고추장", "soy"),
    ("soy", "soy"), ("tofu", "soy"),
    # wheat
    ("밀가루", "wheat"), ("빵", "wheat"), ("국수", "wheat"), ("wheat", "wheat"), ("flour", "wheat"),
    # peanuts / tree nuts / sesame
    ("땅콩", "peanuts"), ("peanut", "peanuts"),
    ("호두", "tree_nuts"), ("아몬드", "tree_nuts"), ("잣", "tree_nuts"),
    ("walnut", "tree_nuts"), ("almond", "tree_nuts"),
    ("참깨", "sesame"), ("참기름", "sesame"), ("sesame", "sesame"),
    # meats
    ("돼지", "pork"), ("삼겹살", "pork"), ("베이컨", "pork"), ("pork", "pork"), ("bacon", "pork"),
    ("소고기", "beef"), ("불고기", "beef"), ("beef", "beef"),
    ("닭", "chicken"), ("chicken", "chicken"),
    ("양고기", "lamb"), ("lamb", "lamb"),
    # others
    ("메밀", "buckwheat"), ("buckwheat", "buckwheat"),
    ("복숭아", "peach"), ("peach", "peach"),
    ("토마토", "tomato"), ("tomato", "tomato"),
    ("맛술", "alcohol"), ("와인", "alcohol"), ("wine", "alcohol"),
)


def seed_allergen_mappings(conn: sqlite3.Connection,
                           mappings: Iterable[Tuple[str, str]] = DEFAULT_ALLERGEN_MAPPINGS) -> int:
    """Idempotent insert; returns number of rows actually added."""
    before = conn.total_changes
    conn.executemany(
        "INSERT OR IGNORE INTO allergen_mappings (ingredient_keyword, allergen_type) VALUES (?, ?)",
        [(k.strip(), a.strip().lower()) for k, a in mappings],
    )
    return conn.total_changes - before


# ---------------------------------------------------------------------------
# Lookups (sync; run in worker threads)
# ---------------------------------------------------------------------------
def check_ingredient(ingredient_name: str, allergy_codes: Sequence[str]) -> List[str]:
    """Allergen codes (restricted to `allergy_codes`) whose keyword occurs in the name."""
    name = (ingredient_name or "").strip()
    codes = [c for c in dict.fromkeys(allergy_codes) if c]
    if not name or not codes:
        return []
    placeholders = ",".join("?" for _ in codes)
    with db.connection() as conn:
        rows = conn.execute(
            f"""
            SELECT DISTINCT allergen_type
              FROM allergen_mappings
             WHERE lower(?) LIKE '%' || lower(ingredient_keyword) || '%'
               AND allergen_type IN ({placeholders})
             ORDER BY allergen_type
            """,
            (name, *codes),
        ).fetchall()
    return [str(r["allergen_type"]) for r in rows]


# ---------------------------------------------------------------------------
# Async verifier
# ---------------------------------------------------------------------------
class AllergenDBVerifier:
    async def verify_item(self, item: MenuItemVerdict, allergy_codes: Sequence[str]) -> ItemDBCheck:
        ingredients = [i for i in item.ingredients if i and i.strip()]
        if not ingredients or not allergy_codes:
            return ItemDBCheck(is_dangerous=False, matched_allergens=(), verified=True, checked=False)

        try:
            per_ingredient = await asyncio.gather(
                *(asyncio.to_thread(check_ingredient, ing, allergy_codes) for ing in ingredients)
            )
        except sqlite3.Error as e:
            log.warning("Allergen DB check failed for item %s (%s): %s", item.id, item.original_name, e)
            return ItemDBCheck(is_dangerous=False, matched_allergens=(), verified=False, checked=True)

        matched: List[str] = []
        for codes in per_ingredient:
            for code in codes:
                if code not in matched:
                    matched.append(code)
        return ItemDBCheck(
            is_dangerous=bool(matched),
            matched_allergens=tuple(matched),
            verified=True,
            checked=True,
        )

    async def verify_items(self, items: Sequence[MenuItemVerdict],
                           allergy_codes: Sequence[str]) -> List[ItemDBCheck]:
        """One check per item, all issued concurrently; order matches `items`."""
        return list(await asyncio.gather(*(self.verify_item(it, allergy_codes) for it in items)))
