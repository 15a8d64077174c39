"""
Allergen DB verifier tests.

Covers:
  - Seeding is idempotent
  - Substring keyword match ("새우튀김" -> shellfish), case-insensitive
  - Only the user's allergy codes are returned
  - No ingredients / no allergies -> short-circuit, checked=False
  - Per-item results line up with the input order
  - DB failure -> is_dangerous=False, verified=False (request still completes)
"""

from __future__ import annotations

import asyncio
import sqlite3

import safescan.allergen_db as allergen_db
from safescan import db
from safescan.allergen_db import AllergenDBVerifier, check_ingredient, seed_allergen_mappings
from safescan.scan_types import MenuItemVerdict


def _item(item_id="1", ingredients=(), status="SAFE") -> MenuItemVerdict:
    return MenuItemVerdict(
        id=item_id,
        original_name=f"메뉴 {item_id}",
        translated_name=f"Menu {item_id}",
        safety_status=status,
        ingredients=tuple(ingredients),
    )


class TestSeedAndLookup:
    def test_seed_is_idempotent(self, fresh_db):
        with db.connection() as conn:
            assert seed_allergen_mappings(conn) == 0

    def test_substring_match(self, fresh_db):
        assert check_ingredient("새우튀김", ["shellfish"]) == ["shellfish"]

    def test_case_insensitive(self, fresh_db):
        assert check_ingredient("Grilled SALMON", ["fish"]) == ["fish"]

    def test_restricted_to_user_codes(self, fresh_db):
        assert check_ingredient("새우튀김", ["milk"]) == []

    def test_multiple_allergens(self, fresh_db):
        assert check_ingredient("치즈 계란말이", ["eggs", "milk"]) == ["eggs", "milk"]

    def test_blank_inputs(self, fresh_db):
        assert check_ingredient("  ", ["milk"]) == []
        assert check_ingredient("우유", []) == []


class TestVerifier:
    def test_match(self, fresh_db):
        check = asyncio.run(AllergenDBVerifier().verify_item(_item(ingredients=["새우", "밥"]), ["shellfish"]))
        assert check.is_dangerous
        assert check.matched_allergens == ("shellfish",)
        assert check.verified and check.checked

    def test_no_ingredients_short_circuit(self, fresh_db):
        check = asyncio.run(AllergenDBVerifier().verify_item(_item(), ["shellfish"]))
        assert not check.is_dangerous
        assert not check.checked
        assert check.verified

    def test_no_allergies_short_circuit(self, fresh_db):
        check = asyncio.run(AllergenDBVerifier().verify_item(_item(ingredients=["새우"]), []))
        assert not check.checked

    def test_verify_items_order(self, fresh_db):
        items = [_item("a", ["밥"]), _item("b", ["고등어 구이"]), _item("c")]
        checks = asyncio.run(AllergenDBVerifier().verify_items(items, ["fish"]))
        assert [c.matched_allergens for c in checks] == [(), ("fish",), ()]
        assert [c.checked for c in checks] == [True, True, False]

    def test_db_failure_fails_open_but_unverified(self, fresh_db, monkeypatch):
        def boom(name, codes):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(allergen_db, "check_ingredient", boom)
        check = asyncio.run(AllergenDBVerifier().verify_item(_item(ingredients=["새우"]), ["shellfish"]))
        assert check.is_dangerous is False
        assert check.verified is False
        assert check.checked is True
