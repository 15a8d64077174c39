"""
Quick (keyword) safety check tests.

Covers:
  - OCR failure and empty text -> CAUTION [_OCR_FAILED], low confidence
  - Text under 10 characters -> CAUTION [_TEXT_TOO_SHORT], medium confidence
  - Allergy keyword hit -> DANGER with localized label and specific staff question
  - Diet keyword hit -> _DIET_<code> trigger
  - Allergy triggers come before diet triggers, in profile order
  - No hits -> SAFE, confidence follows the OCR tier
  - Allergies the user does not have are never reported
  - English locale
  - UserSafetyContext.build normalisation
"""

from __future__ import annotations

from safescan.i18n import Locale
from safescan.quick_analyzer import quick_analyze, scan_keywords, staff_question
from safescan.scan_types import CAUTION, DANGER, SAFE, UserSafetyContext

KO = Locale.resolve("ko")
EN = Locale.resolve("en")

MENU_TEXT = "오늘의 메뉴\n크림 파스타 12,000원\n김치볶음밥 9,000원"


class TestFallbackRules:
    def test_ocr_failed(self):
        ctx = UserSafetyContext.build(["milk"])
        v = quick_analyze("anything", ctx, KO, ocr_failed=True)
        assert v.level == CAUTION
        assert v.trigger_codes == ("_OCR_FAILED",)
        assert v.confidence == "low"

    def test_empty_text_counts_as_failed(self):
        v = quick_analyze("   \n ", UserSafetyContext.build(["milk"]), KO)
        assert v.trigger_codes == ("_OCR_FAILED",)

    def test_text_too_short(self):
        v = quick_analyze("김치찌개", UserSafetyContext.build(["shellfish"]), KO)
        assert v.level == CAUTION
        assert v.trigger_codes == ("_TEXT_TOO_SHORT",)
        assert v.confidence == "medium"
        assert v.question_for_staff

    def test_short_text_wins_over_keywords(self):
        v = quick_analyze("우유", UserSafetyContext.build(["milk"]), KO)
        assert v.trigger_codes == ("_TEXT_TOO_SHORT",)


class TestKeywordHits:
    def test_milk_danger(self):
        v = quick_analyze(MENU_TEXT, UserSafetyContext.build(["milk"]), KO)
        assert v.level == DANGER
        assert v.trigger_codes == ("milk",)
        assert v.trigger_labels == ("우유/유제품",)
        assert v.confidence == "high"
        assert v.question_for_staff == KO.t("question.allergy.milk")
        assert "우유/유제품" in v.summary

    def test_diet_trigger_prefix(self):
        v = quick_analyze("삼겹살 정식 15,000원 돼지고기 구이", UserSafetyContext.build([], ["halal"]), KO)
        assert v.level == DANGER
        assert v.trigger_codes == ("_DIET_halal",)
        assert v.trigger_labels == ("할랄",)
        assert v.question_for_staff == KO.t("question.diet.halal")

    def test_allergies_before_diets(self):
        text = "새우튀김 우동 8,000원\n돼지국밥 9,000원"
        ctx = UserSafetyContext.build(["shellfish", "pork"], ["halal"])
        v = quick_analyze(text, ctx, KO)
        assert v.trigger_codes == ("shellfish", "pork", "_DIET_halal")
        assert v.question_for_staff == KO.t("question.allergy.shellfish")

    def test_only_user_allergies_reported(self):
        v = quick_analyze(MENU_TEXT, UserSafetyContext.build(["peanuts"]), KO)
        assert v.level == SAFE
        assert v.trigger_codes == ()

    def test_case_insensitive(self):
        allergy_hits, _ = scan_keywords("Fresh CHEESE burger", ["milk"], [])
        assert allergy_hits == ["milk"]

    def test_default_allergy_question(self):
        q = staff_question(["sesame"], [], UserSafetyContext.build(["sesame"]), KO)
        assert q == KO.t("question.allergy.default", label="참깨")


class TestSafeAndLocale:
    def test_safe_uses_ocr_tier(self):
        v = quick_analyze(MENU_TEXT, UserSafetyContext.build(["peanuts"]), KO, ocr_confidence="medium")
        assert v.level == SAFE
        assert v.confidence == "medium"

    def test_safe_with_empty_profile(self):
        v = quick_analyze(MENU_TEXT, UserSafetyContext(), KO)
        assert v.level == SAFE
        assert v.question_for_staff == KO.t("question.generic")

    def test_english_labels(self):
        v = quick_analyze("Shrimp fried rice with egg", UserSafetyContext.build(["eggs", "shellfish"]), EN)
        assert v.trigger_labels == ("Eggs", "Shellfish")
        assert v.summary.startswith("This menu likely contains")

    def test_unsupported_locale_falls_back(self):
        assert Locale.resolve("fr").code == "ko"
        assert Locale.resolve("ja").catalog == "en"

    def test_to_dict_keys(self):
        d = quick_analyze(MENU_TEXT, UserSafetyContext.build(["milk"]), KO).to_dict()
        assert set(d) == {"level", "summaryText", "triggerCodes", "triggerLabels", "questionForStaff", "confidence"}


class TestContextBuild:
    def test_dedupes_and_lowercases(self):
        ctx = UserSafetyContext.build(["Milk", ("milk", "severe"), {"code": "eggs", "severity": "severe"}],
                                      ["Vegan", "vegan"])
        assert ctx.allergy_codes == ("milk", "eggs")
        assert ctx.severity_of("milk") == "moderate"
        assert ctx.severity_of("eggs") == "severe"
        assert ctx.diets == ("vegan",)

    def test_unknown_severity_defaults(self):
        ctx = UserSafetyContext.build([("fish", "extreme")])
        assert ctx.severity_of("fish") == "moderate"
