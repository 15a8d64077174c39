"""
Locale context for user-facing strings (quick summaries, staff questions,
escalation rationale, final summary).

A Locale is an explicit value passed to whatever needs to localize text; there
is no module-level "current language". Catalogs exist for ko and en; ja/zh/es
requests are accepted and served from the English catalog.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

SUPPORTED_LANGUAGES = ("ko", "en", "ja", "zh", "es")
DEFAULT_LANGUAGE = "ko"

_CATALOG_FALLBACK = {"ja": "en", "zh": "en", "es": "en"}

LANGUAGE_NAMES = {
    "ko": "Korean",
    "en": "English",
    "ja": "Japanese",
    "zh": "Chinese",
    "es": "Spanish",
}

# ────────────────────────────────────────────────
# Labels
# ────────────────────────────────────────────────

ALLERGY_LABELS: Dict[str, Dict[str, str]] = {
    "ko": {
        "eggs": "계란",
        "milk": "우유/유제품",
        "peanuts": "땅콩",
        "tree_nuts": "견과류",
        "fish": "생선",
        "shellfish": "갑각류/조개류",
        "wheat": "밀/글루텐",
        "soy": "대두",
        "sesame": "참깨",
        "pork": "돼지고기",
        "beef": "소고기",
        "chicken": "닭고기",
        "lamb": "양고기",
        "buckwheat": "메밀",
        "peach": "복숭아",
        "tomato": "토마토",
        "sulfites": "아황산염",
        "mustard": "겨자",
        "celery": "셀러리",
        "lupin": "루핀",
        "mollusks": "연체류",
        "alcohol": "알코올",
    },
    "en": {
        "eggs": "Eggs",
        "milk": "Milk/Dairy",
        "peanuts": "Peanuts",
        "tree_nuts": "Tree nuts",
        "fish": "Fish",
        "shellfish": "Shellfish",
        "wheat": "Wheat/Gluten",
        "soy": "Soy",
        "sesame": "Sesame",
        "pork": "Pork",
        "beef": "Beef",
        "chicken": "Chicken",
        "lamb": "Lamb",
        "buckwheat": "Buckwheat",
        "peach": "Peach",
        "tomato": "Tomato",
        "sulfites": "Sulfites",
        "mustard": "Mustard",
        "celery": "Celery",
        "lupin": "Lupin",
        "mollusks": "Mollusks",
        "alcohol": "Alcohol",
    },
}

DIET_LABELS: Dict[str, Dict[str, str]] = {
    "ko": {
        "vegetarian": "채식주의",
        "vegan": "비건",
        "lacto_vegetarian": "락토 채식",
        "ovo_vegetarian": "오보 채식",
        "pesco_vegetarian": "페스코 채식",
        "flexitarian": "플렉시테리언",
        "halal": "할랄",
        "kosher": "코셔",
        "buddhist_vegetarian": "불교 채식",
        "gluten_free": "글루텐 프리",
        "pork_free": "돼지고기 제외",
        "alcohol_free": "무알코올",
        "garlic_onion_free": "마늘/양파 제외",
    },
    "en": {
        "vegetarian": "Vegetarian",
        "vegan": "Vegan",
        "lacto_vegetarian": "Lacto-vegetarian",
        "ovo_vegetarian": "Ovo-vegetarian",
        "pesco_vegetarian": "Pescatarian",
        "flexitarian": "Flexitarian",
        "halal": "Halal",
        "kosher": "Kosher",
        "buddhist_vegetarian": "Buddhist vegetarian",
        "gluten_free": "Gluten-free",
        "pork_free": "Pork-free",
        "alcohol_free": "Alcohol-free",
        "garlic_onion_free": "No garlic/onion",
    },
}

# ────────────────────────────────────────────────
# Messages
# ────────────────────────────────────────────────

MESSAGES: Dict[str, Dict[str, str]] = {
    "ko": {
        "quick.ocr_failed": "텍스트 인식에 실패했습니다. AI 분석 결과를 기다려주세요.",
        "quick.text_too_short": "메뉴 정보가 충분하지 않습니다. 직원에게 확인하세요.",
        "quick.danger": "{labels} 포함 가능성이 높습니다. 직원에게 확인하세요.",
        "quick.safe": "1차 검사 결과 위험 요소가 감지되지 않았습니다. 최종 분석을 기다려주세요.",

        "question.allergy.shellfish": "이 요리에 새우, 게, 랍스터 등 갑각류가 들어가나요?",
        "question.allergy.pork": "육수나 조미료에 돼지고기가 들어가나요?",
        "question.allergy.eggs": "이 요리에 계란이 들어가나요?",
        "question.allergy.milk": "이 요리에 우유나 유제품이 들어가나요?",
        "question.allergy.default": "이 요리에 {label}이(가) 들어가나요?",
        "question.diet.halal": "이 요리는 할랄 인증을 받았나요? 돼지고기나 알코올이 없나요?",
        "question.diet.vegan": "이 요리에 동물성 재료(고기/달걀/우유/꿀)가 전혀 없나요?",
        "question.diet.vegetarian": "이 요리에 고기나 해산물이 들어가나요?",
        "question.diet.lacto_vegetarian": "이 요리에 고기, 생선, 계란이 들어가나요?",
        "question.diet.ovo_vegetarian": "이 요리에 고기, 생선, 유제품이 들어가나요?",
        "question.diet.pesco_vegetarian": "이 요리에 고기나 닭고기가 들어가나요?",
        "question.diet.flexitarian": "이 요리에 고기나 해산물이 들어가나요?",
        "question.diet.kosher": "이 요리는 코셔 규정을 따르나요?",
        "question.diet.buddhist_vegetarian": "이 요리에 고기나 마늘/양파가 들어가나요?",
        "question.diet.gluten_free": "이 요리에 밀가루나 글루텐이 들어가나요?",
        "question.diet.pork_free": "이 요리에 돼지고기나 돼지 육수가 들어가나요?",
        "question.diet.alcohol_free": "이 요리에 알코올(술, 와인 등)이 들어가나요?",
        "question.diet.garlic_onion_free": "이 요리에 마늘이나 양파가 들어가나요?",
        "question.diet.default": "이 요리의 재료를 확인해주시겠어요?",
        "question.profile_allergies": "이 요리에 {labels} 등이 들어가나요?",
        "question.profile_diet": "이 요리가 {diet} 식단에 적합한가요?",
        "question.generic": "이 요리의 주요 재료를 알려주시겠어요?",

        "escalation.db_match": "알레르기 DB 확인 결과 {labels} 성분이 감지되었습니다.",

        "final.summary.SAFE": "분석한 메뉴에서 위험 요소가 발견되지 않았습니다.",
        "final.summary.CAUTION": "주의가 필요한 메뉴가 있습니다. 직원에게 확인하세요.",
        "final.summary.DANGER": "위험한 메뉴가 있습니다. 섭취 전 반드시 직원에게 확인하세요.",
        "final.summary.EMPTY": "메뉴를 찾지 못했습니다. 다시 촬영해 주세요.",
    },
    "en": {
        "quick.ocr_failed": "We couldn't read the text. Please wait for the AI analysis.",
        "quick.text_too_short": "Not enough menu text was found. Please check with the staff.",
        "quick.danger": "This menu likely contains {labels}. Please check with the staff.",
        "quick.safe": "No risks were detected in the first check. Please wait for the final analysis.",

        "question.allergy.shellfish": "Does this dish contain shellfish such as shrimp, crab or lobster?",
        "question.allergy.pork": "Is there any pork in the broth or seasoning?",
        "question.allergy.eggs": "Does this dish contain eggs?",
        "question.allergy.milk": "Does this dish contain milk or dairy?",
        "question.allergy.default": "Does this dish contain {label}?",
        "question.diet.halal": "Is this dish halal certified, with no pork or alcohol?",
        "question.diet.vegan": "Is this dish completely free of animal products (meat, eggs, milk, honey)?",
        "question.diet.vegetarian": "Does this dish contain meat or seafood?",
        "question.diet.lacto_vegetarian": "Does this dish contain meat, fish or eggs?",
        "question.diet.ovo_vegetarian": "Does this dish contain meat, fish or dairy?",
        "question.diet.pesco_vegetarian": "Does this dish contain meat or chicken?",
        "question.diet.flexitarian": "Does this dish contain meat or seafood?",
        "question.diet.kosher": "Does this dish follow kosher rules?",
        "question.diet.buddhist_vegetarian": "Does this dish contain meat, garlic or onion?",
        "question.diet.gluten_free": "Does this dish contain flour or gluten?",
        "question.diet.pork_free": "Does this dish contain pork or pork broth?",
        "question.diet.alcohol_free": "Does this dish contain alcohol (liquor, wine, etc.)?",
        "question.diet.garlic_onion_free": "Does this dish contain garlic or onion?",
        "question.diet.default": "Could you tell me the ingredients of this dish?",
        "question.profile_allergies": "Does this dish contain {labels}?",
        "question.profile_diet": "Is this dish suitable for a {diet} diet?",
        "question.generic": "Could you tell me the main ingredients of this dish?",

        "escalation.db_match": "The allergen database flagged {labels} in the ingredients.",

        "final.summary.SAFE": "No risks were found in the analyzed menu.",
        "final.summary.CAUTION": "Some dishes need attention. Please check with the staff.",
        "final.summary.DANGER": "Some dishes are dangerous for you. Check with the staff before eating.",
        "final.summary.EMPTY": "No menu items were found. Please retake the photo.",
    },
}


def normalize_language(code: Optional[str]) -> str:
    c = (code or "").strip().lower().replace("_", "-").split("-")[0]
    return c if c in SUPPORTED_LANGUAGES else DEFAULT_LANGUAGE


@dataclass(frozen=True)
class Locale:
    code: str = DEFAULT_LANGUAGE

    @classmethod
    def resolve(cls, code: Optional[str]) -> "Locale":
        return cls(normalize_language(code))

    @property
    def catalog(self) -> str:
        return _CATALOG_FALLBACK.get(self.code, self.code if self.code in MESSAGES else DEFAULT_LANGUAGE)

    @property
    def language_name(self) -> str:
        return LANGUAGE_NAMES.get(self.code, "Korean")

    def has(self, key: str) -> bool:
        return key in MESSAGES[self.catalog]

    def t(self, key: str, **kwargs: object) -> str:
        text = MESSAGES[self.catalog].get(key) or MESSAGES[DEFAULT_LANGUAGE][key]
        return text.format(**kwargs) if kwargs else text

    def allergy_label(self, code: str) -> str:
        return ALLERGY_LABELS[self.catalog].get(code, code)

    def diet_label(self, code: str) -> str:
        return DIET_LABELS[self.catalog].get(code, code)

    def join(self, labels) -> str:
        return ", ".join(labels)
