# safescan/ai_analyzer.py
"""
AI Menu Analysis — sends the menu photo plus the user's allergy/diet profile to a
multimodal model and gets structured per-item verdicts back.

Providers (SAFESCAN_AI_PROVIDER):
- gemini (default): google-generativeai, JSON response mime type
- claude: anthropic Messages API with an image content block

Besides the full analysis every analyzer offers two one-word judgments:
- fast_judgment: text-only SAFE/CAUTION/DANGER from OCR tokens (raced on the PARTIAL path)
- classify_stream: streamed S/D classifier over image + tokens (NDJSON mode)

Both clients are created lazily from their API key env var. Raw model text goes
through safescan.contracts.parse_menu_payload; a contract failure raises
AIResponseError with the contract's error code. Upstream failures map to
UpstreamRateLimited / UpstreamTimeout / AIServiceError.

Usage:
    from safescan.ai_analyzer import build_ai_analyzer

    analyzer = build_ai_analyzer()
    result = await analyzer.analyze(image_bytes, "image/jpeg", context, locale, ocr_text)
    # result.items -> List[MenuItemVerdict]
"""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, List, Optional, Tuple

import anthropic
import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from . import settings
from .contracts import parse_menu_payload
from .errors import AIResponseError, AIServiceError, UpstreamRateLimited, UpstreamTimeout
from .i18n import ALLERGY_LABELS, DIET_LABELS, Locale
from .scan_types import CAUTION, DANGER, SAFE, MenuItemVerdict, UserSafetyContext

log = logging.getLogger(__name__)

MAX_HINT_TOKENS = 60
MAX_TOKEN_CHARS = 50

# ---------------------------------------------------------------------------
# OCR hints
# ---------------------------------------------------------------------------
_TOKEN_SPLIT = re.compile(r"[,\n\r/()\[\]|·•\-\t]+")
_PRICE = re.compile(r"[₩$€¥]?[ \t]*\d[\d,.]*[ \t]*(?:원|won)?", re.I)


def extract_menu_tokens(ocr_text: Optional[str], limit: int = MAX_HINT_TOKENS) -> List[str]:
    """Candidate dish/ingredient tokens from OCR text (no prices, no bare numbers)."""
    out: List[str] = []
    for raw in _TOKEN_SPLIT.split(_PRICE.sub(" ", ocr_text or "")):
        tok = raw.strip()
        if not (1 <= len(tok) <= MAX_TOKEN_CHARS):
            continue
        if tok not in out:
            out.append(tok)
        if len(out) >= limit:
            break
    return out


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------
DIET_RULES = {
    "vegetarian": "No meat, poultry, fish or seafood (including broths and fish sauce).",
    "vegan": "No animal products at all: meat, fish, seafood, eggs, dairy, honey, gelatin.",
    "lacto_vegetarian": "No meat, fish, seafood or eggs. Dairy is allowed.",
    "ovo_vegetarian": "No meat, fish, seafood or dairy. Eggs are allowed.",
    "pesco_vegetarian": "No meat or poultry. Fish and seafood are allowed.",
    "flexitarian": "Mostly plant-based; flag dishes centred on meat.",
    "halal": "No pork or pork derivatives, no alcohol, no non-halal meat.",
    "kosher": "No pork, no shellfish, no mixing of meat and dairy.",
    "buddhist_vegetarian": "No meat or fish and no pungent vegetables: garlic, onion, green onion, chives, leek.",
    "gluten_free": "No wheat, barley, rye or gluten-containing sauces (soy sauce, gochujang may contain wheat).",
    "pork_free": "No pork, bacon, ham or pork broth.",
    "alcohol_free": "No alcohol, including cooking wine and mirin.",
    "garlic_onion_free": "No garlic, onion, green onion, leek or chives.",
}

_SYSTEM_PROMPT = """\
You are a food-safety assistant for travellers with food allergies and dietary \
restrictions. You receive a photo of a restaurant menu, the traveller's allergy \
and diet profile, and OCR text hints from the same photo.

For every dish on the menu:
- "id": stable id string ("1", "2", ...)
- "original_name": dish name exactly as written on the menu
- "translated_name": dish name translated into the target language
- "price": price as written, or null
- "description": one short sentence in the target language, or null
- "ingredients": likely ingredients (short nouns, in the menu's language)
- "allergens": allergy codes from the user's list that this dish likely contains
- "diet_violations": diet codes from the user's list that this dish violates
- "status": "DANGER" if it contains a listed allergen or violates a diet,
  "CAUTION" if hidden ingredients (sauces, broths, seasoning) could contain one,
  otherwise "SAFE"
- "reason": one sentence in the target language explaining the status

Output ONLY valid JSON: {"overall_status": "...", "results": [...]}
No markdown, no explanation.\
"""


def build_prompt(context: UserSafetyContext, locale: Locale, ocr_text: Optional[str]) -> str:
    allergies = ", ".join(
        f"{code} ({ALLERGY_LABELS['en'].get(code, code)}, {sev})" for code, sev in context.allergies
    ) or "none"
    diet_lines = "\n".join(
        f"- {code} ({DIET_LABELS['en'].get(code, code)}): {DIET_RULES.get(code, 'Follow this diet strictly.')}"
        for code in context.diets
    ) or "- none"
    hints = extract_menu_tokens(ocr_text)
    hint_text = ", ".join(hints) if hints else "(no OCR text available, read the image)"
    return (
        f"Target language: {locale.language_name} ({locale.code})\n"
        f"User allergies: {allergies}\n"
        f"User diet rules:\n{diet_lines}\n"
        f"OCR hints: {hint_text}\n"
        "Analyze every dish on this menu."
    )


# ---------------------------------------------------------------------------
# One-word judgments (fast text race, streaming S/D classifier)
# ---------------------------------------------------------------------------
FAST_TOKEN_LIMIT = 30

_DIET_DANGER_RULES = """\
- vegetarian: DANGER if contains meat/poultry/fish/seafood
- vegan: DANGER if contains any animal product (meat/dairy/eggs/honey)
- lacto_vegetarian: DANGER if contains meat/poultry/fish/seafood/eggs
- ovo_vegetarian: DANGER if contains meat/poultry/fish/seafood/dairy
- pesco_vegetarian: DANGER if contains meat/poultry
- flexitarian: DANGER if contains meat/poultry/fish/seafood
- halal: DANGER if contains pork/alcohol
- kosher: DANGER if contains pork/shellfish
- buddhist_vegetarian: DANGER if contains meat/poultry/fish/seafood/garlic/onion
- gluten_free: DANGER if contains wheat/gluten/flour
- pork_free: DANGER if contains pork
- alcohol_free: DANGER if contains alcohol
- garlic_onion_free: DANGER if contains garlic/onion"""


def build_fast_prompt(context: UserSafetyContext, ocr_text: Optional[str]) -> str:
    """Text-only SAFE/CAUTION/DANGER prompt (no image)."""
    tokens = extract_menu_tokens(ocr_text, limit=FAST_TOKEN_LIMIT)
    return (
        "Classify food safety. Output ONLY one word: SAFE, CAUTION, or DANGER.\n\n"
        f"ALLERGIES: {', '.join(context.allergy_codes) or 'None'}\n"
        f"DIET: {', '.join(context.diets) or 'None'}\n"
        f"MENU_TOKENS: {', '.join(tokens) or 'None'}\n\n"
        "ALLERGY RULES:\n"
        "- DANGER: any token matches allergy (direct or ingredient)\n"
        "- CAUTION: possible hidden allergen or cross-contamination\n"
        "- SAFE: no allergen detected\n\n"
        f"DIET RULES:\n{_DIET_DANGER_RULES}\n\n"
        "OUTPUT:"
    )


def build_classifier_prompt(context: UserSafetyContext, ocr_text: Optional[str]) -> str:
    """Image + tokens prompt for the streamed single-character S/D classifier."""
    tokens = extract_menu_tokens(ocr_text)
    return (
        "You are a food safety classifier for allergies AND dietary restrictions.\n\n"
        "DECISION RULES (strictly follow):\n"
        "- D: at least one token directly matches a user allergy\n"
        "- D: a token violates a user diet (e.g. meat for vegetarian, pork for halal)\n"
        "- S: no direct match and no diet violation\n\n"
        f"DIET RESTRICTION RULES:\n{_DIET_DANGER_RULES.replace('DANGER if', 'D if')}\n\n"
        "OUTPUT RULES:\n"
        "- Output ONLY one character: S or D\n"
        "- S = SAFE, D = DANGER\n"
        "- NO explanation, NO reasoning, NO additional text\n\n"
        f"User allergies: {', '.join(context.allergy_codes) or 'None'}\n"
        f"User diets: {', '.join(context.diets) or 'None'}\n"
        f"Menu ingredients: {', '.join(tokens) or 'None'}\n\n"
        "Classification:"
    )


def parse_fast_status(raw: Optional[str]) -> str:
    """SAFE only when the answer says nothing else; anything unclear is CAUTION."""
    text = (raw or "").strip().upper()
    if "DANGER" in text:
        return DANGER
    if "SAFE" in text and "CAUTION" not in text:
        return SAFE
    return CAUTION


def parse_classifier_status(raw: Optional[str]) -> str:
    """First S/D letter wins; no letter at all is DANGER."""
    m = re.search(r"[SD]", (raw or "").strip().upper())
    if m is None:
        log.warning("Classifier answer unreadable, treating as DANGER: %r", raw)
        return DANGER
    return SAFE if m.group(0) == "S" else DANGER


# ---------------------------------------------------------------------------
# Analyzers
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class AIResult:
    items: List[MenuItemVerdict]
    prompt_chars: int
    provider: str


class AIAnalyzer:
    """
    Boundary to a generative model. Subclasses implement:
      _complete(prompt, image, mime)   full menu analysis, raw JSON text
      _complete_text(prompt)           short text-only answer (fast judgment)
      _stream(prompt, image, mime)     async iterator of text chunks (S/D classifier)
    """

    name = "base"

    def __init__(self, *, timeout_s: float = settings.AI_HARD_TIMEOUT_S):
        self.timeout_s = timeout_s

    async def _complete(self, prompt: str, image_bytes: bytes, mime_type: str) -> str:
        raise NotImplementedError

    async def _complete_text(self, prompt: str) -> str:
        raise NotImplementedError

    def _stream(self, prompt: str, image_bytes: bytes, mime_type: str) -> AsyncIterator[str]:
        raise NotImplementedError

    def _map_error(self, exc: Exception) -> Exception:
        return AIServiceError()

    async def _call(self, coro, what: str) -> str:
        try:
            return await asyncio.wait_for(coro, self.timeout_s)
        except asyncio.TimeoutError as e:
            log.warning("%s %s timed out after %ss", self.name, what, self.timeout_s)
            raise UpstreamTimeout() from e
        except (AIServiceError, UpstreamRateLimited, UpstreamTimeout):
            raise
        except Exception as e:
            mapped = self._map_error(e)
            log.warning("%s %s failed: %s: %s", self.name, what, type(e).__name__, e)
            raise mapped from e

    async def analyze(
        self,
        image_bytes: bytes,
        mime_type: str,
        context: UserSafetyContext,
        locale: Locale,
        ocr_text: Optional[str] = None,
    ) -> AIResult:
        prompt = build_prompt(context, locale, ocr_text)
        raw = await self._call(self._complete(prompt, image_bytes, mime_type), "analysis")

        items, err = parse_menu_payload(raw)
        if err is not None:
            log.warning("%s payload rejected (%s): %s", self.name, err.code, err.detail)
            raise AIResponseError(error_code=err.code)
        items = items or []
        log.info("%s returned %d menu items", self.name, len(items))
        return AIResult(items=items, prompt_chars=len(_SYSTEM_PROMPT) + len(prompt), provider=self.name)

    async def fast_judgment(self, context: UserSafetyContext, ocr_text: Optional[str]) -> str:
        """Overall SAFE/CAUTION/DANGER from OCR tokens alone."""
        prompt = build_fast_prompt(context, ocr_text)
        raw = await self._call(self._complete_text(prompt), "fast judgment")
        status = parse_fast_status(raw)
        log.info("%s fast judgment: %s (raw=%r)", self.name, status, raw)
        return status

    async def classify_stream(
        self,
        image_bytes: bytes,
        mime_type: str,
        context: UserSafetyContext,
        ocr_text: Optional[str],
    ) -> AsyncIterator[str]:
        """Yield the classifier's text chunks as they arrive. Upstream errors are mapped."""
        prompt = build_classifier_prompt(context, ocr_text)
        try:
            async for chunk in self._stream(prompt, image_bytes, mime_type):
                if chunk:
                    yield chunk
        except (AIServiceError, UpstreamRateLimited, UpstreamTimeout):
            raise
        except Exception as e:
            log.warning("%s classifier stream failed: %s: %s", self.name, type(e).__name__, e)
            raise self._map_error(e) from e


class GeminiAnalyzer(AIAnalyzer):
    name = "gemini"

    def __init__(self, *, model: str = settings.GEMINI_MODEL, fast_model: str = settings.GEMINI_FAST_MODEL,
                 api_key: Optional[str] = None, **kw: Any):
        super().__init__(**kw)
        self.model_name = model
        self.fast_model_name = fast_model
        self._api_key = api_key
        self._configured = False
        self._model = None
        self._fast_model = None
        self._classifier_model = None

    def _configure(self) -> None:
        """Raises AIServiceError if no API key."""
        if self._configured:
            return
        api_key = (self._api_key or os.environ.get("GEMINI_API_KEY", "")).strip()
        if not api_key:
            raise AIServiceError("AI 분석 서비스가 설정되지 않았습니다.")
        genai.configure(api_key=api_key)
        self._configured = True

    def _get_model(self):
        if self._model is None:
            self._configure()
            self._model = genai.GenerativeModel(
                self.model_name,
                system_instruction=_SYSTEM_PROMPT,
                generation_config={"response_mime_type": "application/json", "temperature": 0.1},
            )
        return self._model

    def _get_fast_model(self):
        if self._fast_model is None:
            self._configure()
            self._fast_model = genai.GenerativeModel(
                self.fast_model_name,
                generation_config={"max_output_tokens": 10, "temperature": 0},
            )
        return self._fast_model

    def _get_classifier_model(self):
        if self._classifier_model is None:
            self._configure()
            self._classifier_model = genai.GenerativeModel(
                self.fast_model_name,
                generation_config={
                    "max_output_tokens": 3,
                    "temperature": 0,
                    "top_p": 1,
                    "top_k": 1,
                    "stop_sequences": ["\n"],
                },
            )
        return self._classifier_model

    async def _complete(self, prompt: str, image_bytes: bytes, mime_type: str) -> str:
        model = self._get_model()
        response = await model.generate_content_async(
            [prompt, {"mime_type": mime_type, "data": image_bytes}]
        )
        return response.text

    async def _complete_text(self, prompt: str) -> str:
        response = await self._get_fast_model().generate_content_async(prompt)
        return response.text

    async def _stream(self, prompt: str, image_bytes: bytes, mime_type: str) -> AsyncIterator[str]:
        model = self._get_classifier_model()
        response = await model.generate_content_async(
            [prompt, {"mime_type": mime_type, "data": image_bytes}], stream=True
        )
        async for chunk in response:
            # finish-only chunks carry no parts and .text would raise
            if chunk.parts:
                yield chunk.text

    def _map_error(self, exc: Exception) -> Exception:
        if isinstance(exc, google_exceptions.ResourceExhausted):
            return UpstreamRateLimited(retry_after=settings.RATE_LIMIT_RETRY_AFTER_S)
        if isinstance(exc, google_exceptions.DeadlineExceeded):
            return UpstreamTimeout()
        return AIServiceError()


def _joined_text(message) -> str:
    resp_text = ""
    for block in message.content:
        if hasattr(block, "text"):
            resp_text += block.text
    return resp_text


def _image_block(image_bytes: bytes, mime_type: str) -> dict:
    return {"type": "image", "source": {
        "type": "base64",
        "media_type": mime_type,
        "data": base64.b64encode(image_bytes).decode("ascii"),
    }}


class ClaudeAnalyzer(AIAnalyzer):
    name = "claude"

    def __init__(self, *, model: str = settings.CLAUDE_MODEL, fast_model: str = settings.CLAUDE_FAST_MODEL,
                 api_key: Optional[str] = None, max_tokens: int = 8000, **kw: Any):
        super().__init__(**kw)
        self.model_name = model
        self.fast_model_name = fast_model
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._client = None

    def _get_client(self):
        """Lazy-init Anthropic client. Raises AIServiceError if no API key."""
        if self._client is not None:
            return self._client
        api_key = (self._api_key or os.environ.get("ANTHROPIC_API_KEY", "")).strip()
        if not api_key:
            raise AIServiceError("AI 분석 서비스가 설정되지 않았습니다.")
        self._client = anthropic.AsyncAnthropic(api_key=api_key)
        return self._client

    async def _complete(self, prompt: str, image_bytes: bytes, mime_type: str) -> str:
        client = self._get_client()
        message = await client.messages.create(
            model=self.model_name,
            max_tokens=self.max_tokens,
            system=_SYSTEM_PROMPT,
            messages=[{
                "role": "user",
                "content": [_image_block(image_bytes, mime_type), {"type": "text", "text": prompt}],
            }],
        )
        return _joined_text(message)

    async def _complete_text(self, prompt: str) -> str:
        message = await self._get_client().messages.create(
            model=self.fast_model_name,
            max_tokens=10,
            temperature=0,
            messages=[{"role": "user", "content": prompt}],
        )
        return _joined_text(message)

    async def _stream(self, prompt: str, image_bytes: bytes, mime_type: str) -> AsyncIterator[str]:
        client = self._get_client()
        async with client.messages.stream(
            model=self.fast_model_name,
            max_tokens=3,
            temperature=0,
            messages=[{
                "role": "user",
                "content": [_image_block(image_bytes, mime_type), {"type": "text", "text": prompt}],
            }],
        ) as stream:
            async for text in stream.text_stream:
                yield text

    def _map_error(self, exc: Exception) -> Exception:
        if isinstance(exc, anthropic.RateLimitError):
            return UpstreamRateLimited(retry_after=settings.RATE_LIMIT_RETRY_AFTER_S)
        if isinstance(exc, anthropic.APITimeoutError):
            return UpstreamTimeout()
        return AIServiceError()


def build_ai_analyzer(provider: str = settings.AI_PROVIDER) -> AIAnalyzer:
    if provider == "claude":
        return ClaudeAnalyzer()
    return GeminiAnalyzer()


def configured_provider(provider: str = settings.AI_PROVIDER) -> Tuple[str, str]:
    """(provider, 'configured'|'missing_key') for health reporting."""
    env = "ANTHROPIC_API_KEY" if provider == "claude" else "GEMINI_API_KEY"
    return provider, ("configured" if os.environ.get(env, "").strip() else "missing_key")
