"""
AI analyzer tests (provider clients replaced with in-process fakes).

Covers:
  - OCR hint tokens drop prices and bare numbers, dedupe, respect the limit
  - Prompt carries allergies with severity, diet rules and target language
  - Gemini: ResourceExhausted -> 429, DeadlineExceeded -> 504, other -> GEMINI_API_ERROR
  - Gemini: missing key -> AIServiceError without any network call
  - Claude: text blocks concatenated and parsed
  - Hard timeout -> UpstreamTimeout
  - Contract violation -> AIResponseError with the contract code
  - Fast judgment: one word parsed, unclear answers are CAUTION
  - Streamed S/D classifier: chunks passed through, no letter means DANGER
"""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import pytest
from google.api_core import exceptions as google_exceptions

from safescan.ai_analyzer import (
    AIAnalyzer,
    ClaudeAnalyzer,
    GeminiAnalyzer,
    build_ai_analyzer,
    build_classifier_prompt,
    build_fast_prompt,
    build_prompt,
    extract_menu_tokens,
    parse_classifier_status,
    parse_fast_status,
)
from safescan.errors import AIResponseError, AIServiceError, UpstreamRateLimited, UpstreamTimeout
from safescan.i18n import Locale
from safescan.scan_types import UserSafetyContext

PAYLOAD = json.dumps({"overall_status": "SAFE", "results": [
    {"id": "1", "original_name": "비빔밥", "translated_name": "Bibimbap", "status": "CAUTION",
     "reason": "Gochujang may contain wheat.", "ingredients": ["밥", "고추장"], "allergens": ["wheat"]},
]}, ensure_ascii=False)

CTX = UserSafetyContext.build([("wheat", "severe")], ["vegan"])
EN = Locale.resolve("en")


class _FakeGeminiModel:
    def __init__(self, text=None, exc=None):
        self.text = text
        self.exc = exc
        self.calls = []

    async def generate_content_async(self, parts):
        self.calls.append(parts)
        if self.exc is not None:
            raise self.exc
        return SimpleNamespace(text=self.text)


class _FakeClaudeMessages:
    def __init__(self, blocks):
        self.blocks = blocks

    async def create(self, **kwargs):
        return SimpleNamespace(content=self.blocks)


def _gemini(**model_kw) -> GeminiAnalyzer:
    analyzer = GeminiAnalyzer(api_key="test")
    analyzer._model = _FakeGeminiModel(**model_kw)
    return analyzer


def _run(analyzer: AIAnalyzer):
    return asyncio.run(analyzer.analyze(b"jpeg", "image/jpeg", CTX, EN, "비빔밥 9,000원"))


class TestPrompt:
    def test_tokens(self):
        text = "비빔밥 9,000원\n불고기 / 된장찌개\n12000\n비빔밥"
        assert extract_menu_tokens(text) == ["비빔밥", "불고기", "된장찌개"]

    def test_tokens_limit(self):
        text = "\n".join(f"메뉴 {chr(0xAC00 + i)}" for i in range(100))
        assert len(extract_menu_tokens(text, limit=5)) == 5

    def test_prompt_contents(self):
        prompt = build_prompt(CTX, EN, "비빔밥")
        assert "wheat (Wheat/Gluten, severe)" in prompt
        assert "vegan" in prompt
        assert "Target language: English (en)" in prompt
        assert "비빔밥" in prompt

    def test_prompt_without_ocr(self):
        prompt = build_prompt(UserSafetyContext(), EN, None)
        assert "User allergies: none" in prompt
        assert "read the image" in prompt


class TestGemini:
    def test_success(self):
        analyzer = _gemini(text=PAYLOAD)
        result = _run(analyzer)
        assert result.provider == "gemini"
        assert result.items[0].safety_status == "CAUTION"
        assert result.prompt_chars > 0
        prompt, image = analyzer._model.calls[0]
        assert image == {"mime_type": "image/jpeg", "data": b"jpeg"}

    def test_rate_limited(self):
        with pytest.raises(UpstreamRateLimited) as exc:
            _run(_gemini(exc=google_exceptions.ResourceExhausted("quota")))
        assert exc.value.http_status == 429

    def test_deadline(self):
        with pytest.raises(UpstreamTimeout):
            _run(_gemini(exc=google_exceptions.DeadlineExceeded("slow")))

    def test_other_error(self):
        with pytest.raises(AIServiceError) as exc:
            _run(_gemini(exc=RuntimeError("boom")))
        assert exc.value.error_code == "GEMINI_API_ERROR"

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        with pytest.raises(AIServiceError):
            _run(GeminiAnalyzer())

    def test_contract_violation(self):
        with pytest.raises(AIResponseError) as exc:
            _run(_gemini(text=json.dumps({"results": [{"original_name": "비빔밥", "status": "OK"}]})))
        assert exc.value.error_code == "INVALID_STATUS_VALUE"


class TestClaude:
    def test_blocks_concatenated(self):
        half = len(PAYLOAD) // 2
        analyzer = ClaudeAnalyzer(api_key="test")
        analyzer._client = SimpleNamespace(messages=_FakeClaudeMessages([
            SimpleNamespace(text=PAYLOAD[:half]),
            SimpleNamespace(type="tool_use"),
            SimpleNamespace(text=PAYLOAD[half:]),
        ]))
        result = _run(analyzer)
        assert result.provider == "claude"
        assert result.items[0].allergens == ("wheat",)


class TestTimeoutAndFactory:
    def test_hard_timeout(self):
        class Slow(AIAnalyzer):
            name = "slow"

            async def _complete(self, prompt, image_bytes, mime_type):
                await asyncio.sleep(1)
                return PAYLOAD

        with pytest.raises(UpstreamTimeout):
            _run(Slow(timeout_s=0.01))

    def test_factory(self):
        assert isinstance(build_ai_analyzer("claude"), ClaudeAnalyzer)
        assert isinstance(build_ai_analyzer("gemini"), GeminiAnalyzer)


# ===========================================================================
# One-word judgments
# ===========================================================================

class _FakeTextModel:
    def __init__(self, text=None, exc=None):
        self.text = text
        self.exc = exc
        self.prompts = []

    async def generate_content_async(self, prompt):
        self.prompts.append(prompt)
        if self.exc is not None:
            raise self.exc
        return SimpleNamespace(text=self.text)


class _FakeStreamResponse:
    def __init__(self, chunks, exc=None):
        self.chunks = chunks
        self.exc = exc

    async def __aiter__(self):
        for c in self.chunks:
            yield SimpleNamespace(parts=[c] if c else [], text=c)
        if self.exc is not None:
            raise self.exc


class _FakeStreamingModel:
    def __init__(self, chunks=(), exc=None):
        self.chunks = chunks
        self.exc = exc
        self.stream_flags = []

    async def generate_content_async(self, parts, stream=False):
        self.stream_flags.append(stream)
        return _FakeStreamResponse(self.chunks, self.exc)


class _FakeClaudeStream:
    def __init__(self, chunks):
        self.chunks = chunks

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    @property
    async def text_stream(self):
        for c in self.chunks:
            yield c


async def _collect(agen):
    return [chunk async for chunk in agen]


class TestOneWordParsing:
    @pytest.mark.parametrize("raw, expected", [
        ("SAFE", "SAFE"), (" danger\n", "DANGER"), ("CAUTION", "CAUTION"),
        ("SAFE or CAUTION", "CAUTION"), ("SAFE? DANGER", "DANGER"), ("", "CAUTION"), (None, "CAUTION"),
    ])
    def test_fast_status(self, raw, expected):
        assert parse_fast_status(raw) == expected

    @pytest.mark.parametrize("raw, expected", [
        ("S", "SAFE"), ("d", "DANGER"), (" S\n", "SAFE"), ("", "DANGER"), ("?", "DANGER"), (None, "DANGER"),
    ])
    def test_classifier_status(self, raw, expected):
        assert parse_classifier_status(raw) == expected

    def test_fast_prompt(self):
        prompt = build_fast_prompt(CTX, "\n".join(f"메뉴{chr(0xAC00 + i)}" for i in range(40)))
        assert "ALLERGIES: wheat" in prompt
        assert "DIET: vegan" in prompt
        assert prompt.count("메뉴") == 30
        assert prompt.rstrip().endswith("OUTPUT:")

    def test_classifier_prompt_without_profile(self):
        prompt = build_classifier_prompt(UserSafetyContext(), None)
        assert "User allergies: None" in prompt
        assert "Menu ingredients: None" in prompt


class TestFastJudgment:
    def test_gemini_text_only(self):
        analyzer = GeminiAnalyzer(api_key="test")
        analyzer._fast_model = _FakeTextModel(text="DANGER")
        status = asyncio.run(analyzer.fast_judgment(CTX, "빵 9,000원"))
        assert status == "DANGER"
        assert isinstance(analyzer._fast_model.prompts[0], str)

    def test_gemini_rate_limited(self):
        analyzer = GeminiAnalyzer(api_key="test")
        analyzer._fast_model = _FakeTextModel(exc=google_exceptions.ResourceExhausted("quota"))
        with pytest.raises(UpstreamRateLimited):
            asyncio.run(analyzer.fast_judgment(CTX, "빵"))

    def test_claude(self):
        analyzer = ClaudeAnalyzer(api_key="test")
        analyzer._client = SimpleNamespace(messages=_FakeClaudeMessages([SimpleNamespace(text="SAFE")]))
        assert asyncio.run(analyzer.fast_judgment(CTX, "밥")) == "SAFE"


class TestClassifyStream:
    def test_gemini_chunks(self):
        analyzer = GeminiAnalyzer(api_key="test")
        model = _FakeStreamingModel(chunks=["S", "", "\n"])
        analyzer._classifier_model = model
        chunks = asyncio.run(_collect(analyzer.classify_stream(b"jpeg", "image/jpeg", CTX, "밥")))
        assert chunks == ["S", "\n"]
        assert model.stream_flags == [True]

    def test_gemini_error_mapped(self):
        analyzer = GeminiAnalyzer(api_key="test")
        analyzer._classifier_model = _FakeStreamingModel(
            chunks=["D"], exc=google_exceptions.ResourceExhausted("quota"))
        with pytest.raises(UpstreamRateLimited):
            asyncio.run(_collect(analyzer.classify_stream(b"jpeg", "image/jpeg", CTX, "밥")))

    def test_claude_text_stream(self):
        analyzer = ClaudeAnalyzer(api_key="test")
        analyzer._client = SimpleNamespace(messages=SimpleNamespace(
            stream=lambda **kwargs: _FakeClaudeStream(["D"])))
        chunks = asyncio.run(_collect(analyzer.classify_stream(b"jpeg", "image/jpeg", CTX, "새우")))
        assert chunks == ["D"]

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        with pytest.raises(AIServiceError):
            asyncio.run(_collect(GeminiAnalyzer().classify_stream(b"jpeg", "image/jpeg", CTX, None)))
