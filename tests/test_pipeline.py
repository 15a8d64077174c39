"""
Scan pipeline tests with fake OCR / AI adapters.

Covers:
  - AI inside the deadline -> FINAL with escalated result, job stored as FINAL
  - AI past the deadline -> PARTIAL + PENDING job, background task settles FINAL
  - Background failure settles the job as ERROR with the AI error code
  - OCR failure still runs the AI path; quick verdict is _OCR_FAILED
  - Rate limit / timeout before the deadline carry the quick verdict as interim
  - Contract violation surfaces as AIResponseError(PARSE_ERROR)
  - PARTIAL carries fastStatus: fast model answer, or the keyword level when it is slow or fails
  - NDJSON classifier events: text chunks then one done line; failures end as DANGER
  - BackgroundLoop.iterate drives an async generator from sync code
  - Server-Timing header formatting
"""

from __future__ import annotations

import asyncio
import json

import pytest

from conftest import make_jpeg
from safescan import scan_jobs
from safescan.ai_analyzer import AIAnalyzer
from safescan.errors import (
    AIResponseError,
    AIServiceError,
    OCRError,
    UnsupportedFormat,
    UpstreamRateLimited,
    UpstreamTimeout,
)
from safescan.ocr_adapter import OCRAdapter
from safescan.ocr_types import ExtractedText
from safescan.pipeline import FINAL, PARTIAL, BackgroundLoop, ScanPipeline, server_timing_header
from safescan.scan_types import AnalysisRequest, UserSafetyContext

MENU_TEXT = "오늘의 메뉴\n새우볶음밥 9,000원\n김치찌개 8,000원"

AI_PAYLOAD = json.dumps({
    "overall_status": "SAFE",
    "results": [
        {"id": "1", "original_name": "새우볶음밥", "translated_name": "Shrimp fried rice",
         "status": "SAFE", "reason": "", "ingredients": ["새우", "밥", "계란"], "allergens": []},
        {"id": "2", "original_name": "김치찌개", "translated_name": "Kimchi stew",
         "status": "SAFE", "reason": "", "ingredients": ["김치", "두부"], "allergens": []},
    ],
}, ensure_ascii=False)


class FakeOCR(OCRAdapter):
    name = "fake-ocr"

    def __init__(self, text=MENU_TEXT, fail=False):
        self.text = text
        self.fail = fail

    async def extract(self, image_bytes, language="ko"):
        if self.fail:
            raise OCRError("engine missing")
        return ExtractedText(spans=(), full_text=self.text, image_size=(40, 20), page_confidence=0.95)


class FakeAI(AIAnalyzer):
    name = "fake-ai"

    def __init__(self, payload=AI_PAYLOAD, delay=0.0, exc=None,
                 fast_text="DANGER", fast_delay=0.0, fast_exc=None, stream_chunks=("D",), stream_exc=None):
        super().__init__(timeout_s=5)
        self.payload = payload
        self.delay = delay
        self.exc = exc
        self.fast_text = fast_text
        self.fast_delay = fast_delay
        self.fast_exc = fast_exc
        self.stream_chunks = stream_chunks
        self.stream_exc = stream_exc
        self.calls = 0
        self.fast_calls = 0

    async def _complete(self, prompt, image_bytes, mime_type):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        return self.payload

    async def _complete_text(self, prompt):
        self.fast_calls += 1
        if self.fast_delay:
            await asyncio.sleep(self.fast_delay)
        if self.fast_exc is not None:
            raise self.fast_exc
        return self.fast_text

    async def _stream(self, prompt, image_bytes, mime_type):
        for chunk in self.stream_chunks:
            yield chunk
        if self.stream_exc is not None:
            raise self.stream_exc


def _request(allergies=("shellfish",), diets=()) -> AnalysisRequest:
    return AnalysisRequest(
        image_bytes=make_jpeg(40, 20),
        mime_type="image/jpeg",
        user_id="u1",
        context=UserSafetyContext.build(list(allergies), list(diets)),
        language="ko",
    )


def _pipeline(ocr=None, ai=None, deadline_ms=2000, **kw) -> ScanPipeline:
    return ScanPipeline(ocr=ocr or FakeOCR(), ai=ai or FakeAI(), deadline_ms=deadline_ms, ocr_optimize=False, **kw)


class TestFinalPath:
    def test_final_inside_deadline(self, fresh_db):
        out = asyncio.run(_pipeline().analyze(_request()))
        assert out["status"] == FINAL
        result = out["result"]
        assert result["overall_status"] == "CAUTION"
        first = result["results"][0]
        assert first["safety_status"] == "CAUTION"
        assert first["db_verification"]["matched_allergens"] == ["shellfish"]
        assert result["results"][1]["safety_status"] == "SAFE"
        for key in ("parseMs", "ocrMs", "quickMs", "geminiMs", "dbVerifyMs", "totalMs"):
            assert key in out["timings"]

        job = scan_jobs.get_job(out["jobId"])
        assert job["status"] == scan_jobs.FINAL
        assert job["quick"]["level"] == "DANGER"
        assert job["result"]["overall_status"] == "CAUTION"

    def test_ocr_failure_still_calls_ai(self, fresh_db):
        ai = FakeAI()
        out = asyncio.run(_pipeline(ocr=FakeOCR(fail=True), ai=ai).analyze(_request()))
        assert ai.calls == 1
        assert out["status"] == FINAL
        job = scan_jobs.get_job(out["jobId"])
        assert job["quick"]["triggerCodes"] == ["_OCR_FAILED"]

    def test_parse_error(self, fresh_db):
        with pytest.raises(AIResponseError) as exc:
            asyncio.run(_pipeline(ai=FakeAI(payload="not json")).analyze(_request()))
        assert exc.value.error_code == "PARSE_ERROR"

    def test_rate_limit_carries_quick_result(self, fresh_db):
        with pytest.raises(UpstreamRateLimited) as exc:
            asyncio.run(_pipeline(ai=FakeAI(exc=UpstreamRateLimited())).analyze(_request()))
        assert exc.value.interim["level"] == "DANGER"
        assert exc.value.to_payload()["quickResult"]["triggerCodes"] == ["shellfish"]

    def test_timeout_carries_quick_result(self, fresh_db):
        with pytest.raises(UpstreamTimeout) as exc:
            asyncio.run(_pipeline(ai=FakeAI(exc=UpstreamTimeout())).analyze(_request()))
        assert exc.value.interim is not None


class TestPartialPath:
    def test_partial_then_final(self, fresh_db):
        pipeline = _pipeline(ai=FakeAI(delay=0.3), deadline_ms=20)

        async def run():
            first = await pipeline.analyze(_request())
            pending = scan_jobs.get_job(first["jobId"])
            await pipeline.wait_background()
            return first, pending

        first, pending = asyncio.run(run())
        assert first["status"] == PARTIAL
        assert first["quickResult"]["level"] == "DANGER"
        assert "result" not in first
        assert pending["status"] == scan_jobs.PENDING

        settled = scan_jobs.get_job(first["jobId"])
        assert settled["status"] == scan_jobs.FINAL
        assert settled["result"]["overall_status"] == "CAUTION"
        assert "geminiMs" in settled["timings"]

    def test_partial_then_error(self, fresh_db):
        pipeline = _pipeline(ai=FakeAI(delay=0.3, exc=AIServiceError()), deadline_ms=20)

        async def run():
            first = await pipeline.analyze(_request())
            await pipeline.wait_background()
            return first

        first = asyncio.run(run())
        assert first["status"] == PARTIAL
        job = scan_jobs.get_job(first["jobId"])
        assert job["status"] == scan_jobs.ERROR
        assert job["error_code"] == "GEMINI_API_ERROR"


class TestServerTiming:
    def test_header(self):
        header = server_timing_header({"ocrMs": 120, "geminiMs": 2500, "totalMs": 2700, "promptChars": 900})
        assert header == "ocr;dur=120, gemini;dur=2500, total;dur=2700"

    def test_empty(self):
        assert server_timing_header({}) == ""


class TestFastJudgment:
    def _partial(self, ai, **kw):
        pipeline = _pipeline(ai=ai, deadline_ms=50, **kw)

        async def run():
            first = await pipeline.analyze(_request(allergies=()))
            await pipeline.wait_background()
            return first

        return asyncio.run(run())

    def test_fast_status_on_partial(self, fresh_db):
        out = self._partial(FakeAI(delay=0.3, fast_text="CAUTION"))
        assert out["status"] == PARTIAL
        assert out["quickResult"]["level"] == "SAFE"
        assert out["fastStatus"] == "CAUTION"
        assert "fastMs" in out["timings"]

    def test_fast_failure_keeps_keyword_level(self, fresh_db):
        out = self._partial(FakeAI(delay=0.3, fast_exc=UpstreamRateLimited()))
        assert out["fastStatus"] == out["quickResult"]["level"] == "SAFE"

    def test_fast_timeout_keeps_keyword_level(self, fresh_db):
        out = self._partial(FakeAI(delay=0.3, fast_delay=0.5), fast_timeout_ms=10)
        assert out["fastStatus"] == "SAFE"
        assert out["timings"]["fastMs"] == 10

    def test_fast_disabled(self, fresh_db):
        ai = FakeAI(delay=0.3)
        out = self._partial(ai, fast_enabled=False)
        assert out["fastStatus"] == "SAFE"
        assert "fastMs" not in out["timings"]
        assert ai.fast_calls == 0

    def test_final_has_no_fast_status(self, fresh_db):
        out = asyncio.run(_pipeline().analyze(_request()))
        assert out["status"] == FINAL
        assert "fastStatus" not in out


class TestStreamEvents:
    def _events(self, ai):
        pipeline = _pipeline(ai=ai)

        async def run():
            req = _request(allergies=("shellfish",), diets=("vegan",))
            prepared = await pipeline.prepare_stream(req)
            return [e async for e in pipeline.stream_events(req, prepared)]

        return asyncio.run(run())

    def test_chunks_then_done(self):
        events = self._events(FakeAI(stream_chunks=("S",)))
        assert events[0] == {"text": "S"}
        done = events[-1]
        assert done["done"] is True
        assert done["status"] == "SAFE"
        assert done["user_context"] == {"allergies": ["shellfish"], "diets": ["vegan"]}
        assert done["ttftMs"] is not None

    def test_unreadable_answer_is_danger(self):
        events = self._events(FakeAI(stream_chunks=("?",)))
        assert events[-1]["status"] == "DANGER"

    def test_stream_failure_is_danger(self):
        events = self._events(FakeAI(stream_chunks=("S",), stream_exc=UpstreamTimeout()))
        assert events[0] == {"text": "S"}
        assert events[-1]["status"] == "DANGER"
        assert events[-1]["error"] == "TIMEOUT"

    def test_bad_image_fails_before_streaming(self):
        pipeline = _pipeline()
        req = AnalysisRequest(image_bytes=b"nope", mime_type="image/jpeg", user_id="u1",
                              context=UserSafetyContext(), language="ko")
        with pytest.raises(UnsupportedFormat):
            asyncio.run(pipeline.prepare_stream(req))


class TestBackgroundLoopIterate:
    def test_iterate(self):
        async def numbers():
            for i in range(3):
                await asyncio.sleep(0)
                yield i

        loop = BackgroundLoop(name="iterate-test")
        try:
            assert list(loop.iterate(numbers(), timeout=5)) == [0, 1, 2]
        finally:
            loop.stop()
