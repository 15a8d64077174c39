# safescan/pipeline.py
"""
Scan pipeline — the two-phase (PARTIAL -> FINAL) menu analysis.

Phases for one request:
  1. parse     ImagePreprocessor.load (format check + EXIF orientation);
               OCR copy optionally run through optimize_for_ocr
  2. store     original bytes handed to the storage collaborator
  3. ocr       OCR adapter; any OCRError marks ocr_failed and we carry on
  4. quick     keyword verdict, synchronous, always produced before the AI wait
  5. final     AI analyzer -> allergen DB fan-out -> escalation -> overall status,
               started as a task and awaited up to the deadline

Alongside the final path a text-only fast judgment races FAST_TIMEOUT_MS; it only
feeds `fastStatus` on a PARTIAL response and falls back to the keyword level.

If the final path beats the deadline the response is FINAL. Otherwise a PENDING
job is written (with the quick verdict), the response is PARTIAL, and the task
keeps running in the background until it settles the job to FINAL or ERROR.
The job row always exists before the PARTIAL response leaves, so a poll can
never race ahead of it.

BackgroundLoop hosts the event loop in a daemon thread so background tasks
outlive the Flask request thread that started them.

NDJSON mode (prepare_stream + stream_events) skips the job protocol and streams a
single-letter S/D classifier, ending with one `done` line.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Coroutine, Dict, Iterator, Optional, Set, Tuple, TypeVar

from . import scan_jobs, settings
from .ai_analyzer import AIAnalyzer, parse_classifier_status
from .allergen_db import AllergenDBVerifier
from .errors import InternalError, OCRError, ScanError, UpstreamRateLimited, UpstreamTimeout
from .escalation import apply_verification, build_final_result
from .i18n import Locale
from .image_preprocess import ImagePreprocessor, optimize_for_ocr
from .image_store import ImageStore
from .ocr_adapter import OCRAdapter, confidence_tier
from .ocr_types import ExtractedText
from .quick_analyzer import quick_analyze
from .scan_types import DANGER, AnalysisRequest

log = logging.getLogger(__name__)

T = TypeVar("T")

PARTIAL = "PARTIAL"
FINAL = "FINAL"

_SERVER_TIMING_KEYS = (
    ("parseMs", "parse"),
    ("ocrMs", "ocr"),
    ("quickMs", "quick"),
    ("fastMs", "fast"),
    ("geminiMs", "gemini"),
    ("dbVerifyMs", "db"),
    ("totalMs", "total"),
)


@dataclass(frozen=True)
class StreamInput:
    ai_image: bytes
    ocr_text: str
    started: float


def _ms(since: float) -> int:
    return int(round((time.perf_counter() - since) * 1000))


def server_timing_header(timings: Dict[str, Any]) -> str:
    parts = [f"{name};dur={int(timings[key])}" for key, name in _SERVER_TIMING_KEYS if key in timings]
    return ", ".join(parts)


class ScanPipeline:
    def __init__(
        self,
        *,
        ocr: OCRAdapter,
        ai: AIAnalyzer,
        verifier: Optional[AllergenDBVerifier] = None,
        image_store: Optional[ImageStore] = None,
        deadline_ms: int = settings.AI_DEADLINE_MS,
        ocr_optimize: bool = settings.OCR_OPTIMIZE,
        fast_enabled: bool = settings.FAST_JUDGMENT_ENABLED,
        fast_timeout_ms: int = settings.FAST_TIMEOUT_MS,
    ):
        self.ocr = ocr
        self.ai = ai
        self.verifier = verifier or AllergenDBVerifier()
        self.image_store = image_store
        self.deadline_ms = deadline_ms
        self.ocr_optimize = ocr_optimize
        self.fast_enabled = fast_enabled
        self.fast_timeout_ms = fast_timeout_ms
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------
    # Phase helpers
    # ------------------------------------------------------------
    def _prepare(self, req: AnalysisRequest) -> Tuple[bytes, bytes]:
        """(ai_image, ocr_image) as JPEG bytes. Raises PreprocessError on bad input."""
        prep = ImagePreprocessor()
        prep.load(req.image_bytes, req.mime_type)
        ai_image = prep.blob
        ocr_image = optimize_for_ocr(prep.current).encode_jpeg() if self.ocr_optimize else ai_image
        return ai_image, ocr_image

    async def _run_ocr(self, image: bytes, locale: Locale) -> Tuple[ExtractedText, bool]:
        try:
            return await self.ocr.extract(image, locale.code), False
        except OCRError as e:
            log.warning("OCR failed (%s); continuing with AI path only: %s", self.ocr.name, e)
            return ExtractedText.empty(engine=self.ocr.name), True

    async def _final_path(
        self,
        req: AnalysisRequest,
        ai_image: bytes,
        locale: Locale,
        ocr_text: str,
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        t = time.perf_counter()
        ai_result = await self.ai.analyze(ai_image, "image/jpeg", req.context, locale, ocr_text)
        timings: Dict[str, Any] = {"geminiMs": _ms(t), "promptChars": ai_result.prompt_chars}

        t = time.perf_counter()
        checks = await self.verifier.verify_items(ai_result.items, req.context.allergy_codes)
        timings["dbVerifyMs"] = _ms(t)

        items = apply_verification(ai_result.items, checks, locale)
        return build_final_result(items, locale), timings

    def _spawn(self, coro: Awaitable[T]) -> "asyncio.Task[T]":
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _settle_job(
        self,
        job_id: str,
        task: "asyncio.Task[Tuple[Dict[str, Any], Dict[str, Any]]]",
        timings: Dict[str, Any],
        started: float,
    ) -> None:
        try:
            result, final_timings = await task
        except ScanError as e:
            timings = {**timings, "totalMs": _ms(started)}
            log.warning("Scan job %s failed: %s", job_id, e.error_code)
            await asyncio.to_thread(scan_jobs.fail_job, job_id, e.error_code or "INTERNAL_ERROR", e.message, timings)
            return
        except Exception:
            log.exception("Scan job %s crashed", job_id)
            err = InternalError()
            await asyncio.to_thread(scan_jobs.fail_job, job_id, err.error_code, err.message, timings)
            return
        timings = {**timings, **final_timings, "totalMs": _ms(started)}
        await asyncio.to_thread(scan_jobs.complete_job, job_id, result, timings)
        log.info("Scan job %s FINAL (%s) timings=%s", job_id, result["overall_status"], timings)

    async def wait_background(self) -> None:
        """Await every in-flight background settle task (used by tests and shutdown)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _fast_status(self, req: AnalysisRequest, ocr_text: str, fallback: str) -> Tuple[str, int]:
        """(status, ms) of the text-only judgment; the keyword level when it is slow or fails."""
        t = time.perf_counter()
        try:
            status = await asyncio.wait_for(
                self.ai.fast_judgment(req.context, ocr_text), self.fast_timeout_ms / 1000.0
            )
        except asyncio.TimeoutError:
            log.info("Fast judgment timed out after %dms; keeping keyword level %s", self.fast_timeout_ms, fallback)
            return fallback, self.fast_timeout_ms
        except Exception as e:
            log.warning("Fast judgment failed (%s); keeping keyword level %s", type(e).__name__, fallback)
            return fallback, _ms(t)
        return status, _ms(t)

    # ------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------
    async def analyze(self, req: AnalysisRequest) -> Dict[str, Any]:
        started = time.perf_counter()
        locale = Locale.resolve(req.language)
        timings: Dict[str, Any] = {}

        t = time.perf_counter()
        ai_image, ocr_image = self._prepare(req)
        timings["parseMs"] = _ms(t)

        image_url: Optional[str] = None
        if self.image_store is not None:
            image_url = await asyncio.to_thread(
                self.image_store.save_original, req.image_bytes, req.mime_type, req.user_id
            )

        t = time.perf_counter()
        extracted, ocr_failed = await self._run_ocr(ocr_image, locale)
        timings["ocrMs"] = _ms(t)
        timings["ocrTextChars"] = len(extracted.full_text)

        t = time.perf_counter()
        tier = confidence_tier(extracted.full_text, extracted.mean_confidence)
        quick = quick_analyze(
            extracted.full_text, req.context, locale,
            ocr_confidence=tier, ocr_failed=ocr_failed,
        )
        timings["quickMs"] = _ms(t)
        quick_dict = quick.to_dict()

        final_task = self._spawn(self._final_path(req, ai_image, locale, extracted.full_text))
        fast_task: Optional["asyncio.Task[Tuple[str, int]]"] = None
        if self.fast_enabled:
            fast_task = asyncio.ensure_future(self._fast_status(req, extracted.full_text, quick.level))
        try:
            result, final_timings = await asyncio.wait_for(
                asyncio.shield(final_task), self.deadline_ms / 1000.0
            )
        except asyncio.TimeoutError:
            fast_status = quick.level
            if fast_task is not None:
                fast_status, timings["fastMs"] = await fast_task
            job_id = await asyncio.to_thread(
                scan_jobs.create_pending_job, req.user_id, quick_dict,
                timings=timings, image_url=image_url,
            )
            self._spawn(self._settle_job(job_id, final_task, dict(timings), started))
            log.info("Scan job %s PARTIAL after %dms (quick=%s, fast=%s)",
                     job_id, _ms(started), quick.level, fast_status)
            return {
                "status": PARTIAL,
                "jobId": job_id,
                "quickResult": quick_dict,
                "fastStatus": fast_status,
                "timings": {**timings, "totalMs": _ms(started)},
            }
        except (UpstreamRateLimited, UpstreamTimeout) as e:
            e.interim = quick_dict
            raise
        finally:
            if fast_task is not None and not fast_task.done():
                fast_task.cancel()

        timings = {**timings, **final_timings, "totalMs": _ms(started)}
        job_id = await asyncio.to_thread(
            scan_jobs.create_pending_job, req.user_id, quick_dict,
            timings=timings, image_url=image_url,
        )
        await asyncio.to_thread(scan_jobs.complete_job, job_id, result, timings)
        log.info("Scan job %s FINAL in %dms (%s)", job_id, timings["totalMs"], result["overall_status"])
        return {"status": FINAL, "jobId": job_id, "result": result, "timings": timings}

    # ------------------------------------------------------------
    # Streaming classifier (NDJSON mode)
    # ------------------------------------------------------------
    async def prepare_stream(self, req: AnalysisRequest) -> StreamInput:
        """Decode + OCR ahead of streaming so bad input still fails as a plain 4xx."""
        started = time.perf_counter()
        ai_image, ocr_image = self._prepare(req)
        extracted, _ = await self._run_ocr(ocr_image, Locale.resolve(req.language))
        return StreamInput(ai_image=ai_image, ocr_text=extracted.full_text, started=started)

    async def stream_events(self, req: AnalysisRequest, prepared: StreamInput) -> AsyncIterator[Dict[str, Any]]:
        """
        {"text": chunk} per model chunk, then one {"done": true, "status": ...} line.
        Any failure ends the stream with status DANGER.
        """
        started = prepared.started
        accumulated = ""
        ttft: Optional[int] = None
        try:
            async for chunk in self.ai.classify_stream(prepared.ai_image, "image/jpeg", req.context, prepared.ocr_text):
                if ttft is None:
                    ttft = _ms(started)
                accumulated += chunk
                yield {"text": chunk}
        except Exception as e:
            code = getattr(e, "error_code", None) or "STREAM_FAILED"
            log.warning("Classifier stream failed (%s); answering DANGER", code)
            yield {"done": True, "status": DANGER, "error": code, "ttftMs": ttft, "totalMs": _ms(started)}
            return

        status = parse_classifier_status(accumulated)
        log.info("Classifier stream done: %s ttft=%sms total=%dms", status, ttft, _ms(started))
        yield {
            "done": True,
            "status": status,
            "ttftMs": ttft,
            "totalMs": _ms(started),
            "user_context": {"allergies": list(req.context.allergy_codes), "diets": list(req.context.diets)},
        }


# ------------------------------------------------------------
# Event loop host for sync (WSGI) callers
# ------------------------------------------------------------
class BackgroundLoop:
    def __init__(self, name: str = "safescan-loop"):
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is not None and self._thread is not None and self._thread.is_alive():
                return self._loop
            loop = asyncio.new_event_loop()
            thread = threading.Thread(target=self._run, args=(loop,), name=self.name, daemon=True)
            thread.start()
            self._loop, self._thread = loop, thread
            return loop

    @staticmethod
    def _run(loop: asyncio.AbstractEventLoop) -> None:
        asyncio.set_event_loop(loop)
        loop.run_forever()

    def run(self, coro: Coroutine[Any, Any, T], timeout: Optional[float] = None) -> T:
        loop = self.start()
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout)

    def stop(self) -> None:
        with self._lock:
            if self._loop is None:
                return
            self._loop.call_soon_threadsafe(self._loop.stop)
            if self._thread is not None:
                self._thread.join(timeout=5)
            self._loop.close()
            self._loop, self._thread = None, None

    def iterate(self, agen: AsyncIterator[T], timeout: Optional[float] = None) -> Iterator[T]:
        """Drive an async iterator from a sync caller (e.g. a streamed Flask response)."""
        loop = self.start()
        try:
            while True:
                item = asyncio.run_coroutine_threadsafe(_anext(agen), loop).result(timeout)
                if item is _DONE:
                    return
                yield item
        finally:
            aclose = getattr(agen, "aclose", None)
            if aclose is not None and self._loop is not None:
                asyncio.run_coroutine_threadsafe(aclose(), self._loop).result(timeout)


_DONE: Any = object()


async def _anext(agen: AsyncIterator[T]) -> Any:
    try:
        return await agen.__anext__()
    except StopAsyncIteration:
        return _DONE
