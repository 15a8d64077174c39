# portal/app.py
from flask import Flask, jsonify, abort, request, make_response, send_from_directory, g, Response, stream_with_context

# --- Standard libs & typing ---
import atexit
import json
import logging
import sqlite3
from functools import wraps
from typing import Any, Dict, Optional, Tuple

from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

from safescan import db, profiles, scan_jobs, settings
from safescan.ai_analyzer import build_ai_analyzer, configured_provider
from safescan.errors import (
    BadRequest,
    DBConnectionError,
    InternalError,
    JobNotFound,
    MissingImage,
    ScanError,
)
from safescan.i18n import DEFAULT_LANGUAGE
from safescan.image_preprocess import ImagePreprocessor, decode_data_uri
from safescan.image_store import ImageStore
from safescan.ocr_adapter import build_ocr_adapter, tesseract_version
from safescan.pipeline import BackgroundLoop, ScanPipeline, server_timing_header
from safescan.scan_types import AnalysisRequest, UserSafetyContext
from portal.contracts import validate_analyze_payload, validate_preprocess_payload

log = logging.getLogger(__name__)

# ------------------------
# App & Config
# ------------------------
app = Flask(__name__)

app.config["SECRET_KEY"] = settings.SECRET_KEY
app.config["MAX_CONTENT_LENGTH"] = settings.MAX_CONTENT_LENGTH        # ~20 MB
app.json.ensure_ascii = False

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

UPLOAD_FOLDER = settings.UPLOAD_DIR
UPLOAD_FOLDER.mkdir(parents=True, exist_ok=True)

# ------------------------
# Pipeline (lazy; tests swap in their own with set_pipeline)
# ------------------------
_loop = BackgroundLoop()
atexit.register(_loop.stop)
_pipeline: Optional[ScanPipeline] = None


def get_pipeline() -> ScanPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = ScanPipeline(
            ocr=build_ocr_adapter(),
            ai=build_ai_analyzer(),
            image_store=ImageStore(UPLOAD_FOLDER),
        )
    return _pipeline


def set_pipeline(pipeline: Optional[ScanPipeline]) -> None:
    global _pipeline
    _pipeline = pipeline


def get_loop() -> BackgroundLoop:
    return _loop


# ------------------------
# Error responses
# ------------------------
def _error(http_status: int, message: str, error_code: Optional[str] = None, **extra: Any):
    payload: Dict[str, Any] = {"success": False, "message": message}
    if error_code:
        payload["error_code"] = error_code
    payload.update(extra)
    return jsonify(payload), http_status


@app.errorhandler(ScanError)
def _handle_scan_error(e: ScanError):
    resp = make_response(jsonify(e.to_payload()), e.http_status)
    retry_after = getattr(e, "retry_after", None)
    if retry_after is not None:
        resp.headers["Retry-After"] = str(retry_after)
    return resp


@app.errorhandler(sqlite3.Error)
def _handle_db_error(e: sqlite3.Error):
    log.exception("Database error on %s %s", request.method, request.path)
    err = DBConnectionError()
    return jsonify(err.to_payload()), err.http_status


@app.errorhandler(RequestEntityTooLarge)
def _handle_too_large(_e):
    return _error(413, "이미지 용량이 너무 큽니다. 20MB 이하로 올려주세요.", "FILE_TOO_LARGE")


@app.errorhandler(HTTPException)
def _handle_http(e: HTTPException):
    return _error(e.code or 500, e.description or "요청을 처리할 수 없습니다.")


@app.errorhandler(Exception)
def _handle_unexpected(e: Exception):
    log.exception("Unhandled error on %s %s", request.method, request.path)
    err = InternalError()
    return jsonify(err.to_payload()), err.http_status


# ------------------------
# Auth (bearer token -> user id)
# ------------------------
def token_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        raw = profiles.bearer_from_header(request.headers.get("Authorization"))
        g.user_id = profiles.resolve_token(raw)
        return view_func(*args, **kwargs)
    return wrapper


# ------------------------
# Request parsing helpers
# ------------------------
def _read_image_and_body() -> Tuple[bytes, str, Dict[str, Any]]:
    """Accept either JSON {image: data-uri, ...} or multipart with a `file` part."""
    if request.files:
        f = request.files.get("file") or request.files.get("image")
        if f is None:
            raise MissingImage()
        data = f.read()
        if not data:
            raise MissingImage()
        body = {k: v for k, v in request.form.items()}
        return data, (f.mimetype or "").lower(), body

    payload = request.get_json(silent=True)
    if payload is None:
        raise BadRequest("JSON 본문 또는 이미지 파일이 필요합니다.")
    ok, msg = validate_analyze_payload(payload)
    if not ok:
        log.info("Rejected analyze payload: %s", msg)
        raise BadRequest()
    if not payload.get("image"):
        raise MissingImage()
    data, mime = decode_data_uri(payload["image"])
    return data, mime, payload


def _context_for(user_id: str, body: Dict[str, Any]) -> UserSafetyContext:
    ctx = body.get("user_context")
    if isinstance(ctx, dict):
        return UserSafetyContext.build(ctx.get("allergies") or [], ctx.get("diets") or [])
    return profiles.load_context(user_id)


def _wants_ndjson() -> bool:
    return "application/x-ndjson" in (request.headers.get("Accept") or "")


def _stream_classification(pipeline: ScanPipeline, req: AnalysisRequest) -> Response:
    loop = get_loop()
    # decode + OCR before the first byte so bad input is still a JSON 4xx
    prepared = loop.run(pipeline.prepare_stream(req))

    def generate():
        for event in loop.iterate(pipeline.stream_events(req, prepared)):
            yield json.dumps(event, ensure_ascii=False) + "\n"

    return Response(
        stream_with_context(generate()),
        mimetype="application/x-ndjson",
        headers={"Cache-Control": "no-cache, no-store, must-revalidate", "X-Accel-Buffering": "no"},
    )


# ------------------------
# Scan API
# ------------------------
@app.post("/api/scan/analyze")
@token_required
def api_scan_analyze():
    data, mime, body = _read_image_and_body()
    req = AnalysisRequest(
        image_bytes=data,
        mime_type=mime,
        user_id=g.user_id,
        context=_context_for(g.user_id, body),
        language=str(body.get("language") or DEFAULT_LANGUAGE),
        device_info=body.get("device_info") if isinstance(body.get("device_info"), dict) else {},
    )
    pipeline = get_pipeline()
    if _wants_ndjson():
        return _stream_classification(pipeline, req)
    out = get_loop().run(pipeline.analyze(req))
    resp = make_response(jsonify(out), 200)
    resp.headers["Server-Timing"] = server_timing_header(out.get("timings") or {})
    return resp


@app.get("/api/scan/result")
@token_required
def api_scan_result():
    job_id = (request.args.get("jobId") or "").strip()
    if not job_id:
        return _error(400, "jobId가 필요합니다.", "MISSING_JOB_ID")

    job = scan_jobs.get_job(job_id, user_id=g.user_id)
    if job is None:
        raise JobNotFound()

    if job["status"] == scan_jobs.PENDING:
        return jsonify({
            "status": "PENDING",
            "jobId": job_id,
            "quickResult": job["quick"],
            "imageUrl": job.get("image_url"),
        })
    if job["status"] == scan_jobs.FINAL:
        return jsonify({
            "status": "FINAL",
            "jobId": job_id,
            "result": job["result"],
            "quickResult": job["quick"],
            "timings": job["timings"],
            "imageUrl": job.get("image_url"),
        })
    return _error(500, job.get("error_message") or InternalError.default_message,
                  job.get("error_code") or "INTERNAL_ERROR", status="ERROR", jobId=job_id)


# ------------------------
# Image preprocessing API
# ------------------------
@app.post("/api/image/preprocess")
@token_required
def api_image_preprocess():
    payload = request.get_json(silent=True)
    ok, msg = validate_preprocess_payload(payload)
    if not ok:
        return _error(400, msg, "INVALID_REQUEST")
    data, mime = decode_data_uri(payload.get("image") or "")

    prep = ImagePreprocessor()
    prep.load(data, mime)
    for op in payload.get("operations") or []:
        name = op["op"]
        if name == "rotate":
            prep.rotate(op.get("degrees", 90))
        elif name == "crop":
            prep.crop(op["x"], op["y"], op["width"], op["height"])
        elif name == "auto_crop":
            prep.auto_crop()
        elif name == "contrast":
            prep.adjust_contrast(op["value"])
        elif name == "optimize":
            prep.optimize_for_ocr()

    width, height = prep.dimensions
    return jsonify({
        "success": True,
        "image": prep.data_uri,
        "width": width,
        "height": height,
        "orientation": prep.orientation,
    })


# ------------------------
# Health + uploads
# ------------------------
@app.get("/api/health")
def api_health():
    try:
        with db.connection() as conn:
            conn.execute("SELECT 1").fetchone()
        db_ok = True
    except sqlite3.Error as e:
        log.warning("Health check DB error: %s", e)
        db_ok = False
    provider, key_state = configured_provider()
    return jsonify({
        "ok": db_ok,
        "db": "ok" if db_ok else "error",
        "ocr_provider": settings.OCR_PROVIDER,
        "tesseract_version": tesseract_version() if settings.OCR_PROVIDER == "tesseract" else None,
        "ai_provider": provider,
        "ai_key": key_state,
    }), (200 if db_ok else 503)


@app.get("/uploads/<path:filename>")
@token_required
def serve_upload(filename):
    requested = (UPLOAD_FOLDER / filename).resolve()
    if not str(requested).startswith(str(UPLOAD_FOLDER.resolve())):
        abort(403)
    # uploads are prefixed with the owner's id
    if not requested.name.startswith(f"{g.user_id}_"):
        abort(404)
    return send_from_directory(str(UPLOAD_FOLDER), filename, as_attachment=False)


if __name__ == "__main__":
    from safescan.init_db import init_db
    init_db()
    app.run(debug=False, port=5000)
