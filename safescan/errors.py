# safescan/errors.py
"""
SafeScan error taxonomy.

Every error that can cross the HTTP boundary derives from ScanError and carries
the status code, a stable error_code and a message that is safe to show to an
end user. Internal exception text never goes into `message`.

Categories:
- Input errors (preprocessing, missing image, bad request body) -> 400
- Auth errors -> 401
- Upstream transient errors (rate limit -> 429, timeout -> 504)
- Upstream malformed responses and service failures -> 500
"""

from __future__ import annotations

from typing import Optional


# ────────────────────────────────────────────────
# Base
# ────────────────────────────────────────────────

class ScanError(Exception):
    http_status: int = 500
    error_code: Optional[str] = None
    default_message: str = "요청을 처리하는 중 문제가 발생했습니다. 잠시 후 다시 시도해 주세요."
    # quick verdict attached when an upstream failure happens after the quick pass
    interim: Optional[dict] = None

    def __init__(self, message: Optional[str] = None, *, error_code: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        if error_code is not None:
            self.error_code = error_code

    def to_payload(self) -> dict:
        payload = {"success": False, "message": self.message}
        if self.error_code:
            payload["error_code"] = self.error_code
        if self.interim is not None:
            payload["quickResult"] = self.interim
        return payload


# ────────────────────────────────────────────────
# Input errors
# ────────────────────────────────────────────────

class BadRequest(ScanError):
    http_status = 400
    error_code = "INVALID_REQUEST"
    default_message = "요청 형식이 올바르지 않습니다."


class MissingImage(BadRequest):
    error_code = "MISSING_IMAGE"
    default_message = "이미지가 필요합니다."


class PreprocessError(BadRequest):
    """Base for ImagePreprocessor failures. The buffer is never modified when raised."""
    error_code = "PREPROCESS_ERROR"


class UnsupportedFormat(PreprocessError):
    error_code = "UNSUPPORTED_FORMAT"
    default_message = "지원하지 않는 이미지 형식입니다. JPEG, PNG, WebP만 가능합니다."


class NoImageLoaded(PreprocessError):
    error_code = "NO_IMAGE_LOADED"
    default_message = "먼저 이미지를 불러와 주세요."


class InvalidCropArea(PreprocessError):
    error_code = "INVALID_CROP_AREA"
    default_message = "자르기 영역이 이미지 범위를 벗어났습니다."


class InvalidRotation(PreprocessError):
    error_code = "INVALID_ROTATION"
    default_message = "회전 각도는 90의 배수여야 합니다."


class InvalidContrast(PreprocessError):
    error_code = "INVALID_CONTRAST"
    default_message = "대비 값은 -1과 1 사이여야 합니다."


# ────────────────────────────────────────────────
# Auth
# ────────────────────────────────────────────────

class AuthError(ScanError):
    http_status = 401
    error_code = "AUTH_REQUIRED"
    default_message = "로그인이 필요합니다."


class JobNotFound(ScanError):
    http_status = 404
    error_code = "JOB_NOT_FOUND"
    default_message = "분석 작업을 찾을 수 없습니다."


# ────────────────────────────────────────────────
# Upstream (OCR / AI)
# ────────────────────────────────────────────────

class OCRError(ScanError):
    """Raised by OCR adapters. The pipeline treats it as `ocr_failed`, never as fatal."""
    error_code = "OCR_ERROR"


class UpstreamRateLimited(ScanError):
    http_status = 429
    error_code = "RATE_LIMITED"
    default_message = "요청이 많아 잠시 후 다시 시도해 주세요."

    def __init__(self, message: Optional[str] = None, *, retry_after: int = 20):
        super().__init__(message)
        self.retry_after = int(retry_after)

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["retry_after"] = self.retry_after
        return payload


class UpstreamTimeout(ScanError):
    http_status = 504
    error_code = "TIMEOUT"
    default_message = "분석 시간이 초과되었습니다. 다시 시도해 주세요."


class AIServiceError(ScanError):
    error_code = "GEMINI_API_ERROR"
    default_message = "AI 분석 서비스에 일시적인 문제가 있습니다."


class AIResponseError(ScanError):
    """AI answered, but the payload broke the contract (PARSE_ERROR and friends)."""
    error_code = "PARSE_ERROR"
    default_message = "AI 응답을 해석할 수 없습니다. 다시 시도해 주세요."


class DBConnectionError(ScanError):
    error_code = "DB_CONNECTION_ERROR"
    default_message = "데이터베이스 연결에 문제가 있습니다."


class InternalError(ScanError):
    error_code = "INTERNAL_ERROR"
