# safescan/settings.py
"""
Runtime configuration, read once from the environment (and `.env` if present).

Everything here is a plain module constant so call sites can pass values into
constructors explicitly; tests override by passing their own values rather
than patching this module.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]   # project root

load_dotenv(ROOT / ".env")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# --- Paths ---
DB_PATH = Path(os.getenv("SAFESCAN_DB_PATH") or (ROOT / "safescan" / "safescan.db"))
UPLOAD_DIR = Path(os.getenv("SAFESCAN_UPLOAD_DIR") or (ROOT / "uploads"))

# --- Logging ---
LOG_LEVEL = (os.getenv("SAFESCAN_LOG_LEVEL") or "INFO").upper()

# --- OCR ---
OCR_PROVIDER = (os.getenv("SAFESCAN_OCR_PROVIDER") or "tesseract").lower()   # tesseract | vision
OCR_OPTIMIZE = _env_bool("SAFESCAN_OCR_OPTIMIZE", True)
GOOGLE_VISION_API_KEY = os.getenv("GOOGLE_VISION_API_KEY") or ""
TESSERACT_CMD = os.getenv("TESSERACT_CMD") or None
TESSERACT_LANG = os.getenv("TESSERACT_LANG") or "kor+eng"
TESSERACT_CONFIG = os.getenv("TESSERACT_CONFIG") or "--oem 1 --psm 6"
OCR_TIMEOUT_S = _env_int("SAFESCAN_OCR_TIMEOUT_S", 10)

# --- AI ---
AI_PROVIDER = (os.getenv("SAFESCAN_AI_PROVIDER") or "gemini").lower()        # gemini | claude
GEMINI_MODEL = os.getenv("GEMINI_MODEL") or "gemini-2.0-flash"
GEMINI_FAST_MODEL = os.getenv("GEMINI_FAST_MODEL") or "gemini-2.5-flash-lite"
CLAUDE_MODEL = os.getenv("CLAUDE_MODEL") or "claude-sonnet-4-5-20250929"
CLAUDE_FAST_MODEL = os.getenv("CLAUDE_FAST_MODEL") or "claude-haiku-4-5"
AI_DEADLINE_MS = _env_int("SAFESCAN_AI_DEADLINE_MS", 3000)   # PARTIAL after this
AI_HARD_TIMEOUT_S = _env_int("SAFESCAN_AI_HARD_TIMEOUT_S", 60)
FAST_JUDGMENT_ENABLED = _env_bool("SAFESCAN_FAST_JUDGMENT", True)
FAST_TIMEOUT_MS = _env_int("SAFESCAN_FAST_TIMEOUT_MS", 1500)     # text-only S/C/D race
RATE_LIMIT_RETRY_AFTER_S = 20

# --- Jobs ---
JOB_TTL_S = _env_int("SAFESCAN_JOB_TTL_S", 30 * 60)

# --- HTTP ---
MAX_CONTENT_LENGTH = 20 * 1024 * 1024        # ~20 MB
SECRET_KEY = os.getenv("SAFESCAN_SECRET_KEY") or "dev-secret-change-me"
