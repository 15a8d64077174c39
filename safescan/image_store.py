# safescan/image_store.py
"""Storage collaborator: persist the original upload and hand back a URL."""
from __future__ import annotations

import uuid
from pathlib import Path
from typing import Optional

from werkzeug.utils import secure_filename

from . import settings

_EXT = {"image/jpeg": "jpg", "image/jpg": "jpg", "image/png": "png", "image/webp": "webp"}


class ImageStore:
    def __init__(self, root: Optional[Path] = None, url_prefix: str = "/uploads"):
        self.root = Path(root or settings.UPLOAD_DIR)
        self.url_prefix = url_prefix.rstrip("/")

    def save_original(self, data: bytes, mime_type: str, user_id: str = "") -> str:
        ext = _EXT.get((mime_type or "").lower(), "bin")
        prefix = secure_filename(str(user_id)) or "anon"
        name = f"{prefix}_{uuid.uuid4().hex}.{ext}"
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / name).write_bytes(data)
        return f"{self.url_prefix}/{name}"
