"""
Shared fixtures for the SafeScan tests.

Every test gets its own on-disk SQLite file (schema + seeded allergen
mappings) so worker threads spawned by asyncio.to_thread can open their
own connections to the same DB.
"""

from __future__ import annotations

import io
import os
import sys

import pytest
from PIL import Image

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))


@pytest.fixture()
def fresh_db(tmp_path, monkeypatch):
    import safescan.db as db_mod
    from safescan import init_db, settings

    monkeypatch.setattr(db_mod, "DB_PATH", tmp_path / "safescan-test.db")
    monkeypatch.setattr(settings, "UPLOAD_DIR", tmp_path / "uploads")
    init_db.init_db()
    return db_mod.DB_PATH


def make_jpeg(width: int = 40, height: int = 20, color=(200, 30, 30), exif_orientation=None) -> bytes:
    img = Image.new("RGB", (width, height), color)
    buf = io.BytesIO()
    if exif_orientation is not None:
        exif = Image.Exif()
        exif[0x0112] = exif_orientation
        img.save(buf, format="JPEG", quality=95, exif=exif.tobytes())
    else:
        img.save(buf, format="JPEG", quality=95)
    return buf.getvalue()


def make_png(width: int = 40, height: int = 20, color=(255, 255, 255, 255)) -> bytes:
    img = Image.new("RGBA", (width, height), color)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def make_gif(width: int = 8, height: int = 8) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (0, 128, 0)).save(buf, format="GIF")
    return buf.getvalue()
