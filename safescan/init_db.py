# safescan/init_db.py
"""Create / upgrade the SafeScan DB and seed allergen mappings. Safe to rerun."""
from __future__ import annotations

import logging

from . import db, scan_jobs, settings
from .allergen_db import seed_allergen_mappings

log = logging.getLogger(__name__)


def ensure_folders() -> None:
    db.DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    settings.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)


def init_db(*, seed: bool = True) -> int:
    """Apply schema.sql, then seed; returns the number of mapping rows added."""
    ensure_folders()
    with db.connection() as conn:
        db.apply_schema(conn)
        added = seed_allergen_mappings(conn) if seed else 0
    purged = scan_jobs.purge_expired()
    if purged:
        log.info("Purged %d expired scan jobs", purged)
    log.info("DB ready at %s (%d allergen mappings added)", db.DB_PATH, added)
    return added


def main() -> None:
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    added = init_db()
    print(f"[SafeScan] DB ready: {db.DB_PATH}")
    print(f"[SafeScan] Allergen mappings added: {added}")
    print(f"[SafeScan] Uploads:  {settings.UPLOAD_DIR}")


if __name__ == "__main__":
    main()
