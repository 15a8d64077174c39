# safescan/scan_jobs.py
"""
Scan job store for the PARTIAL -> FINAL protocol.

A job is created (PENDING, with the quick verdict) before a PARTIAL response is
returned, then moved exactly once to FINAL or ERROR by the background AI task.
Jobs expire JOB_TTL_S seconds after creation; expired jobs read as missing and
are deleted on access or by purge_expired().
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any, Dict, Optional

from . import db, settings

PENDING = "PENDING"
FINAL = "FINAL"
ERROR = "ERROR"


def generate_job_id() -> str:
    return uuid.uuid4().hex


def _loads(raw: Optional[str]) -> Any:
    return json.loads(raw) if raw else None


def _row_to_job(row) -> Dict[str, Any]:
    d = db.row_to_dict(row)
    d["quick"] = _loads(d.pop("quick_json"))
    d["result"] = _loads(d.pop("result_json"))
    d["timings"] = _loads(d.pop("timings_json")) or {}
    return d


def create_pending_job(
    user_id: str,
    quick: Dict[str, Any],
    *,
    timings: Optional[Dict[str, Any]] = None,
    image_url: Optional[str] = None,
    job_id: Optional[str] = None,
) -> str:
    job_id = job_id or generate_job_id()
    with db.connection() as conn:
        conn.execute(
            """
            INSERT INTO scan_jobs (job_id, user_id, status, quick_json, timings_json, image_url, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (job_id, str(user_id), PENDING, json.dumps(quick, ensure_ascii=False),
             json.dumps(timings or {}), image_url, time.time()),
        )
    return job_id


def complete_job(job_id: str, result: Dict[str, Any], timings: Dict[str, Any]) -> bool:
    """PENDING -> FINAL. Returns False if the job is gone or already settled."""
    with db.connection() as conn:
        cur = conn.execute(
            """
            UPDATE scan_jobs
               SET status = ?, result_json = ?, timings_json = ?, completed_at = ?
             WHERE job_id = ? AND status = ?
            """,
            (FINAL, json.dumps(result, ensure_ascii=False), json.dumps(timings),
             time.time(), job_id, PENDING),
        )
        return cur.rowcount == 1


def fail_job(job_id: str, error_code: str, message: str,
             timings: Optional[Dict[str, Any]] = None) -> bool:
    """PENDING -> ERROR. `message` must already be user-safe."""
    with db.connection() as conn:
        cur = conn.execute(
            """
            UPDATE scan_jobs
               SET status = ?, error_code = ?, error_message = ?, completed_at = ?,
                   timings_json = COALESCE(?, timings_json)
             WHERE job_id = ? AND status = ?
            """,
            (ERROR, error_code, message, time.time(),
             json.dumps(timings) if timings is not None else None, job_id, PENDING),
        )
        return cur.rowcount == 1


def get_job(job_id: str, *, user_id: Optional[str] = None,
            ttl_s: int = settings.JOB_TTL_S) -> Optional[Dict[str, Any]]:
    """Fetch a live job. Expired jobs are deleted and reported as missing."""
    if not job_id:
        return None
    with db.connection() as conn:
        row = conn.execute("SELECT * FROM scan_jobs WHERE job_id = ?", (job_id,)).fetchone()
        if not row:
            return None
        if time.time() - float(row["created_at"]) > ttl_s:
            conn.execute("DELETE FROM scan_jobs WHERE job_id = ?", (job_id,))
            return None
    job = _row_to_job(row)
    if user_id is not None and job["user_id"] != str(user_id):
        return None
    return job


def purge_expired(ttl_s: int = settings.JOB_TTL_S) -> int:
    with db.connection() as conn:
        cur = conn.execute("DELETE FROM scan_jobs WHERE created_at < ?", (time.time() - ttl_s,))
        return cur.rowcount
