# safescan/profiles.py
"""
Auth + profile collaborator: bearer-token resolution and the user's stored
allergy / diet profile.

Raw tokens are never stored; only their sha256 hex digest is.
"""
from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence, Tuple, Union

from . import db
from .errors import AuthError
from .scan_types import DEFAULT_SEVERITY, SEVERITY_TIERS, UserSafetyContext


def _now() -> datetime:
    return datetime.utcnow()


def _fmt(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ------------------------------------------------------------
# Tokens
# ------------------------------------------------------------
def issue_token(user_id: str, *, ttl: Optional[timedelta] = None) -> str:
    """Create a bearer token for a user; returns the raw token (shown once)."""
    raw = secrets.token_urlsafe(32)
    expires = _fmt(_now() + ttl) if ttl is not None else None
    with db.connection() as conn:
        conn.execute(
            "INSERT INTO api_tokens (token_hash, user_id, expires_at) VALUES (?, ?, ?)",
            (hash_token(raw), str(user_id), expires),
        )
    return raw


def resolve_token(raw: Optional[str]) -> str:
    """Return the user id for a raw bearer token or raise AuthError (401)."""
    if not raw or not raw.strip():
        raise AuthError()
    with db.connection() as conn:
        row = conn.execute(
            "SELECT user_id, expires_at FROM api_tokens WHERE token_hash = ?",
            (hash_token(raw.strip()),),
        ).fetchone()
    if not row:
        raise AuthError("인증 정보가 올바르지 않습니다.", error_code="INVALID_TOKEN")
    if row["expires_at"] and row["expires_at"] <= _fmt(_now()):
        raise AuthError("로그인이 만료되었습니다. 다시 로그인해 주세요.", error_code="TOKEN_EXPIRED")
    return str(row["user_id"])


def bearer_from_header(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


# ------------------------------------------------------------
# Profile
# ------------------------------------------------------------
AllergyEntry = Union[str, Tuple[str, str]]


def set_user_allergies(user_id: str, allergies: Iterable[AllergyEntry]) -> None:
    ctx = UserSafetyContext.build(allergies)
    with db.connection() as conn:
        conn.execute("DELETE FROM user_allergies WHERE user_id = ?", (str(user_id),))
        conn.executemany(
            "INSERT INTO user_allergies (user_id, allergy_code, severity, position) VALUES (?, ?, ?, ?)",
            [(str(user_id), code, sev, pos) for pos, (code, sev) in enumerate(ctx.allergies)],
        )


def set_user_diets(user_id: str, diets: Sequence[str]) -> None:
    ctx = UserSafetyContext.build((), diets)
    with db.connection() as conn:
        conn.execute("DELETE FROM user_diets WHERE user_id = ?", (str(user_id),))
        conn.executemany(
            "INSERT INTO user_diets (user_id, diet_code, position) VALUES (?, ?, ?)",
            [(str(user_id), code, pos) for pos, code in enumerate(ctx.diets)],
        )


def load_context(user_id: str) -> UserSafetyContext:
    with db.connection() as conn:
        allergies = conn.execute(
            "SELECT allergy_code, severity FROM user_allergies WHERE user_id = ? ORDER BY position, allergy_code",
            (str(user_id),),
        ).fetchall()
        diets = conn.execute(
            "SELECT diet_code FROM user_diets WHERE user_id = ? ORDER BY position, diet_code",
            (str(user_id),),
        ).fetchall()
    return UserSafetyContext.build(
        [(r["allergy_code"], r["severity"] if r["severity"] in SEVERITY_TIERS else DEFAULT_SEVERITY)
         for r in allergies],
        [r["diet_code"] for r in diets],
    )
