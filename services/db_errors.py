# services/db_errors.py
from __future__ import annotations

import re
from fastapi import HTTPException

# Codes raised by our own triggers as "DB_ERROR: CODE"
DB_ERROR_HTTP_MAP: dict[str, tuple[int, str]] = {
    "PAYOUT_IMMUTABLE": (409, "Payout records cannot be changed"),
    "MARKER_PERMANENT": (409, "Processed payment markers cannot be changed"),
    "CREDENTIAL_ALREADY_USED": (409, "Credential already used"),
}

# SQLSTATE classes we translate; everything else fails closed.
PGCODE_HTTP_MAP: dict[str, tuple[int, str]] = {
    "23505": (409, "Duplicate request"),
    "23503": (422, "Referenced record not found"),
    "23514": (422, "Invalid value"),
    "57014": (503, "Database busy, please retry"),
}

_DB_ERROR_PATTERN = re.compile(r"\b(" + "|".join(map(re.escape, DB_ERROR_HTTP_MAP.keys())) + r")\b")


def _extract_code_from_text(text: str) -> str | None:
    if not text:
        return None

    if "DB_ERROR:" in text:
        tail = text.split("DB_ERROR:", 1)[1].strip()
        m = _DB_ERROR_PATTERN.search(tail)
        if m:
            return m.group(1)
        first = tail.split()[0].strip(":").strip() if tail.split() else ""
        return first or None

    m = _DB_ERROR_PATTERN.search(text)
    if m:
        return m.group(1)

    return None


def _extract_code(exc: Exception) -> str | None:
    """
    Extract our trigger code from str(exc) or the psycopg2 diagnostics.
    """
    code = _extract_code_from_text(str(exc))
    if code:
        return code

    diag = getattr(exc, "diag", None)
    if diag is not None:
        for attr in ("message_primary", "message_detail", "message_hint", "context"):
            val = getattr(diag, attr, None)
            if isinstance(val, str) and val:
                code = _extract_code_from_text(val)
                if code:
                    return code

    return None


def http_error_for_db_error(exc: Exception) -> HTTPException:
    code = _extract_code(exc)
    if code and code in DB_ERROR_HTTP_MAP:
        status, message = DB_ERROR_HTTP_MAP[code]
        return HTTPException(status_code=status, detail=message)

    pgcode = getattr(exc, "pgcode", None)
    if pgcode and pgcode in PGCODE_HTTP_MAP:
        status, message = PGCODE_HTTP_MAP[pgcode]
        return HTTPException(status_code=status, detail=message)

    return HTTPException(status_code=500, detail="Internal server error")

