"""Shared utility functions used across the pipeline."""
from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import orjson


# --- Text Utilities -----------------------------------------------------------

_WS_RE = re.compile(r"\s+")


def collapse_whitespace(text: str) -> str:
    """Trim and collapse every whitespace run (NBSP included) to one space."""
    return _WS_RE.sub(" ", text).strip()


def sha256_hex(text: str) -> str:
    """SHA-256 of UTF-8 text, hex encoded - used as the chunk fingerprint."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def truncate_text(text: str, max_chars: int = 300) -> str:
    """Truncate text for display purposes."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "..."


# --- Time ---------------------------------------------------------------------

def utc_now() -> datetime:
    """Naive UTC timestamp, the form stored in the job table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# --- File I/O -----------------------------------------------------------------

def save_json(data: Any, path: str | Path) -> None:
    """Serialise data to JSON using orjson (fast, handles datetime/UUID)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.write(orjson.dumps(data, option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS))


def load_json(path: str | Path) -> Any:
    """Load JSON data from file."""
    with open(Path(path), "rb") as f:
        return orjson.loads(f.read())
