"""Common utility helpers."""

from __future__ import annotations

import hashlib
import json
import re
from datetime import datetime, timezone
from time import perf_counter
from typing import Any


_WORD_RE = re.compile(r"\S+")
_SENTENCE_END_RE = re.compile(r"[.!?](?=\s|$)")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> float:
    return perf_counter() * 1000.0


def elapsed_ms(start_ms: float) -> int:
    return int(perf_counter() * 1000.0 - start_ms)


def count_words(text: str) -> int:
    return len(_WORD_RE.findall(text or ""))


def truncate_to_words(text: str, max_words: int) -> tuple[str, bool]:
    """Cap text at max_words.

    Prefers the last sentence boundary past half of the cap; otherwise cuts
    at the word limit and appends an ellipsis.
    """
    words = list(_WORD_RE.finditer(text or ""))
    if max_words <= 0 or len(words) <= max_words:
        return text, False

    cut_at = words[max_words - 1].end()
    head = text[:cut_at]
    half_at = words[max(0, max_words // 2 - 1)].end()

    boundary = -1
    for match in _SENTENCE_END_RE.finditer(head):
        if match.end() >= half_at:
            boundary = match.end()
    if boundary > 0:
        return head[:boundary].rstrip(), True
    return head.rstrip(" ,;:") + "...", True


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=True, sort_keys=True, separators=(",", ":"), default=str)


def dedupe_text_items(items: list[str], *, limit: int | None = None) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for item in items:
        cleaned = " ".join(str(item or "").split()).strip()
        if not cleaned:
            continue
        key = re.sub(r"[^a-z0-9 ]+", "", cleaned.lower()).strip()
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(cleaned)
        if limit is not None and len(out) >= limit:
            break
    return out
