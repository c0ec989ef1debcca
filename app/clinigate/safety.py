"""Output safety validation and input sanitising.

Model text is checked against the task's output contract, the deny and
warning phrase lists, the role allow-list and a PII heuristic before any
of it reaches a caller or the cache.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from clinigate.extractor import check_schema, extract_json_candidate
from clinigate.policy import SafetyPolicy
from clinigate.schemas import SafetyVerdict
from clinigate.tasks import TaskSpec

logger = logging.getLogger(__name__)


FALLBACK_MESSAGE = (
    "AI guidance is not available for this request because the generated text did not pass "
    "clinical safety checks. Please continue with the IMCI protocol and your clinical judgment."
)
REDACTION_MARK = "[REDACTED]"

_PII_PATTERNS = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(r"(?<!\d)(?:\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}(?!\d)"),
    "national_id": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "medical_record_number": re.compile(r"\b(?:MRN|medical record(?: number)?)\s*[:#]?\s*[A-Z0-9-]{4,}\b", re.IGNORECASE),
    "date_of_birth": re.compile(
        r"\b(?:DOB|date of birth|born)\s*:?\s*\d{1,2}[/-]\d{1,2}[/-]\d{2,4}\b",
        re.IGNORECASE,
    ),
    "street_address": re.compile(
        r"\b\d{1,5}\s+[A-Za-z]+(?:\s+[A-Za-z]+)?\s+(?:Street|St|Avenue|Ave|Road|Rd|Lane|Ln|Drive|Dr)\b",
        re.IGNORECASE,
    ),
}

_HALLUCINATION_PATTERNS = {
    "specific_dose_claim": re.compile(r"\bspecific dos\w* of \d+", re.IGNORECASE),
    "exact_quantity_claim": re.compile(r"\bexactly \d+(?:\.\d+)?\s*(?:mg|ml|tablets?)\b", re.IGNORECASE),
    "certainty_claim": re.compile(r"\bI (?:definitely|certainly|absolutely) (?:recommend|prescribe|diagnose)\b", re.IGNORECASE),
    "uncited_study": re.compile(r"\baccording to (?:a |the )?stud(?:y|ies) (?:from |in |of )?\d{4}\b", re.IGNORECASE),
}

_INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(?:all\s+)?(?:previous|above|prior)\s+(?:instructions?|prompts?|context)", re.IGNORECASE),
    re.compile(r"(?:forget|disregard)\s+(?:all\s+)?(?:previous|above|prior)(?:\s+instructions?)?", re.IGNORECASE),
    re.compile(r"you\s+are\s+now\s+", re.IGNORECASE),
    re.compile(r"pretend\s+(?:to\s+be|you\s+are)", re.IGNORECASE),
    re.compile(r"^\s*(?:system|assistant)\s*:", re.IGNORECASE | re.MULTILINE),
    re.compile(r"\[(?:SYSTEM|ADMIN|OVERRIDE)\]", re.IGNORECASE),
    re.compile(r"(?:new|override)\s+instructions?\s*:", re.IGNORECASE),
    re.compile(r"(?:print|show|repeat|output)\s+(?:me\s+)?(?:your|the)\s+(?:prompt|instructions|system)", re.IGNORECASE),
    re.compile(r"<\|.*?\|>"),
    re.compile(r"\{\{.*?\}\}"),
    re.compile(r"<%.*?%>"),
]
_MARKUP_PATTERNS = [
    re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE),
    re.compile(r"<iframe\b[^>]*>", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
]


@lru_cache(maxsize=512)
def _phrase_pattern(phrase: str) -> re.Pattern[str]:
    # Left boundary only, so inflections ("prescribed") still match.
    return re.compile(rf"(?<![a-z]){re.escape(phrase)}", re.IGNORECASE)


def find_phrases(text: str, phrases: list[str]) -> list[str]:
    return [phrase for phrase in phrases if _phrase_pattern(phrase).search(text or "")]


def find_pii(text: str) -> list[str]:
    return [name for name, pattern in _PII_PATTERNS.items() if pattern.search(text or "")]


def find_hallucination_risks(text: str) -> list[str]:
    return [name for name, pattern in _HALLUCINATION_PATTERNS.items() if pattern.search(text or "")]


def redact(text: str, phrases: list[str]) -> str:
    """Audit copy of a blocked response. Never shown to callers."""
    out = text or ""
    for phrase in phrases:
        out = _phrase_pattern(phrase).sub(REDACTION_MARK, out)
    for pattern in _PII_PATTERNS.values():
        out = pattern.sub(REDACTION_MARK, out)
    return out


class SafetyValidator:
    def __init__(self, policy: SafetyPolicy):
        self._policy = policy

    @property
    def policy(self) -> SafetyPolicy:
        return self._policy

    def check_role(self, role: str, task: str) -> bool:
        return self._policy.role_permits(role, task)

    def deny_hits(self, text: str) -> list[str]:
        return find_phrases(text, self._policy.deny_phrases)

    def validate(
        self,
        text: str,
        task: TaskSpec,
        role: str,
        *,
        structured: dict[str, Any] | None = None,
    ) -> SafetyVerdict:
        role_permitted = self.check_role(role, task.name)

        schema_errors: list[str] = []
        if task.output_model is not None:
            payload = structured if structured is not None else extract_json_candidate(text)
            schema_errors = check_schema(task.output_model, payload)

        blocked = self.deny_hits(text)
        warnings = find_phrases(text, self._policy.warning_phrases)
        pii = find_pii(text)
        risk_flags = [f"hallucination:{name}" for name in find_hallucination_risks(text)]
        risk_flags += [f"pii:{name}" for name in pii]

        block_reason = None
        if not role_permitted:
            block_reason = f"role '{role}' is not permitted to run task '{task.name}'"
        elif blocked:
            block_reason = "response contained restricted clinical language: " + ", ".join(blocked)
        elif schema_errors:
            block_reason = "response did not match the required output structure"

        allowed = block_reason is None
        # Only a deny hit or a role rejection replaces the text.
        replace_text = not role_permitted or bool(blocked)
        verdict = SafetyVerdict(
            allowed=allowed,
            output=FALLBACK_MESSAGE if replace_text else text,
            role_permitted=role_permitted,
            blocked_phrases=blocked,
            warning_phrases=warnings,
            schema_errors=schema_errors,
            risk_flags=risk_flags,
            pii_suspected=bool(pii),
            was_modified=replace_text,
            block_reason=block_reason,
        )
        if not allowed:
            logger.warning(
                "safety_blocked: task=%s role=%s reason=%s",
                task.name,
                role,
                block_reason,
            )
        elif pii:
            logger.warning("safety_pii_suspected: task=%s kinds=%s", task.name, ",".join(pii))
        return verdict


@dataclass
class SanitizedText:
    text: str
    removed: list[str] = field(default_factory=list)

    @property
    def modified(self) -> bool:
        return bool(self.removed)


class InputSanitizer:
    """Strips prompt-injection and markup from caller-supplied context values."""

    def __init__(self, *, max_length: int = 4000):
        self._max_length = max_length

    def sanitize(self, value: str) -> SanitizedText:
        removed: list[str] = []
        text = str(value)
        for pattern in [*_INJECTION_PATTERNS, *_MARKUP_PATTERNS]:
            matches = pattern.findall(text)
            if matches:
                removed.extend(m if isinstance(m, str) else " ".join(m) for m in matches)
                text = pattern.sub(" ", text)
        text = re.sub(r"[ \t]+", " ", text)
        text = re.sub(r"\n{3,}", "\n\n", text).strip()
        if len(text) > self._max_length:
            removed.append(f"<truncated {len(text) - self._max_length} chars>")
            text = text[: self._max_length].rstrip()
        if removed:
            logger.info("input_sanitized: removed=%d", len(removed))
        return SanitizedText(text=text, removed=removed)

    def sanitize_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.sanitize(value).text
        if isinstance(value, dict):
            return {k: self.sanitize_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.sanitize_value(v) for v in value]
        return value
