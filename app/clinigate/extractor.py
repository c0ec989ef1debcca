"""Turn raw model text into a StructuredResponse.

JSON output is tried first; heading-marked prose is the fallback. Both
strategies share one confidence heuristic so identical text always scores
the same.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import BaseModel, ValidationError

from clinigate.schemas import StructuredResponse
from clinigate.utils import dedupe_text_items


CONFIDENCE_BASE = 0.7
CONFIDENCE_MIN = 0.3
CONFIDENCE_MAX = 0.95

_GUIDELINE_RE = re.compile(r"\bIMCI\b|\bWHO\b|(?i:\bguidelines?\b|\bprotocols?\b)")
_HEDGING_RE = re.compile(r"\b(might|possibly|perhaps|unclear|uncertain|cannot determine)\b", re.IGNORECASE)
_MISSING_RE = re.compile(r"\b(not recorded|missing|incomplete|insufficient)\b", re.IGNORECASE)
_SUMMARY_LINE_RE = re.compile(r"^\s*SUMMARY:\s*(.+?)\s*$", re.IGNORECASE | re.MULTILINE)
_NONE_RE = re.compile(r"^\s*(?:none\b.*|n/?a\.?|no (?:inconsistencies|issues)\b.*)\s*$", re.IGNORECASE)
_BULLET_RE = re.compile(r"^\s*(?:[-*\u2022]|\d+[.)])\s*")

# Priority words the JSON triage category maps onto.
_CATEGORY_TO_PRIORITY = {
    "emergency": "red",
    "urgent": "yellow",
    "routine": "green",
    "self_care": "green",
}

_HEADINGS = {
    "inconsistencies": ["INCONSISTENCIES"],
    "teaching_notes": ["TEACHING NOTES", "TEACHING NOTE"],
    "next_steps": ["NEXT STEPS"],
    "summary": ["SUMMARY"],
}


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```[a-zA-Z]*\n?", "", cleaned)
        cleaned = re.sub(r"\n?```$", "", cleaned)
    return cleaned.strip()


def extract_json_candidate(text: str) -> dict[str, Any] | None:
    body = strip_code_fences(text or "")
    if not body:
        return None

    try:
        parsed = json.loads(body)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = body.find("{")
    end = body.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            parsed = json.loads(body[start : end + 1])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            return None
    return None


def check_schema(output_model: type[BaseModel], payload: dict[str, Any] | None) -> list[str]:
    """Return schema errors for payload; each error names the offending key."""
    if payload is None:
        return ["response: expected a JSON object"]
    try:
        output_model.model_validate(payload)
    except ValidationError as exc:
        errors = []
        for item in exc.errors():
            location = ".".join(str(part) for part in item.get("loc", ())) or "response"
            errors.append(f"{location}: {item.get('msg', 'invalid value')}")
        return errors
    return []


def extract_summary(text: str) -> str | None:
    matches = _SUMMARY_LINE_RE.findall(text or "")
    if matches:
        return matches[-1].strip()
    sentences = [s.strip() for s in re.split(r"(?<=[.!?])\s+", (text or "").strip()) if s.strip()]
    for sentence in reversed(sentences):
        if len(sentence) > 20:
            return sentence
    return None


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        out = []
        for item in value:
            if isinstance(item, dict):
                item = item.get("description") or item.get("text") or json.dumps(item, sort_keys=True)
            cleaned = str(item).strip()
            if cleaned:
                out.append(cleaned)
        return out
    text = str(value).strip()
    if not text:
        return []
    return [text]


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _pick(payload: dict[str, Any], *names: str) -> Any:
    for name in names:
        for variant in (name, _camel(name)):
            if variant in payload and payload[variant] not in (None, "", []):
                return payload[variant]
    return None


def _find_first_header(text: str, headers: list[str]) -> tuple[int, int] | None:
    best: tuple[int, int] | None = None
    for header in headers:
        pattern = re.compile(rf"^\s*(?:#+\s*)?\**{re.escape(header)}\**\s*:\s*\**", re.IGNORECASE | re.MULTILINE)
        match = pattern.search(text)
        if not match:
            continue
        span = (match.start(), match.end())
        if best is None or span[0] < best[0]:
            best = span
    return best


def _extract_section_blocks(text: str) -> tuple[str, dict[str, str]]:
    anchors: list[tuple[int, int, str]] = []
    for key, header_list in _HEADINGS.items():
        span = _find_first_header(text, header_list)
        if span is not None:
            anchors.append((span[0], span[1], key))

    if not anchors:
        return text.strip(), {}

    anchors.sort(key=lambda x: x[0])
    preamble = text[: anchors[0][0]].strip()
    sections: dict[str, str] = {}
    for idx, (_, content_start, key) in enumerate(anchors):
        next_start = anchors[idx + 1][0] if idx + 1 < len(anchors) else len(text)
        sections[key] = text[content_start:next_start].strip()
    return preamble, sections


def _extract_list_items(block: str) -> list[str]:
    if _NONE_RE.match(block or ""):
        return []
    items: list[str] = []
    for line in block.splitlines():
        cleaned = _BULLET_RE.sub("", line).strip()
        if not cleaned or _NONE_RE.match(cleaned):
            continue
        items.append(cleaned)
    return items


@dataclass
class ExtractedSections:
    explanation: str
    inconsistencies: list[str] = field(default_factory=list)
    teaching_notes: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)
    summary: str | None = None
    payload: dict[str, Any] | None = None
    confidence: float | None = None


class ResponseExtractor(Protocol):
    def extract(self, raw_text: str) -> ExtractedSections | None: ...


class JsonExtractor:
    def extract(self, raw_text: str) -> ExtractedSections | None:
        payload = extract_json_candidate(raw_text)
        if payload is None:
            return None

        explanation = _pick(
            payload,
            "explanation",
            "category_rationale",
            "appropriateness_rationale",
            "rationale",
            "summary",
        )
        confidence = _pick(payload, "confidence", "confidence_score")
        if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
            confidence = None

        summary = _pick(payload, "summary", "carry_forward_summary")
        return ExtractedSections(
            explanation=str(explanation or "").strip(),
            inconsistencies=_as_list(_pick(payload, "inconsistencies")),
            teaching_notes=_as_list(_pick(payload, "teaching_notes", "teaching_note", "key_findings")),
            next_steps=_as_list(_pick(payload, "next_steps", "immediate_actions", "recommended_actions")),
            summary=str(summary).strip() if summary else None,
            payload=payload,
            confidence=float(confidence) if confidence is not None else None,
        )


class HeadingExtractor:
    def extract(self, raw_text: str) -> ExtractedSections | None:
        preamble, sections = _extract_section_blocks(raw_text or "")
        summary_block = sections.get("summary", "")
        summary = " ".join(summary_block.split()) if summary_block else extract_summary(raw_text or "")
        return ExtractedSections(
            explanation=preamble,
            inconsistencies=_extract_list_items(sections.get("inconsistencies", "")),
            teaching_notes=_extract_list_items(sections.get("teaching_notes", "")),
            next_steps=_extract_list_items(sections.get("next_steps", "")),
            summary=summary or None,
        )


def _echoes_priority(text: str, payload: dict[str, Any] | None, triage_priority: str | None) -> bool:
    if not triage_priority:
        return False
    priority = triage_priority.strip().lower()
    if payload is not None:
        category = str(_pick(payload, "triage_category") or "").strip().lower()
        if _CATEGORY_TO_PRIORITY.get(category) == priority:
            return True
    return re.search(rf"\b{re.escape(priority)}\b", text, re.IGNORECASE) is not None


def score_confidence(text: str, *, triage_priority: str | None = None, payload: dict[str, Any] | None = None) -> float:
    score = CONFIDENCE_BASE
    if len(text) > 200:
        score += 0.05
    if len(text) > 400:
        score += 0.05
    if _GUIDELINE_RE.search(text):
        score += 0.05
    if _echoes_priority(text, payload, triage_priority):
        score += 0.05
    if _HEDGING_RE.search(text):
        score -= 0.10
    if _MISSING_RE.search(text):
        score -= 0.05
    return clamp_confidence(score)


def clamp_confidence(value: float) -> float:
    return round(min(CONFIDENCE_MAX, max(CONFIDENCE_MIN, value)), 2)


class StructuredExtractor:
    def __init__(self, extractors: list[ResponseExtractor] | None = None):
        self._extractors = extractors or [JsonExtractor(), HeadingExtractor()]

    def parse(
        self,
        raw_text: str,
        model: str,
        triage_priority: str | None = None,
        *,
        output_model: type[BaseModel] | None = None,
    ) -> StructuredResponse:
        text = raw_text or ""
        sections = None
        for extractor in self._extractors:
            sections = extractor.extract(text)
            if sections is not None:
                break
        if sections is None:
            sections = ExtractedSections(explanation=text.strip())

        if sections.confidence is not None:
            confidence = clamp_confidence(sections.confidence)
        else:
            confidence = score_confidence(text, triage_priority=triage_priority, payload=sections.payload)

        validation_errors: list[str] = []
        if output_model is not None:
            validation_errors = check_schema(output_model, sections.payload)

        return StructuredResponse(
            explanation=sections.explanation,
            inconsistencies=dedupe_text_items(sections.inconsistencies),
            teaching_notes=dedupe_text_items(sections.teaching_notes),
            next_steps=dedupe_text_items(sections.next_steps),
            confidence=confidence,
            model=model,
            summary=sections.summary,
            structured_output=sections.payload,
            valid=not validation_errors,
            validation_errors=validation_errors,
        )
