"""Prompt assembly for single-shot tasks and sectioned assessments."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from clinigate.errors import ValidationFailureError
from clinigate.safety import InputSanitizer
from clinigate.schemas import PatientSummary, PromptSchema, PromptSection
from clinigate.tasks import TaskSpec
from clinigate.utils import sha256_hex

logger = logging.getLogger(__name__)


PROMPT_VERSION = "2026.10"
SUMMARY_MARKER = "SUMMARY:"
MAX_PRIOR_SUMMARIES = 2
NOT_RECORDED = "Not recorded"

GUARDRAIL_PREAMBLE = (
    "You are a clinical decision-support assistant for health workers using WHO IMCI protocols.\n"
    "You are NOT allowed to: diagnose any condition, prescribe medication, recommend specific dosages, "
    "change triage classification, or override WHO IMCI rules.\n"
    "Explain and organise what the health worker documented. The health worker makes every clinical decision."
)

_HEADINGS_FORMAT = (
    "Start with a short explanation paragraph. Then write the headings INCONSISTENCIES:, "
    "TEACHING NOTES: and NEXT STEPS:, each followed by a bulleted list. "
    "Write 'None' under INCONSISTENCIES: if the findings agree with the triage priority.\n"
    f"End with one line starting with {SUMMARY_MARKER} that states the key point in one sentence."
)

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")
_DEFAULT_SCHEMA_DIR = Path(__file__).resolve().parent / "prompt_schemas"


@dataclass(frozen=True)
class BuiltPrompt:
    prompt: str
    task: str
    version: str
    temperature: float
    max_tokens: int
    word_limit: int

    @property
    def prompt_hash(self) -> str:
        return sha256_hex(self.prompt)[:16]


def format_patient_age(months: Any) -> str:
    if months is None or isinstance(months, bool):
        return "age not specified"
    try:
        months = int(months)
    except (TypeError, ValueError):
        return str(months)
    if months < 0:
        return "age not specified"
    if months == 0:
        return "newborn (0 months)"
    if months < 12:
        return f"{months} month{'s' if months != 1 else ''} old"
    years, rest = divmod(months, 12)
    out = f"{years} year{'s' if years != 1 else ''}"
    if rest:
        out += f" {rest} month{'s' if rest != 1 else ''}"
    return out + " old"


def format_value(value: Any) -> str:
    if value is None or value == "":
        return NOT_RECORDED
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=True, default=str)
    return str(value)


def _label(key: str, labels: dict[str, str] | None = None) -> str:
    if labels and key in labels:
        return labels[key]
    return key.replace("_", " ").capitalize()


def _render_block(value: Any) -> str:
    if isinstance(value, dict):
        lines = [f"- {_label(str(k))}: {format_value(v)}" for k, v in value.items() if v is not None]
        return "\n".join(lines) or NOT_RECORDED
    if isinstance(value, list):
        lines = [f"- {format_value(v)}" for v in value if v not in (None, "")]
        return "\n".join(lines) or NOT_RECORDED
    return format_value(value)


def _output_instructions(task: TaskSpec) -> str:
    if task.output_model is None:
        return _HEADINGS_FORMAT

    schema = task.output_model.model_json_schema()
    required = set(schema.get("required", []))
    lines = ["Respond with one JSON object and nothing else. Required keys:"]
    for key, prop in schema.get("properties", {}).items():
        if key not in required:
            continue
        hint = prop.get("type", "value")
        if "enum" in prop:
            hint = "one of " + ", ".join(str(v) for v in prop["enum"])
        elif hint == "array":
            hint = "list"
        lines.append(f"- {key}: {hint}")
    lines.append(
        "Optional keys: inconsistencies (list of strings), teaching_notes (list of strings), "
        "next_steps (list of strings), summary (one sentence)."
    )
    return "\n".join(lines)


def retained_summaries(prior_summaries: list[str]) -> list[str]:
    cleaned = [" ".join(str(s).split()) for s in prior_summaries if str(s or "").strip()]
    out: list[str] = []
    for summary in cleaned[-MAX_PRIOR_SUMMARIES:]:
        if summary not in out:
            out.append(summary)
    return out


class PromptAssembler:
    def __init__(
        self,
        *,
        schema_dir: str | Path | None = None,
        sanitizer: InputSanitizer | None = None,
    ):
        self._schema_dir = Path(schema_dir) if schema_dir else _DEFAULT_SCHEMA_DIR
        self._sanitizer = sanitizer or InputSanitizer()
        self._schemas: dict[str, PromptSchema] = {}

    def _context_value(self, key: str, context: dict[str, Any]) -> str:
        if key == "age" and context.get("age") in (None, ""):
            if context.get("age_months") is not None:
                return format_patient_age(context["age_months"])
        if key == "age_months" and context.get("age_months") is None:
            return NOT_RECORDED
        return _render_block(context.get(key))

    def build(self, task: TaskSpec, context: dict[str, Any], *, history: list[str] | None = None, max_words: int | None = None) -> BuiltPrompt:
        clean = self._sanitizer.sanitize_value(dict(context))
        body = _PLACEHOLDER_RE.sub(lambda m: self._context_value(m.group(1), clean), task.template)
        word_limit = min(max_words, task.word_limit) if max_words else task.word_limit

        parts = [GUARDRAIL_PREAMBLE, ""]
        prior = retained_summaries(history or [])
        if prior:
            parts.extend(["=== PREVIOUS CLINICAL SUMMARY ===", *prior, ""])
        parts.extend(
            [
                body.strip(),
                "",
                "OUTPUT FORMAT:",
                _output_instructions(task),
                "",
                f"Keep your response under {word_limit} words.",
            ]
        )
        return BuiltPrompt(
            prompt="\n".join(parts),
            task=task.name,
            version=PROMPT_VERSION,
            temperature=task.temperature,
            max_tokens=task.max_tokens,
            word_limit=word_limit,
        )

    def load_schema(self, schema_id: str) -> PromptSchema:
        if schema_id in self._schemas:
            return self._schemas[schema_id]
        if not re.fullmatch(r"[A-Za-z0-9_-]+", schema_id or ""):
            raise ValidationFailureError(f"Invalid prompt schema id '{schema_id}'.")

        for name in (f"{schema_id}.json", f"{schema_id}_schema.json"):
            path = self._schema_dir / name
            if path.exists():
                schema = PromptSchema.model_validate(json.loads(path.read_text(encoding="utf-8")))
                self._schemas[schema_id] = schema
                logger.info("prompt_schema_loaded: schema_id=%s sections=%d", schema_id, len(schema.sections))
                return schema
        raise ValidationFailureError(f"Prompt schema '{schema_id}' not found.")

    @staticmethod
    def resolve_section(schema: PromptSchema, section_id: str) -> PromptSection:
        by_id = {section.id: section for section in schema.sections}
        if section_id in by_id:
            return by_id[section_id]
        if schema.fallback_section and schema.fallback_section in by_id:
            logger.info("prompt_section_fallback: schema_id=%s requested=%s", schema.schema_id, section_id)
            return by_id[schema.fallback_section]
        raise ValidationFailureError(f"Unknown section '{section_id}' in schema '{schema.schema_id}'.")

    def build_section(
        self,
        schema: PromptSchema,
        section_id: str,
        answers: dict[str, Any],
        patient: PatientSummary | None = None,
        prior_summaries: list[str] | None = None,
        *,
        task: TaskSpec,
    ) -> BuiltPrompt:
        section = self.resolve_section(schema, section_id)
        clean = self._sanitizer.sanitize_value(dict(answers))

        lines = [schema.system_guardrails or GUARDRAIL_PREAMBLE, ""]

        prior = retained_summaries(prior_summaries or [])
        if section.cumulative and prior:
            lines.extend(["=== PREVIOUS CLINICAL SUMMARY ===", *prior, ""])

        if patient is not None:
            weight = f"{patient.weight_kg:g}kg" if patient.weight_kg is not None else "weight not recorded"
            lines.append(f"PATIENT: {format_patient_age(patient.age_months)}, {weight}, {patient.gender or 'gender not recorded'}")
            if patient.triage_priority:
                lines.append(f"CURRENT TRIAGE PRIORITY: {patient.triage_priority.upper()}")
            lines.append("")

        lines.append(f"=== SECTION: {section.title} ===")
        if section.goal:
            lines.append(f"GOAL: {section.goal}")
        lines.append("")

        if section.required_context:
            lines.append("FINDINGS IN THIS SECTION:")
            for field_id in section.required_context:
                lines.append(f"- {_label(field_id, schema.field_labels)}: {format_value(clean.get(field_id))}")
            lines.append("")

        lines.extend(["INSTRUCTION:", section.instruction, ""])

        word_limit = min(section.max_words, task.word_limit) if task.word_limit else section.max_words
        lines.append(f"Keep your response under {word_limit} words.")
        if section.output_format:
            lines.append(f"Use {section.output_format}.")
        lines.append("")

        if section.guardrails:
            lines.extend([section.guardrails, ""])

        if section.cumulative:
            lines.append(
                f"IMPORTANT: End your response with one line starting with \"{SUMMARY_MARKER}\" "
                "that states the most important clinical takeaway of this section in a single sentence."
            )
            if section.summary_instruction:
                lines.append(f"SUMMARY INSTRUCTION: {section.summary_instruction}")

        prompt = "\n".join(lines).rstrip() + "\n"
        logger.debug("section_prompt_built: section=%s chars=%d", section.id, len(prompt))
        return BuiltPrompt(
            prompt=prompt,
            task=task.name,
            version=f"{schema.schema_id}@{schema.version}",
            temperature=task.temperature,
            max_tokens=task.max_tokens,
            word_limit=word_limit,
        )
