"""Deterministic IMCI consistency checks between findings and triage priority."""

from __future__ import annotations

import re
from typing import Any, Iterable

from clinigate.schemas import InconsistencyFinding


RED_SIGNS = (
    "unable_to_drink",
    "vomits_everything",
    "convulsions",
    "lethargic_or_unconscious",
    "cyanosis",
    "severe_respiratory_distress",
)
YELLOW_SIGNS = (
    "fast_breathing",
    "chest_indrawing",
    "fever",
    "low_body_temp",
    "not_feeding_well",
)
SIGN_ALIASES = {
    "respiratory_distress_severe": "severe_respiratory_distress",
}

# (upper age bound in months, fast-breathing threshold in breaths/min)
FAST_BREATHING_BANDS = (
    (2, 60, "under 2 months"),
    (12, 50, "2-12 months"),
    (None, 40, "12-60 months"),
)
DEFAULT_AGE_MONTHS = 12

_RR_KEYS = ("respiratory_rate", "rr", "resp_rate", "respiratoryRate")
# Spellings of the assigned priority seen in clinic records, most specific first.
TRIAGE_PRIORITY_KEYS = ("triage_priority", "triagePriority", "triage", "triage_color", "triageColor")


def _label(field: str) -> str:
    return field.replace("_", " ").capitalize()


def _canonical(name: str) -> str:
    token = re.sub(r"[^a-z0-9]+", "_", str(name).strip().lower()).strip("_")
    return SIGN_ALIASES.get(token, token)


def normalize_findings(findings: Any) -> dict[str, Any]:
    """Accept a list of sign names or a mapping of field values."""
    if findings is None:
        return {}
    if isinstance(findings, dict):
        return {_canonical(k): v for k, v in findings.items()}
    if isinstance(findings, str):
        findings = [part for part in re.split(r"[,;\n]", findings) if part.strip()]
    if isinstance(findings, Iterable):
        return {_canonical(item): True for item in findings if str(item).strip()}
    return {}


def fast_breathing_threshold(age_months: int | None) -> tuple[int, str]:
    age = DEFAULT_AGE_MONTHS if age_months is None else age_months
    for upper, threshold, band in FAST_BREATHING_BANDS:
        if upper is None or age < upper:
            return threshold, band
    return FAST_BREATHING_BANDS[-1][1], FAST_BREATHING_BANDS[-1][2]


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def detect(
    findings: Any,
    triage_priority: str | None,
    *,
    age_months: int | None = None,
    vitals: dict[str, Any] | None = None,
) -> list[InconsistencyFinding]:
    priority = str(triage_priority or "").strip().lower()
    if priority not in {"red", "yellow", "green"}:
        return []

    values = normalize_findings(findings)
    for key, value in (vitals or {}).items():
        values.setdefault(_canonical(key), value)

    out: list[InconsistencyFinding] = []

    if priority != "red":
        for sign in RED_SIGNS:
            if values.get(sign) is True:
                out.append(
                    InconsistencyFinding(
                        category="danger_sign_mismatch",
                        field=sign,
                        observed=True,
                        expected="red",
                        message=(
                            f"{_label(sign)} is present but priority is {priority.upper()}. "
                            "This danger sign requires RED priority under IMCI."
                        ),
                        severity="error",
                    )
                )

    if priority == "green":
        for sign in YELLOW_SIGNS:
            if values.get(sign) is True:
                out.append(
                    InconsistencyFinding(
                        category="danger_sign_mismatch",
                        field=sign,
                        observed=True,
                        expected="yellow or red",
                        message=f"{_label(sign)} is present but priority is GREEN.",
                        severity="warning",
                    )
                )

    respiratory_rate = None
    for key in _RR_KEYS:
        respiratory_rate = _as_number(values.get(_canonical(key)))
        if respiratory_rate is not None:
            break

    if respiratory_rate is not None and priority == "green":
        threshold, band = fast_breathing_threshold(age_months)
        if respiratory_rate >= threshold:
            out.append(
                InconsistencyFinding(
                    category="threshold_exceeded",
                    field="respiratory_rate",
                    observed=respiratory_rate,
                    expected=f"below {threshold}/min for age {band}",
                    message=(
                        f"Respiratory rate {respiratory_rate:g}/min meets the IMCI fast-breathing "
                        f"threshold of {threshold}/min for age {band} but priority is GREEN."
                    ),
                    severity="warning",
                )
            )

    if values.get("lethargic_or_unconscious") is True and str(values.get("consciousness", "")).lower() == "alert":
        out.append(
            InconsistencyFinding(
                category="contradiction",
                field="consciousness",
                observed="alert",
                expected="consistent with lethargy",
                message="Patient is recorded as alert and also as lethargic or unconscious.",
                severity="error",
            )
        )

    if values.get("unable_to_drink") is True and values.get("drinks_normally") is True:
        out.append(
            InconsistencyFinding(
                category="contradiction",
                field="hydration",
                observed="drinks normally",
                expected="unable to drink",
                message="Patient is recorded as unable to drink and also as drinking normally.",
                severity="error",
            )
        )

    if priority != "red" and respiratory_rate is None:
        out.append(
            InconsistencyFinding(
                category="missing_data",
                field="respiratory_rate",
                observed=None,
                expected="respiratory rate measurement",
                message="Respiratory rate not recorded. It is needed for IMCI classification.",
                severity="info",
            )
        )

    return out


def triage_priority_of(context: dict[str, Any]) -> str | None:
    for key in TRIAGE_PRIORITY_KEYS:
        value = context.get(key)
        if value:
            return str(value).strip().lower()
    return None


def detect_from_context(context: dict[str, Any]) -> list[InconsistencyFinding]:
    findings: dict[str, Any] = {}
    for key in ("findings", "danger_signs", "signs", "answers"):
        findings.update(normalize_findings(context.get(key)))
    for key in ("consciousness", "drinks_normally", *_RR_KEYS):
        if key in context and _canonical(key) not in findings:
            findings[_canonical(key)] = context[key]

    vitals = context.get("vitals") if isinstance(context.get("vitals"), dict) else None
    age = _as_number(context.get("age_months"))
    return detect(findings, triage_priority_of(context), age_months=int(age) if age is not None else None, vitals=vitals)


def merge(model_items: list[str], findings: list[InconsistencyFinding]) -> list[str]:
    """Deterministic findings first; model claims appended unless they repeat one."""
    merged: list[str] = []
    seen: set[str] = set()

    def _key(text: str) -> str:
        return re.sub(r"[^a-z0-9]+", " ", text.lower()).strip()

    for finding in findings:
        key = _key(finding.message)
        if key not in seen:
            seen.add(key)
            merged.append(finding.message)

    for item in model_items:
        key = _key(item)
        if not key or key in seen:
            continue
        seen.add(key)
        merged.append(item.strip())
    return merged
