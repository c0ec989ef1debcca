"""Safety policy data: role permissions and phrase lists.

Defaults mirror the deployed clinic policy. A JSON file with the same keys
(`roles`, `deny_phrases`, `warning_phrases`) overrides them section by
section.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from clinigate.errors import ValidationFailureError

logger = logging.getLogger(__name__)


_NURSE_TASKS = [
    "explain_triage",
    "caregiver_summary",
    "symptom_checklist",
    "imci_classification",
    "section_guidance",
]

DEFAULT_ROLES: dict[str, list[str]] = {
    "nurse": list(_NURSE_TASKS),
    "senior-nurse": [*_NURSE_TASKS, "treatment_review", "emergency_assessment"],
    "clinician": [*_NURSE_TASKS, "treatment_review", "emergency_assessment", "clinical_summary", "handoff_report"],
    "doctor": [
        "explain_triage",
        "imci_classification",
        "section_guidance",
        "treatment_review",
        "specialist_review",
        "red_case_analysis",
        "emergency_assessment",
        "clinical_summary",
        "handoff_report",
    ],
    "radiologist": ["imaging_interpretation", "xray_analysis"],
    "dermatologist": ["skin_lesion_analysis", "rash_assessment"],
    "manager": [],
    "admin": [],
}

DEFAULT_DENY_PHRASES: list[str] = [
    "diagnose",
    "prescribe",
    "dosage",
    "replace doctor",
    "definitive treatment",
    "discharge patient",
    "you should",
    "you must",
    "i recommend",
    "the treatment is",
    "take this medication",
    "stop taking",
]

DEFAULT_WARNING_PHRASES: list[str] = [
    "consider",
    "may indicate",
    "possible",
    "suggestive of",
    "could be",
    "might be",
]


@dataclass(frozen=True)
class SafetyPolicy:
    roles: dict[str, list[str]] = field(default_factory=lambda: {k: list(v) for k, v in DEFAULT_ROLES.items()})
    deny_phrases: list[str] = field(default_factory=lambda: list(DEFAULT_DENY_PHRASES))
    warning_phrases: list[str] = field(default_factory=lambda: list(DEFAULT_WARNING_PHRASES))

    def role_permits(self, role: str, task: str) -> bool:
        return task in self.roles.get(_normalize_role(role), [])


def _normalize_role(role: str) -> str:
    return str(role or "").strip().lower().replace("_", "-").replace(" ", "-")


def _phrase_list(raw: Any, name: str) -> list[str]:
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ValidationFailureError(f"Policy '{name}' must be a list of strings.")
    return [item.strip().lower() for item in raw if item.strip()]


def policy_from_dict(payload: dict[str, Any]) -> SafetyPolicy:
    base = SafetyPolicy()
    roles = base.roles
    if "roles" in payload:
        raw_roles = payload["roles"]
        if not isinstance(raw_roles, dict):
            raise ValidationFailureError("Policy 'roles' must map role names to task lists.")
        roles = {_normalize_role(role): _phrase_list(tasks, f"roles.{role}") for role, tasks in raw_roles.items()}

    deny = _phrase_list(payload["deny_phrases"], "deny_phrases") if "deny_phrases" in payload else base.deny_phrases
    warn = (
        _phrase_list(payload["warning_phrases"], "warning_phrases")
        if "warning_phrases" in payload
        else base.warning_phrases
    )
    return SafetyPolicy(roles=roles, deny_phrases=deny, warning_phrases=warn)


def load_policy(path: str | None) -> SafetyPolicy:
    if not path:
        return SafetyPolicy()
    policy_file = Path(path)
    if not policy_file.exists():
        logger.warning("policy_file_missing: path=%s using defaults", policy_file)
        return SafetyPolicy()
    payload = json.loads(policy_file.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValidationFailureError("Policy file must contain a JSON object.")
    policy = policy_from_dict(payload)
    logger.info(
        "policy_loaded: path=%s roles=%d deny=%d warn=%d",
        policy_file,
        len(policy.roles),
        len(policy.deny_phrases),
        len(policy.warning_phrases),
    )
    return policy
