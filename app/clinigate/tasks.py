"""Task catalogue.

Every decision-support task the gateway serves is declared here as data:
its prompt template, structured-output contract, cache and admission
parameters, and how a deny-phrase hit is handled. Nothing else in the
package switches on task names.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel

from clinigate.errors import ValidationFailureError
from clinigate.schemas import ImciClassificationOutput, TreatmentReviewOutput, TriageExplanationOutput


class Task(str, Enum):
    EXPLAIN_TRIAGE = "explain_triage"
    TREATMENT_REVIEW = "treatment_review"
    IMCI_CLASSIFICATION = "imci_classification"
    CAREGIVER_SUMMARY = "caregiver_summary"
    SYMPTOM_CHECKLIST = "symptom_checklist"
    SPECIALIST_REVIEW = "specialist_review"
    RED_CASE_ANALYSIS = "red_case_analysis"
    EMERGENCY_ASSESSMENT = "emergency_assessment"
    CLINICAL_SUMMARY = "clinical_summary"
    HANDOFF_REPORT = "handoff_report"
    IMAGING_INTERPRETATION = "imaging_interpretation"
    XRAY_ANALYSIS = "xray_analysis"
    SKIN_LESION_ANALYSIS = "skin_lesion_analysis"
    RASH_ASSESSMENT = "rash_assessment"
    SECTION_GUIDANCE = "section_guidance"


@dataclass(frozen=True)
class TaskSpec:
    name: str
    template: str
    max_tokens: int = 500
    temperature: float = 0.2
    word_limit: int = 300
    limit_per_minute: int = 20
    cacheable: bool = True
    cache_ttl_sec: int = 3600
    clinical: bool = True
    # "reject" fails the request; "redact" answers with the fallback text.
    deny_action: str = "reject"
    output_model: type[BaseModel] | None = None
    cache_fields: tuple[str, ...] = ()
    timeout_sec: float | None = None


_PATIENT_BLOCK = """PATIENT: {{age}}, {{gender}}
CHIEF COMPLAINT: {{chief_complaint}}"""

_EXPLAIN_TRIAGE = f"""You are supporting a nurse who wants to understand a triage classification that the WHO IMCI rules already assigned.

{_PATIENT_BLOCK}

CLINICAL FINDINGS:
{{{{findings}}}}

VITAL SIGNS:
{{{{vitals}}}}

ASSIGNED TRIAGE PRIORITY: {{{{triage_priority}}}}

Explain which findings led to this priority, what immediate actions the protocol lists for it, and which warning signs the nurse should keep monitoring. Point out any finding that does not fit the assigned priority."""

_TREATMENT_REVIEW = f"""You are reviewing a documented treatment plan for completeness and safety concerns a clinician should look at.

{_PATIENT_BLOCK}
WEIGHT: {{{{weight_kg}}}} kg
ASSESSMENT: {{{{assessment}}}}

CURRENT TREATMENT PLAN:
{{{{treatment_plan}}}}

KNOWN ALLERGIES: {{{{allergies}}}}

Check the plan for missing elements, age or weight related safety concerns, interactions between listed medications, and whether follow-up is scheduled. Do not change the plan; list issues for the clinician to consider."""

_IMCI_CLASSIFICATION = f"""You are helping a nurse cross-check an IMCI assessment against the documented findings.

{_PATIENT_BLOCK}
AGE IN MONTHS: {{{{age_months}}}}

SYMPTOMS:
{{{{symptoms}}}}

SIGNS:
{{{{findings}}}}

VITAL SIGNS:
{{{{vitals}}}}

ASSIGNED TRIAGE PRIORITY: {{{{triage_priority}}}}

List the IMCI classifications these findings correspond to with their colour band, note danger signs, and state whether the protocol calls for urgent referral."""

_CAREGIVER_SUMMARY = f"""You are helping a nurse prepare a plain-language note for a child's caregiver.

{_PATIENT_BLOCK}

CLINICAL ASSESSMENT:
{{{{findings}}}}

TREATMENT PLAN:
{{{{treatment_plan}}}}

Describe what is happening in simple words, what the care plan involves, and which warning signs mean the child must come back to the clinic. Avoid medical jargon."""

_SYMPTOM_CHECKLIST = """You are helping a nurse prepare questions for an assessment.

CHIEF COMPLAINT: {{chief_complaint}}
PATIENT AGE: {{age}}

Produce at most ten yes/no questions: key symptoms for this complaint, associated symptoms worth ruling out, and red-flag symptoms that would raise the triage priority."""

_SPECIALIST_REVIEW = f"""You are preparing a case summary for specialist review.

{_PATIENT_BLOCK}
REFERRAL REASON: {{{{referral_reason}}}}

CLINICAL HISTORY:
{{{{clinical_history}}}}

CURRENT FINDINGS:
{{{{findings}}}}

TESTS AND IMAGING:
{{{{tests}}}}

Summarise the case, the key findings, what has been done so far, and the open questions for the specialist."""

_RED_CASE_ANALYSIS = f"""You are supporting the team on an emergency (RED) case.

{_PATIENT_BLOCK}
TRIAGE: RED

DANGER SIGNS IDENTIFIED:
{{{{danger_signs}}}}

VITAL SIGNS:
{{{{vitals}}}}

ACTIONS ALREADY TAKEN:
{{{{actions_taken}}}}

Summarise the protocol priorities for this presentation, what to prepare for, and the key monitoring points. Be brief."""

_EMERGENCY_ASSESSMENT = f"""You are supporting an emergency assessment in progress.

{_PATIENT_BLOCK}

FINDINGS:
{{{{findings}}}}

VITAL SIGNS:
{{{{vitals}}}}

List the emergency signs present, the protocol steps that apply to them, and what must be monitored while referral is arranged."""

_CLINICAL_SUMMARY = f"""You are drafting a visit summary for the medical record.

{_PATIENT_BLOCK}
VISIT DATE: {{{{visit_date}}}}

ASSESSMENT:
{{{{assessment}}}}

CARE PROVIDED:
{{{{treatment}}}}

Structure the note as presenting problem, key findings, assessment, care provided, follow-up plan and return precautions."""

_HANDOFF_REPORT = """You are drafting an SBAR handoff.

PATIENT: {{age}}, {{gender}}
LOCATION: {{location}}

SITUATION:
{{situation}}

BACKGROUND:
{{background}}

ASSESSMENT:
{{assessment}}

REQUEST:
{{recommendation}}

Write a clear verbal-handoff report with Situation, Background, Assessment and Request parts."""

_IMAGING_REVIEW = """You are helping a specialist organise a written imaging report.

STUDY: {{study_type}}
CLINICAL QUESTION: {{clinical_question}}

REPORTED FINDINGS:
{{findings}}

Organise the reported findings, flag items the report leaves unaddressed, and list comparison or follow-up studies worth discussing."""

_SKIN_REVIEW = """You are helping a specialist organise notes about a skin presentation.

PATIENT: {{age}}, {{gender}}
DESCRIPTION:
{{findings}}

DURATION: {{duration}}

Organise the documented morphology and distribution, note features that are missing from the description, and list the questions still open."""

_SECTION_GUIDANCE = """{{prompt}}"""


TASKS: dict[str, TaskSpec] = {
    spec.name: spec
    for spec in [
        TaskSpec(
            name=Task.EXPLAIN_TRIAGE.value,
            template=_EXPLAIN_TRIAGE,
            max_tokens=500,
            temperature=0.2,
            word_limit=300,
            limit_per_minute=30,
            cache_ttl_sec=1800,
            output_model=TriageExplanationOutput,
            cache_fields=(
                "age",
                "age_months",
                "gender",
                "chief_complaint",
                "findings",
                "vitals",
                "triage_priority",
            ),
        ),
        TaskSpec(
            name=Task.TREATMENT_REVIEW.value,
            template=_TREATMENT_REVIEW,
            max_tokens=600,
            temperature=0.2,
            word_limit=400,
            limit_per_minute=20,
            cache_ttl_sec=3600,
            output_model=TreatmentReviewOutput,
        ),
        TaskSpec(
            name=Task.IMCI_CLASSIFICATION.value,
            template=_IMCI_CLASSIFICATION,
            max_tokens=500,
            temperature=0.2,
            word_limit=300,
            limit_per_minute=40,
            cache_ttl_sec=7200,
            output_model=ImciClassificationOutput,
        ),
        TaskSpec(
            name=Task.CAREGIVER_SUMMARY.value,
            template=_CAREGIVER_SUMMARY,
            max_tokens=400,
            temperature=0.3,
            word_limit=250,
            limit_per_minute=30,
            cache_ttl_sec=1800,
            clinical=False,
            deny_action="redact",
        ),
        TaskSpec(
            name=Task.SYMPTOM_CHECKLIST.value,
            template=_SYMPTOM_CHECKLIST,
            max_tokens=300,
            temperature=0.2,
            word_limit=200,
            limit_per_minute=30,
            cache_ttl_sec=3600,
            clinical=False,
            deny_action="redact",
        ),
        TaskSpec(
            name=Task.SPECIALIST_REVIEW.value,
            template=_SPECIALIST_REVIEW,
            max_tokens=1000,
            temperature=0.3,
            word_limit=600,
            cache_ttl_sec=1800,
        ),
        TaskSpec(
            name=Task.RED_CASE_ANALYSIS.value,
            template=_RED_CASE_ANALYSIS,
            max_tokens=800,
            temperature=0.2,
            word_limit=400,
            limit_per_minute=30,
            cacheable=False,
            cache_ttl_sec=0,
            timeout_sec=45.0,
        ),
        TaskSpec(
            name=Task.EMERGENCY_ASSESSMENT.value,
            template=_EMERGENCY_ASSESSMENT,
            max_tokens=600,
            temperature=0.2,
            word_limit=300,
            limit_per_minute=30,
            cacheable=False,
            cache_ttl_sec=0,
            timeout_sec=45.0,
        ),
        TaskSpec(
            name=Task.CLINICAL_SUMMARY.value,
            template=_CLINICAL_SUMMARY,
            max_tokens=600,
            temperature=0.3,
            word_limit=400,
            cache_ttl_sec=1800,
            clinical=False,
            deny_action="redact",
        ),
        TaskSpec(
            name=Task.HANDOFF_REPORT.value,
            template=_HANDOFF_REPORT,
            max_tokens=700,
            temperature=0.3,
            word_limit=400,
            cache_ttl_sec=1800,
            clinical=False,
            deny_action="redact",
        ),
        TaskSpec(
            name=Task.IMAGING_INTERPRETATION.value,
            template=_IMAGING_REVIEW,
            max_tokens=800,
            word_limit=400,
            cache_ttl_sec=3600,
        ),
        TaskSpec(
            name=Task.XRAY_ANALYSIS.value,
            template=_IMAGING_REVIEW,
            max_tokens=800,
            word_limit=400,
            cache_ttl_sec=3600,
        ),
        TaskSpec(
            name=Task.SKIN_LESION_ANALYSIS.value,
            template=_SKIN_REVIEW,
            max_tokens=800,
            word_limit=400,
            cache_ttl_sec=3600,
        ),
        TaskSpec(
            name=Task.RASH_ASSESSMENT.value,
            template=_SKIN_REVIEW,
            max_tokens=800,
            word_limit=400,
            cache_ttl_sec=3600,
        ),
        TaskSpec(
            name=Task.SECTION_GUIDANCE.value,
            template=_SECTION_GUIDANCE,
            max_tokens=400,
            temperature=0.3,
            word_limit=250,
            limit_per_minute=30,
            cacheable=False,
            cache_ttl_sec=0,
        ),
    ]
}


def get_task(name: str) -> TaskSpec:
    spec = TASKS.get(str(name or "").strip().lower())
    if spec is None:
        raise ValidationFailureError(f"Unknown task '{name}'.")
    return spec
