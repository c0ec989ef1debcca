"""Pydantic schemas for gateway endpoints and internal contracts."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from clinigate.utils import utc_now


TriagePriority = Literal["green", "yellow", "red"]
FindingSeverity = Literal["info", "warning", "error"]
FindingCategory = Literal["danger_sign_mismatch", "threshold_exceeded", "missing_data", "contradiction"]
StreamEventType = Literal["connection_established", "progress", "chunk", "complete", "error"]
ErrorCategory = Literal[
    "timeout",
    "provider_unavailable",
    "safety_violation",
    "validation_failure",
    "rate_limited",
    "quota_exceeded",
    "unknown",
]
ErrorSeverity = Literal["low", "medium", "high", "critical"]


def _new_request_id() -> str:
    return f"ai_{uuid4().hex[:16]}"


class TaskRequest(BaseModel):
    """A single decision-support request. Immutable once admitted."""

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(
        default_factory=_new_request_id,
        validation_alias=AliasChoices("request_id", "requestId"),
    )
    task: str
    principal: str = Field(validation_alias=AliasChoices("principal", "user_id", "userId"))
    role: str
    context: dict[str, Any] = Field(default_factory=dict)
    session_id: str | None = Field(default=None, validation_alias=AliasChoices("session_id", "sessionId"))
    history: list[str] = Field(default_factory=list)
    max_words: int | None = Field(default=None, ge=20, le=2000)


class PatientSummary(BaseModel):
    age_months: int | None = Field(default=None, ge=0, le=216)
    weight_kg: float | None = Field(default=None, gt=0, le=200)
    gender: str | None = None
    triage_priority: TriagePriority | None = None


class SectionRequest(BaseModel):
    """A step of a multi-section assessment, guided one section at a time."""

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(
        default_factory=_new_request_id,
        validation_alias=AliasChoices("request_id", "requestId"),
    )
    principal: str = Field(validation_alias=AliasChoices("principal", "user_id", "userId"))
    role: str
    schema_id: str = Field(validation_alias=AliasChoices("schema_id", "schemaId"))
    section_id: str = Field(validation_alias=AliasChoices("section_id", "sectionId"))
    answers: dict[str, Any] = Field(default_factory=dict)
    patient: PatientSummary = Field(default_factory=PatientSummary)
    prior_summaries: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("prior_summaries", "priorSummaries", "previous_summaries"),
    )
    session_id: str | None = Field(default=None, validation_alias=AliasChoices("session_id", "sessionId"))


class LimitStatus(BaseModel):
    limit: int
    used: int
    remaining: int
    reset_at: int


class AdmissionDecision(BaseModel):
    allowed: bool
    reason: Literal["task_limit_exceeded", "global_limit_exceeded", "quota_exceeded"] | None = None
    retry_after: int | None = None
    limits: dict[str, LimitStatus] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)


class CacheEntry(BaseModel):
    cache_key: str
    task: str
    response: dict[str, Any]
    created_at: datetime = Field(default_factory=utc_now)
    ttl_seconds: int
    patient_id: str | None = None


class PromptSection(BaseModel):
    id: str
    title: str
    goal: str = ""
    instruction: str = ""
    required_context: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("required_context", "context_fields", "fields"),
    )
    max_words: int = Field(default=150, ge=20, le=2000)
    output_format: str | None = None
    guardrails: str | None = None
    cumulative: bool = False
    summary_instruction: str | None = None


class PromptSchema(BaseModel):
    schema_id: str
    version: str = "1.0"
    system_guardrails: str = ""
    field_labels: dict[str, str] = Field(default_factory=dict)
    sections: list[PromptSection]
    fallback_section: str | None = None


class StreamEvent(BaseModel):
    type: StreamEventType
    request_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in {"complete", "error"}


class InconsistencyFinding(BaseModel):
    category: FindingCategory
    field: str
    observed: Any = None
    expected: Any = None
    message: str
    severity: FindingSeverity


class StructuredResponse(BaseModel):
    explanation: str
    inconsistencies: list[str] = Field(default_factory=list)
    teaching_notes: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.3, le=0.95)
    model: str
    summary: str | None = None
    rule_ids: list[str] = Field(default_factory=list)
    safety_flags: list[str] = Field(default_factory=list)
    findings: list[InconsistencyFinding] = Field(default_factory=list)
    structured_output: dict[str, Any] | None = None
    valid: bool = True
    validation_errors: list[str] = Field(default_factory=list)


class SafetyVerdict(BaseModel):
    allowed: bool
    output: str
    role_permitted: bool = True
    blocked_phrases: list[str] = Field(default_factory=list)
    warning_phrases: list[str] = Field(default_factory=list)
    schema_errors: list[str] = Field(default_factory=list)
    risk_flags: list[str] = Field(default_factory=list)
    pii_suspected: bool = False
    was_modified: bool = False
    block_reason: str | None = None


class RecoveryPlan(BaseModel):
    strategy: Literal["retry", "fallback", "degrade", "abort"]
    suggestions: list[str] = Field(default_factory=list)
    max_retries: int = 0
    retry_after_seconds: int | None = None


class ErrorResponse(BaseModel):
    code: str
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    user_message: str
    recovery: RecoveryPlan
    retryable: bool = False
    request_id: str | None = None
    task: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class ResponseMetadata(BaseModel):
    from_cache: bool = False
    provider: str | None = None
    model: str | None = None
    latency_ms: int = 0
    prompt_version: str | None = None
    was_truncated: bool = False
    warnings: list[str] = Field(default_factory=list)
    safety: dict[str, Any] = Field(default_factory=dict)


class GatewayResponse(BaseModel):
    success: bool
    request_id: str
    task: str
    response: StructuredResponse | None = None
    error: ErrorResponse | None = None
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)


class AuditRecord(BaseModel):
    request_id: str
    task: str
    principal: str
    role: str
    prompt_hash: str | None = None
    prompt_version: str | None = None
    model: str | None = None
    provider: str | None = None
    latency_ms: int = 0
    success: bool
    from_cache: bool = False
    was_overridden: bool = False
    safety_flags: list[str] = Field(default_factory=list)
    error_category: ErrorCategory | None = None
    redacted_output: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


# Structured output contracts for schema-bound tasks.

ConfidenceLevel = Literal["high", "medium", "low"]


class TriageExplanationOutput(BaseModel):
    triage_category: Literal["emergency", "urgent", "routine", "self_care"]
    category_rationale: str
    key_findings: list[str]
    danger_signs_present: list[str]
    immediate_actions: list[str]
    confidence_level: ConfidenceLevel
    recommended_investigations: list[str] = Field(default_factory=list)
    referral_recommendation: Literal["immediate", "within_24h", "within_week", "not_required"] | None = None
    follow_up_instructions: list[str] = Field(default_factory=list)
    uncertainty_factors: list[str] = Field(default_factory=list)


class MedicationReviewItem(BaseModel):
    medication: str
    dose_appropriate: bool
    frequency_appropriate: bool
    duration_appropriate: bool
    concerns: list[str] = Field(default_factory=list)
    alternatives: list[str] = Field(default_factory=list)


class DrugInteraction(BaseModel):
    medications: list[str]
    severity: Literal["minor", "moderate", "major", "contraindicated"] | None = None
    description: str
    recommendation: str


class TreatmentReviewOutput(BaseModel):
    treatment_appropriate: bool
    appropriateness_rationale: str
    medication_review: list[MedicationReviewItem]
    drug_interactions: list[DrugInteraction]
    confidence_level: ConfidenceLevel
    requires_physician_review: bool
    monitoring_requirements: list[str] = Field(default_factory=list)
    patient_education_points: list[str] = Field(default_factory=list)


class ImciClassificationItem(BaseModel):
    condition: str
    severity: Literal["pink", "yellow", "green"]
    rationale: str = ""


class ImciClassificationOutput(BaseModel):
    age_months: int = Field(ge=2, le=60)
    classifications: list[ImciClassificationItem]
    overall_severity: Literal["pink", "yellow", "green"]
    requires_urgent_referral: bool
    danger_signs: list[str] = Field(default_factory=list)
