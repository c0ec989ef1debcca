import asyncio
import json
from pathlib import Path

from clinigate.audit import AuditStore
from clinigate.config import Settings
from clinigate.context import StaticContextSource
from clinigate.errors import ProviderUnavailableError
from clinigate.gateway import Generation, StreamFragment
from clinigate.orchestration import build_orchestrator
from clinigate.safety import FALLBACK_MESSAGE
from clinigate.schemas import SectionRequest, TaskRequest

TRIAGE_REPLY = {
    "triage_category": "urgent",
    "category_rationale": "Fast breathing and fever place this child in the YELLOW priority under IMCI.",
    "key_findings": ["Respiratory rate 52 per minute", "Temperature 38.6 C"],
    "danger_signs_present": [],
    "immediate_actions": ["Recheck respiratory rate in one hour", "Keep the child feeding"],
    "confidence_level": "high",
    "summary": "Fast breathing with fever fits YELLOW priority.",
}

CAREGIVER_REPLY = """The caregiver note explains the visit in plain words.

INCONSISTENCIES:
None

NEXT STEPS:
- Return tomorrow for review.

SUMMARY: The child needs review tomorrow."""


class ScriptedGateway:
    """Returns canned model text in order; the last reply repeats."""

    default_model = "gemma3:4b"
    has_fallback = False

    def __init__(self, *replies: str, error: Exception | None = None):
        self.replies = list(replies)
        self.error = error
        self.calls: list[str] = []

    def _next(self) -> str:
        return self.replies[min(len(self.calls), len(self.replies)) - 1]

    async def generate(self, prompt, *, temperature, max_tokens, timeout_sec=None):
        self.calls.append(prompt)
        if self.error is not None:
            raise self.error
        return Generation(text=self._next(), model="gemma3:4b", provider="primary", latency_ms=15)

    async def stream(self, prompt, *, temperature, max_tokens, stale_timeout_sec=None):
        self.calls.append(prompt)
        text = self._next()
        pieces = [text[i : i + 16] for i in range(0, len(text), 16)]
        for piece in pieces:
            yield StreamFragment(text=piece, done=False, model="gemma3:4b", provider="primary")
        yield StreamFragment(text="", done=True, model="gemma3:4b", provider="primary", eval_count=len(pieces))

    async def health(self, *, probe=False):
        return {"primary": {"url": "stub", "model": self.default_model, "reachable": None}}


def _settings(tmp_path: Path, **overrides) -> Settings:
    values = dict(
        local_storage_dir=str(tmp_path),
        s3_bucket=None,
        secondary_base_url=None,
        context_base_url=None,
        policy_path=None,
        prompt_schema_dir=None,
        cache_enabled=True,
        task_limit_overrides={},
        role_quota_overrides={},
    )
    values.update(overrides)
    return Settings(**values)


def _triage_request(role: str = "nurse", **context_overrides) -> TaskRequest:
    context = {
        "patient_id": "p-001",
        "age_months": 18,
        "gender": "female",
        "chief_complaint": "Cough for three days",
        "findings": ["fast_breathing", "fever"],
        "vitals": {"respiratory_rate": 52, "temperature": 38.6},
        "triage_priority": "yellow",
    }
    context.update(context_overrides)
    return TaskRequest(task="explain_triage", principal="nurse-1", role=role, context=context)


def _caregiver_request(**context_overrides) -> TaskRequest:
    context = {"patient_id": "p-002", "age_months": 30, "triage_priority": "green", "vitals": {"rr": 30}}
    context.update(context_overrides)
    return TaskRequest(task="caregiver_summary", principal="nurse-1", role="nurse", context=context)


def test_nurse_triage_explanation_succeeds_and_is_cached(tmp_path: Path):
    gateway = ScriptedGateway(json.dumps(TRIAGE_REPLY))
    orchestrator = build_orchestrator(_settings(tmp_path), gateway=gateway)

    first, headers = asyncio.run(orchestrator.run(_triage_request()))
    second_request = _triage_request()
    second, _ = asyncio.run(orchestrator.run(second_request))

    assert first.success is True
    assert first.response.explanation == TRIAGE_REPLY["category_rationale"]
    assert first.response.structured_output["triage_category"] == "urgent"
    assert first.response.summary == TRIAGE_REPLY["summary"]
    assert first.response.findings == []
    assert first.metadata.from_cache is False
    assert headers["X-RateLimit-Remaining"] == "29"

    assert second.success is True
    assert second.metadata.from_cache is True
    assert second.request_id == second_request.request_id
    assert len(gateway.calls) == 1

    metrics = orchestrator.monitor.metrics("minute")
    assert metrics["total_requests"] == 2
    assert metrics["by_task"]["explain_triage"]["from_cache"] == 1


def test_deny_phrase_fails_clinical_task_without_echoing_text(tmp_path: Path):
    reply = dict(TRIAGE_REPLY, category_rationale="Prescribe amoxicillin twice daily for the YELLOW case.")
    gateway = ScriptedGateway(json.dumps(reply))
    settings = _settings(tmp_path)
    orchestrator = build_orchestrator(settings, gateway=gateway)

    first, _ = asyncio.run(orchestrator.run(_triage_request()))
    asyncio.run(orchestrator.run(_triage_request()))

    assert first.success is False
    assert first.error.category == "safety_violation"
    assert first.error.severity == "critical"
    assert "amoxicillin" not in first.model_dump_json()
    assert len(gateway.calls) == 2

    records = AuditStore(settings).read_records(request_id=first.request_id)
    assert records[0]["was_overridden"] is True
    assert "[REDACTED]" in records[0]["redacted_output"]
    assert "Prescribe" not in records[0]["redacted_output"]


def test_deny_phrase_in_redact_task_returns_fallback_and_skips_cache(tmp_path: Path):
    gateway = ScriptedGateway("Keep the child warm. You must give amoxicillin at night.")
    orchestrator = build_orchestrator(_settings(tmp_path), gateway=gateway)

    first, _ = asyncio.run(orchestrator.run(_caregiver_request()))
    second, _ = asyncio.run(orchestrator.run(_caregiver_request()))

    assert first.success is True
    assert first.response.explanation == FALLBACK_MESSAGE
    assert "deny_phrase_blocked" in first.response.safety_flags
    assert "amoxicillin" not in first.model_dump_json()
    assert second.metadata.from_cache is False
    assert len(gateway.calls) == 2
    assert orchestrator.monitor.metrics("minute")["override_rate"] == 1.0


def test_role_outside_policy_is_rejected_before_model_and_cache(tmp_path: Path):
    gateway = ScriptedGateway(json.dumps(TRIAGE_REPLY))
    orchestrator = build_orchestrator(_settings(tmp_path), gateway=gateway)

    response, _ = asyncio.run(orchestrator.run(_triage_request(role="radiologist")))

    assert response.success is False
    assert response.error.category == "safety_violation"
    assert gateway.calls == []
    assert orchestrator.cache.stats()["writes"] == 0
    assert orchestrator.cache.stats()["misses"] == 0
    limits = asyncio.run(orchestrator.limiter.remaining("explain_triage", "nurse-1", "radiologist"))
    assert limits["task"].used == 0


def test_unknown_task_is_a_validation_failure(tmp_path: Path):
    orchestrator = build_orchestrator(_settings(tmp_path), gateway=ScriptedGateway("unused"))

    response, _ = asyncio.run(
        orchestrator.run(TaskRequest(task="write_prescription", principal="nurse-1", role="nurse"))
    )

    assert response.success is False
    assert response.error.category == "validation_failure"


def test_schema_mismatch_fails_and_is_not_cached(tmp_path: Path):
    gateway = ScriptedGateway("The child looks fine and can go home.")
    orchestrator = build_orchestrator(_settings(tmp_path), gateway=gateway)

    response, _ = asyncio.run(orchestrator.run(_triage_request()))

    assert response.success is False
    assert response.error.category == "validation_failure"
    assert response.metadata.safety["schema_errors"] == ["response: expected a JSON object"]
    assert orchestrator.cache.stats()["writes"] == 0


def test_deterministic_inconsistencies_lead_the_response(tmp_path: Path):
    gateway = ScriptedGateway(CAREGIVER_REPLY)
    orchestrator = build_orchestrator(_settings(tmp_path), gateway=gateway)

    response, _ = asyncio.run(orchestrator.run(_caregiver_request(findings=["unable_to_drink"])))

    assert response.success is True
    assert response.response.findings[0].field == "unable_to_drink"
    assert response.response.findings[0].severity == "error"
    assert response.response.inconsistencies[0] == response.response.findings[0].message
    assert response.response.rule_ids == ["imci.danger_sign_mismatch.unable_to_drink"]
    assert "inconsistency:error:unable_to_drink" in response.metadata.warnings
    assert response.response.next_steps == ["Return tomorrow for review."]


def test_rate_limited_request_carries_retry_after(tmp_path: Path):
    gateway = ScriptedGateway(CAREGIVER_REPLY)
    settings = _settings(tmp_path, task_limit_overrides={"caregiver_summary": 1})
    orchestrator = build_orchestrator(settings, gateway=gateway)

    asyncio.run(orchestrator.run(_caregiver_request()))
    blocked, headers = asyncio.run(orchestrator.run(_caregiver_request(patient_id="p-003")))

    assert blocked.success is False
    assert blocked.error.category == "rate_limited"
    assert blocked.error.recovery.strategy == "degrade"
    assert int(headers["Retry-After"]) >= 1
    assert len(gateway.calls) == 1


def test_provider_failure_returns_recovery_plan(tmp_path: Path):
    gateway = ScriptedGateway(error=ProviderUnavailableError("Model runtime unreachable"))
    orchestrator = build_orchestrator(_settings(tmp_path), gateway=gateway)

    response, _ = asyncio.run(orchestrator.run(_triage_request()))

    assert response.success is False
    assert response.error.category == "provider_unavailable"
    assert response.error.severity == "high"
    assert response.error.recovery.strategy == "retry"
    assert response.error.retryable is True
    stats = asyncio.run(orchestrator.limiter.stats())
    assert stats["tasks_today"]["explain_triage"]["failure"] == 1


def test_session_context_is_merged_under_caller_values(tmp_path: Path):
    gateway = ScriptedGateway(json.dumps(TRIAGE_REPLY))
    source = StaticContextSource({"s-1": {"triage_priority": "green", "chief_complaint": "Fever since last night"}})
    orchestrator = build_orchestrator(_settings(tmp_path), gateway=gateway, context_source=source)
    request = TaskRequest(
        task="explain_triage",
        principal="nurse-1",
        role="nurse",
        session_id="s-1",
        context={"triage_priority": "yellow", "vitals": {"respiratory_rate": 52}},
    )

    asyncio.run(orchestrator.run(request))

    assert "ASSIGNED TRIAGE PRIORITY: yellow" in gateway.calls[0]
    assert "CHIEF COMPLAINT: Fever since last night" in gateway.calls[0]



def test_triage_alias_reaches_the_prompt_and_the_checks(tmp_path: Path):
    gateway = ScriptedGateway(CAREGIVER_REPLY)
    orchestrator = build_orchestrator(_settings(tmp_path), gateway=gateway)
    request = TaskRequest(
        task="caregiver_summary",
        principal="nurse-1",
        role="nurse",
        context={"patient_id": "p-004", "triage": "Green", "findings": ["unable_to_drink"]},
    )

    response, _ = asyncio.run(orchestrator.run(request))

    assert response.response.findings[0].field == "unable_to_drink"
    assert response.response.findings[0].severity == "error"

    triage = _triage_request(triage="yellow")
    del triage.context["triage_priority"]
    asyncio.run(orchestrator.run(triage))

    assert "ASSIGNED TRIAGE PRIORITY: yellow" in gateway.calls[-1]


class SlowGateway(ScriptedGateway):
    async def generate(self, prompt, *, temperature, max_tokens, timeout_sec=None):
        await asyncio.sleep(0.2)
        return await super().generate(prompt, temperature=temperature, max_tokens=max_tokens, timeout_sec=timeout_sec)


def test_concurrent_requests_cannot_overrun_the_task_limit(tmp_path: Path):
    gateway = SlowGateway(json.dumps(TRIAGE_REPLY))
    settings = _settings(tmp_path, task_limit_overrides={"explain_triage": 3})
    orchestrator = build_orchestrator(settings, gateway=gateway)

    async def _burst():
        requests = [_triage_request(patient_id=f"p-{n:03d}") for n in range(10)]
        return await asyncio.gather(*(orchestrator.run(r) for r in requests))

    results = asyncio.run(_burst())

    assert sum(1 for response, _ in results if response.success) == 3
    assert sum(1 for response, _ in results if not response.success and response.error.category == "rate_limited") == 7
    assert len(gateway.calls) == 3


def test_cache_hit_job_still_carries_its_prompt(tmp_path: Path):
    gateway = ScriptedGateway(json.dumps(TRIAGE_REPLY))
    orchestrator = build_orchestrator(_settings(tmp_path), gateway=gateway)
    asyncio.run(orchestrator.run(_triage_request()))

    job = asyncio.run(orchestrator.prepare(_triage_request()))
    response, _ = asyncio.run(orchestrator.execute(job))

    assert job.cached is not None
    assert job.prompt.prompt == gateway.calls[0]
    assert response.metadata.from_cache is True
    assert response.metadata.prompt_version == job.prompt.version

def _stream(orchestrator, request):
    async def _run():
        job = await orchestrator.prepare(request)
        return [event async for event in orchestrator.stream(job)]

    return asyncio.run(_run())


def test_stream_completes_then_replays_from_cache(tmp_path: Path):
    gateway = ScriptedGateway(CAREGIVER_REPLY)
    orchestrator = build_orchestrator(_settings(tmp_path), gateway=gateway)

    live = _stream(orchestrator, _caregiver_request())
    replay = _stream(orchestrator, _caregiver_request())

    assert live[0].type == "connection_established"
    assert live[-1].type == "complete"
    assert sum(1 for e in live if e.is_terminal) == 1
    assert "".join(e.payload["chunk"] for e in live if e.type == "chunk") == CAREGIVER_REPLY
    assert live[-1].payload["summary"] == "The child needs review tomorrow."
    assert live[-1].payload["from_cache"] is False

    assert [e.type for e in replay] == ["connection_established", "chunk", "complete"]
    assert replay[-1].payload["from_cache"] is True
    assert len(gateway.calls) == 1


def test_stream_with_deny_phrase_ends_in_error(tmp_path: Path):
    gateway = ScriptedGateway("Airway comes first. I recommend oxygen at five litres now.")
    orchestrator = build_orchestrator(_settings(tmp_path), gateway=gateway)
    request = TaskRequest(
        task="red_case_analysis",
        principal="dr-1",
        role="doctor",
        context={"triage_priority": "red", "findings": ["convulsions"]},
    )

    events = _stream(orchestrator, request)

    emitted = "".join(e.payload["chunk"] for e in events if e.type == "chunk").lower()
    assert "recommend" not in emitted
    assert events[-1].type == "error"
    assert events[-1].payload["category"] == "safety_violation"
    assert sum(1 for e in events if e.is_terminal) == 1


def test_section_stream_carries_summary_forward(tmp_path: Path):
    gateway = ScriptedGateway(
        "The respiratory rate of 52 is above the IMCI threshold of 40 for this age.\n"
        "SUMMARY: Fast breathing is the key respiratory finding."
    )
    orchestrator = build_orchestrator(_settings(tmp_path), gateway=gateway)
    request = SectionRequest(
        principal="nurse-1",
        role="nurse",
        schema_id="peds_respiratory",
        section_id="breathing",
        answers={"respiratory_rate": 52, "chest_indrawing": False},
        patient={"age_months": 18, "triage_priority": "yellow"},
        prior_summaries=["No general danger sign is present."],
    )

    async def _run():
        job = await orchestrator.prepare_section(request)
        return job, [event async for event in orchestrator.stream(job)]

    job, events = asyncio.run(_run())

    assert job.prompt.version == "peds_respiratory@1.2"
    assert "No general danger sign is present." in gateway.calls[0]
    assert events[-1].type == "complete"
    assert events[-1].payload["summary"] == "Fast breathing is the key respiratory finding."
