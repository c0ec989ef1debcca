"""End-to-end decision-support request orchestration."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

from clinigate.audit import AuditStore
from clinigate.cache import ResponseCache
from clinigate.config import Settings
from clinigate.context import ContextSource, HttpContextSource, merge_context, normalize_context
from clinigate.errors import (
    CancelledStreamError,
    ErrorHandler,
    GatewayError,
    PermissionDeniedError,
    QuotaExceededError,
    RateLimitedError,
    SafetyViolationError,
    ValidationFailureError,
)
from clinigate.extractor import StructuredExtractor
from clinigate.gateway import ModelGateway
from clinigate.inconsistency import detect_from_context, merge, triage_priority_of
from clinigate.log import bind_request_id, reset_request_id
from clinigate.monitor import Monitor
from clinigate.policy import load_policy
from clinigate.prompts import BuiltPrompt, PromptAssembler
from clinigate.rate_limiter import RateLimiter
from clinigate.safety import FALLBACK_MESSAGE, SafetyValidator, redact
from clinigate.schemas import (
    AdmissionDecision,
    AuditRecord,
    ErrorResponse,
    GatewayResponse,
    InconsistencyFinding,
    ResponseMetadata,
    SafetyVerdict,
    SectionRequest,
    StreamEvent,
    StructuredResponse,
    TaskRequest,
)
from clinigate.store import InMemoryKVStore, KeyValueStore
from clinigate.streaming import RelayResult, StreamingRelay, StreamSession
from clinigate.tasks import Task, TaskSpec, get_task
from clinigate.utils import elapsed_ms, now_ms, truncate_to_words

logger = logging.getLogger(__name__)


@dataclass
class PreparedJob:
    request_id: str
    principal: str
    role: str
    spec: TaskSpec
    context: dict[str, Any]
    decision: AdmissionDecision
    started_ms: float
    prompt: BuiltPrompt
    cached: GatewayResponse | None = None

    @property
    def triage_priority(self) -> str | None:
        return triage_priority_of(self.context)


@dataclass
class Completion:
    response: GatewayResponse
    text: str
    verdict: SafetyVerdict | None = None


def _rule_ids(findings: list[InconsistencyFinding]) -> list[str]:
    return [f"imci.{f.category}.{f.field}" for f in findings]


def _safety_summary(verdict: SafetyVerdict) -> dict[str, Any]:
    return {
        "allowed": verdict.allowed,
        "role_permitted": verdict.role_permitted,
        "blocked_phrases": verdict.blocked_phrases,
        "warning_phrases": verdict.warning_phrases,
        "schema_errors": verdict.schema_errors,
        "pii_suspected": verdict.pii_suspected,
        "risk_flags": verdict.risk_flags,
        "block_reason": verdict.block_reason,
    }


class DecisionSupportOrchestrator:
    def __init__(
        self,
        *,
        settings: Settings,
        gateway: ModelGateway,
        limiter: RateLimiter,
        cache: ResponseCache,
        prompts: PromptAssembler,
        validator: SafetyValidator,
        monitor: Monitor,
        audit: AuditStore,
        extractor: StructuredExtractor | None = None,
        error_handler: ErrorHandler | None = None,
        context_source: ContextSource | None = None,
    ):
        self._settings = settings
        self._gateway = gateway
        self._limiter = limiter
        self._cache = cache
        self._prompts = prompts
        self._validator = validator
        self._monitor = monitor
        self._audit = audit
        self._extractor = extractor or StructuredExtractor()
        self._errors = error_handler or ErrorHandler(fallback_configured=gateway.has_fallback)
        self._context_source = context_source

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def monitor(self) -> Monitor:
        return self._monitor

    @property
    def gateway(self) -> ModelGateway:
        return self._gateway

    # Admission

    async def _admit(self, spec: TaskSpec, principal: str, role: str) -> AdmissionDecision:
        if not self._validator.check_role(role, spec.name):
            raise PermissionDeniedError(f"Role '{role}' is not permitted to run task '{spec.name}'.")

        decision = await self._limiter.admit(spec.name, principal, role)
        if not decision.allowed:
            error_cls = QuotaExceededError if decision.reason == "quota_exceeded" else RateLimitedError
            raise error_cls(
                f"Request blocked: {decision.reason}.",
                retry_after=decision.retry_after,
                details={"reason": decision.reason, "headers": decision.headers},
            )
        return decision

    async def _fetch_context(self, session_id: str | None, supplied: dict[str, Any]) -> dict[str, Any]:
        supplied = normalize_context(supplied)
        if not session_id or self._context_source is None:
            return supplied
        fetched = await self._context_source.fetch(session_id)
        return merge_context(normalize_context(fetched), supplied)

    async def prepare(self, request: TaskRequest) -> PreparedJob:
        """Validate, admit and resolve context.

        Rejections are audited and recorded before the GatewayError is
        re-raised; the audited response is left on ``exc.response``.
        """
        token = bind_request_id(request.request_id)
        started = now_ms()
        try:
            spec = get_task(request.task)
            decision = await self._admit(spec, request.principal, request.role)
            context = await self._fetch_context(request.session_id, request.context)

            return PreparedJob(
                request_id=request.request_id,
                principal=request.principal,
                role=request.role,
                spec=spec,
                context=context,
                decision=decision,
                started_ms=started,
                prompt=self._prompts.build(spec, context, history=request.history, max_words=request.max_words),
                cached=await self._cache.get(spec, context),
            )
        except GatewayError as exc:
            await self._attach_budget_headers(exc, request.task, request.principal, request.role)
            exc.response = await self._rejected(
                request_id=request.request_id,
                task=request.task,
                principal=request.principal,
                role=request.role,
                exc=exc,
                started_ms=started,
            )
            raise
        finally:
            reset_request_id(token)

    async def prepare_section(self, request: SectionRequest) -> PreparedJob:
        token = bind_request_id(request.request_id)
        started = now_ms()
        spec = get_task(Task.SECTION_GUIDANCE.value)
        try:
            decision = await self._admit(spec, request.principal, request.role)
            schema = self._prompts.load_schema(request.schema_id)

            context = normalize_context(dict(request.answers))
            if request.patient.triage_priority:
                context["triage_priority"] = request.patient.triage_priority
            if request.patient.age_months is not None:
                context["age_months"] = request.patient.age_months

            prompt = self._prompts.build_section(
                schema,
                request.section_id,
                request.answers,
                request.patient,
                request.prior_summaries,
                task=spec,
            )
        except GatewayError as exc:
            await self._attach_budget_headers(exc, spec.name, request.principal, request.role)
            exc.response = await self._rejected(
                request_id=request.request_id,
                task=spec.name,
                principal=request.principal,
                role=request.role,
                exc=exc,
                started_ms=started,
            )
            raise
        finally:
            reset_request_id(token)

        return PreparedJob(
            request_id=request.request_id,
            principal=request.principal,
            role=request.role,
            spec=spec,
            context=context,
            decision=decision,
            started_ms=started,
            prompt=prompt,
        )

    # Completion

    async def _complete(
        self,
        job: PreparedJob,
        text: str,
        *,
        was_truncated: bool,
        model: str,
        provider: str | None,
        blocked_upstream: list[str] | None = None,
    ) -> Completion:
        spec = job.spec
        structured = self._extractor.parse(text, model, job.triage_priority, output_model=spec.output_model)
        findings = detect_from_context(job.context)

        verdict = self._validator.validate(text, spec, job.role, structured=structured.structured_output)
        if blocked_upstream and not verdict.blocked_phrases:
            verdict = verdict.model_copy(
                update={
                    "allowed": False,
                    "blocked_phrases": list(blocked_upstream),
                    "output": FALLBACK_MESSAGE,
                    "was_modified": True,
                    "block_reason": "response contained restricted clinical language: " + ", ".join(blocked_upstream),
                }
            )

        warnings = [f"warning_phrase:{p}" for p in verdict.warning_phrases]
        if verdict.pii_suspected:
            warnings.append("pii_suspected:escalated_for_review")
        if was_truncated:
            warnings.append("truncated_to_word_limit")
        warnings += [f"inconsistency:{f.severity}:{f.field}" for f in findings if f.severity != "info"]

        metadata = ResponseMetadata(
            provider=provider,
            model=model,
            latency_ms=elapsed_ms(job.started_ms),
            prompt_version=job.prompt.version,
            was_truncated=was_truncated,
            warnings=warnings,
            safety=_safety_summary(verdict),
        )
        safety_flags = list(verdict.risk_flags)

        if not verdict.role_permitted:
            return self._failure(job, PermissionDeniedError(verdict.block_reason or "role not permitted"), metadata, verdict)

        if verdict.blocked_phrases:
            safety_flags.append("deny_phrase_blocked")
            if spec.deny_action != "redact":
                return self._failure(job, SafetyViolationError(verdict.block_reason or "blocked"), metadata, verdict)
            body = StructuredResponse(
                explanation=FALLBACK_MESSAGE,
                inconsistencies=merge([], findings),
                confidence=0.3,
                model=model,
                rule_ids=_rule_ids(findings),
                safety_flags=safety_flags,
                findings=findings,
            )
            metadata.warnings.append(verdict.block_reason or "response replaced by safety filter")
            response = GatewayResponse(
                success=True,
                request_id=job.request_id,
                task=spec.name,
                response=body,
                metadata=metadata,
            )
            return Completion(response=response, text=FALLBACK_MESSAGE, verdict=verdict)

        if verdict.schema_errors:
            error = ValidationFailureError(
                "Model output did not match the task's structured output contract: " + "; ".join(verdict.schema_errors[:5]),
                details={"schema_errors": verdict.schema_errors},
            )
            return self._failure(job, error, metadata, verdict)

        structured.explanation = structured.explanation or text.strip()
        structured.inconsistencies = merge(structured.inconsistencies, findings)
        structured.findings = findings
        structured.rule_ids = _rule_ids(findings)
        structured.safety_flags = safety_flags
        response = GatewayResponse(
            success=True,
            request_id=job.request_id,
            task=spec.name,
            response=structured,
            metadata=metadata,
        )
        return Completion(response=response, text=text, verdict=verdict)

    def _failure(
        self,
        job: PreparedJob,
        exc: BaseException,
        metadata: ResponseMetadata | None = None,
        verdict: SafetyVerdict | None = None,
    ) -> Completion:
        error = self._errors.handle(exc, task=job.spec.name, clinical=job.spec.clinical, request_id=job.request_id)
        metadata = metadata or ResponseMetadata(latency_ms=elapsed_ms(job.started_ms))
        response = GatewayResponse(
            success=False,
            request_id=job.request_id,
            task=job.spec.name,
            error=error,
            metadata=metadata,
        )
        return Completion(response=response, text="", verdict=verdict)

    async def _finish(self, job: PreparedJob, completion: Completion, *, raw_text: str = "") -> GatewayResponse:
        response = completion.response
        verdict = completion.verdict
        if response.success and not response.metadata.from_cache:
            await self._cache.put(job.spec, job.context, response, verdict)

        await self._limiter.record(job.spec.name, job.principal, success=response.success)
        self._observe(job.spec.name, response, verdict=verdict)
        await self._write_audit(job.spec.name, response, verdict, principal=job.principal, role=job.role, prompt=job.prompt, raw_text=raw_text)
        return response

    def _observe(
        self,
        task: str,
        response: GatewayResponse,
        *,
        verdict: SafetyVerdict | None,
    ) -> None:
        try:
            self._monitor.record(
                task,
                success=response.success,
                latency_ms=response.metadata.latency_ms,
                was_overridden=bool(verdict and verdict.was_modified),
                from_cache=response.metadata.from_cache,
                error_category=response.error.category if response.error else None,
                risk_flags=verdict.risk_flags if verdict else (),
            )
        except Exception as exc:
            logger.warning("monitor_record_failed: %s: %s", type(exc).__name__, exc)

    async def _write_audit(
        self,
        task: str,
        response: GatewayResponse,
        verdict: SafetyVerdict | None,
        *,
        principal: str,
        role: str,
        prompt: BuiltPrompt | None,
        raw_text: str = "",
    ) -> None:
        redacted = None
        if verdict is not None and verdict.blocked_phrases and raw_text:
            redacted = redact(raw_text, verdict.blocked_phrases)
        record = AuditRecord(
            request_id=response.request_id,
            task=task,
            principal=principal,
            role=role,
            prompt_hash=prompt.prompt_hash if prompt else None,
            prompt_version=prompt.version if prompt else None,
            model=response.metadata.model,
            provider=response.metadata.provider,
            latency_ms=response.metadata.latency_ms,
            success=response.success,
            from_cache=response.metadata.from_cache,
            was_overridden=bool(verdict and verdict.was_modified),
            safety_flags=response.response.safety_flags if response.response else (verdict.risk_flags if verdict else []),
            error_category=response.error.category if response.error else None,
            redacted_output=redacted,
        )
        try:
            await self._audit.append(record)
        except Exception as exc:
            logger.error("audit_write_failed: request_id=%s %s: %s", response.request_id, type(exc).__name__, exc)

    async def _rejected(
        self,
        *,
        request_id: str,
        task: str,
        principal: str,
        role: str,
        exc: GatewayError,
        started_ms: float,
    ) -> GatewayResponse:
        try:
            clinical = get_task(task).clinical
        except ValidationFailureError:
            clinical = False
        error = self._errors.handle(exc, task=task, clinical=clinical, request_id=request_id)
        response = GatewayResponse(
            success=False,
            request_id=request_id,
            task=task,
            error=error,
            metadata=ResponseMetadata(latency_ms=elapsed_ms(started_ms)),
        )
        self._observe(task, response, verdict=None)
        await self._write_audit(task, response, None, principal=principal, role=role, prompt=None)
        return response

    async def _budget_headers(self, task: str, principal: str, role: str) -> dict[str, str]:
        limits = await self._limiter.remaining(task, principal, role)
        return RateLimiter.headers(AdmissionDecision(allowed=True, limits=limits))

    async def _attach_budget_headers(self, exc: GatewayError, task: str, principal: str, role: str) -> None:
        """Rejections that never reached the limiter still report the caller's budgets."""
        if "headers" not in exc.details:
            exc.details["headers"] = await self._budget_headers(task, principal, role)

    async def _headers_after(self, job: PreparedJob) -> dict[str, str]:
        return await self._budget_headers(job.spec.name, job.principal, job.role)

    def _from_cache(self, job: PreparedJob, cached: GatewayResponse) -> Completion:
        response = cached.model_copy(deep=True)
        response.request_id = job.request_id
        response.metadata.from_cache = True
        response.metadata.latency_ms = elapsed_ms(job.started_ms)
        text = response.response.explanation if response.response else ""
        return Completion(response=response, text=text)

    # Blocking mode

    async def run(self, request: TaskRequest) -> tuple[GatewayResponse, dict[str, str]]:
        try:
            job = await self.prepare(request)
        except GatewayError as exc:
            return exc.response, dict(exc.details.get("headers", {}))
        return await self.execute(job)

    async def execute(self, job: PreparedJob) -> tuple[GatewayResponse, dict[str, str]]:
        token = bind_request_id(job.request_id)
        try:
            raw_text = ""
            if job.cached is not None:
                completion = self._from_cache(job, job.cached)
            else:
                try:
                    generation = await self._gateway.generate(
                        job.prompt.prompt,
                        temperature=job.prompt.temperature,
                        max_tokens=job.prompt.max_tokens,
                        timeout_sec=job.spec.timeout_sec,
                    )
                    raw_text = generation.text
                    text, was_truncated = truncate_to_words(generation.text, job.prompt.word_limit)
                    completion = await self._complete(
                        job,
                        text,
                        was_truncated=was_truncated,
                        model=generation.model,
                        provider=generation.provider,
                    )
                except Exception as exc:
                    completion = self._failure(job, exc)

            response = await self._finish(job, completion, raw_text=raw_text)
            logger.info(
                "ai_request_done: task=%s success=%s from_cache=%s latency_ms=%s",
                job.spec.name,
                response.success,
                response.metadata.from_cache,
                response.metadata.latency_ms,
            )
            return response, await self._headers_after(job)
        finally:
            reset_request_id(token)

    # Streaming mode

    @staticmethod
    def _error_payload(error: ErrorResponse, *, code: str | None = None) -> dict[str, Any]:
        return {
            "code": code or error.code,
            "category": error.category,
            "severity": error.severity,
            "message": error.user_message,
            "detail": error.message,
            "recoverable": error.retryable,
            "recovery": error.recovery.model_dump(mode="json"),
        }

    @staticmethod
    def _complete_payload(completion: Completion, *, summary: str | None = None, tokens_used: int | None = None) -> dict[str, Any]:
        response = completion.response
        body = response.response
        return {
            "full_response": completion.text,
            "summary": (body.summary if body else None) or summary,
            "confidence": body.confidence if body else None,
            "model": response.metadata.model,
            "provider": response.metadata.provider,
            "duration_ms": response.metadata.latency_ms,
            "tokens_used": tokens_used,
            "was_truncated": response.metadata.was_truncated,
            "from_cache": response.metadata.from_cache,
            "warnings": response.metadata.warnings,
            "structured": body.model_dump(mode="json") if body else None,
        }

    async def _replay_cached(self, session: StreamSession, job: PreparedJob, cached: GatewayResponse) -> AsyncIterator[StreamEvent]:
        completion = self._from_cache(job, cached)
        await self._finish(job, completion)
        yield StreamEvent(type="connection_established", request_id=session.request_id, payload={"status": "connected", "from_cache": True})
        yield StreamEvent(
            type="chunk",
            request_id=session.request_id,
            payload={
                "chunk": completion.text,
                "total_length": len(completion.text),
                "chunk_index": 0,
                "is_first": True,
                "is_last": True,
            },
        )
        yield StreamEvent(type="complete", request_id=session.request_id, payload=self._complete_payload(completion))

    async def stream(self, job: PreparedJob, *, cancel: asyncio.Event | None = None) -> AsyncIterator[StreamEvent]:
        """Relay a prepared job as stream events. The caller binds the request id."""
        session = StreamSession(
            request_id=job.request_id,
            declared_total=job.prompt.max_tokens,
        )
        if job.cached is not None:
            async for event in self._replay_cached(session, job, job.cached):
                yield event
            return

        prompt = job.prompt
        relay = StreamingRelay(
            deny_phrases=self._validator.policy.deny_phrases,
            stale_timeout_sec=self._settings.stream_stale_timeout_sec,
            deadline_sec=job.spec.timeout_sec or self._settings.request_timeout_sec,
        )

        async def finalize(result: RelayResult) -> tuple[str, dict[str, Any]]:
            completion = await self._complete(
                job,
                result.text,
                was_truncated=result.was_truncated,
                model=result.model or self._gateway.default_model,
                provider=result.provider,
                blocked_upstream=result.blocked_phrases,
            )
            response = await self._finish(job, completion, raw_text=result.raw_text)
            if response.success:
                return "complete", self._complete_payload(
                    completion,
                    summary=None if completion.verdict and completion.verdict.blocked_phrases else result.summary,
                    tokens_used=result.eval_count,
                )
            return "error", self._error_payload(response.error)

        async def fail(exc: BaseException, result: RelayResult) -> dict[str, Any]:
            completion = self._failure(job, exc)
            response = await self._finish(job, completion, raw_text=result.raw_text)
            code = "cancelled" if isinstance(exc, CancelledStreamError) else None
            return self._error_payload(response.error, code=code)

        fragments = self._gateway.stream(
            prompt.prompt,
            temperature=prompt.temperature,
            max_tokens=prompt.max_tokens,
            stale_timeout_sec=self._settings.stream_stale_timeout_sec,
        )
        async for event in relay.relay(
            session,
            fragments,
            word_limit=prompt.word_limit,
            model=self._gateway.default_model,
            cancel=cancel,
            finalize=finalize,
            fail=fail,
        ):
            yield event


def build_orchestrator(
    settings: Settings,
    *,
    store: KeyValueStore | None = None,
    gateway: ModelGateway | None = None,
    context_source: ContextSource | None = None,
    clock: Callable[[], float] = time.time,
) -> DecisionSupportOrchestrator:
    store = store or InMemoryKVStore(clock=clock)
    gateway = gateway or ModelGateway(settings)
    if context_source is None and settings.context_base_url:
        context_source = HttpContextSource(settings.context_base_url)
    policy = load_policy(settings.policy_path)
    return DecisionSupportOrchestrator(
        settings=settings,
        gateway=gateway,
        limiter=RateLimiter.from_settings(store, settings, clock=clock),
        cache=ResponseCache(store, model=gateway.default_model, enabled=settings.cache_enabled),
        prompts=PromptAssembler(schema_dir=settings.prompt_schema_dir),
        validator=SafetyValidator(policy),
        monitor=Monitor(clock=clock),
        audit=AuditStore(settings),
        context_source=context_source,
    )
