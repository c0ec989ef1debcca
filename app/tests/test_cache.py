import asyncio

from clinigate.cache import ResponseCache, patient_id_of
from clinigate.schemas import GatewayResponse, SafetyVerdict, StructuredResponse
from clinigate.store import InMemoryKVStore
from clinigate.tasks import get_task


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _response(request_id: str = "ai_1") -> GatewayResponse:
    return GatewayResponse(
        success=True,
        request_id=request_id,
        task="caregiver_summary",
        response=StructuredResponse(explanation="Keep the child warm.", confidence=0.7, model="gemma3:4b"),
    )


def _context(**overrides):
    context = {
        "patient_id": "p-001",
        "age_months": 18,
        "findings": ["fever", "fast_breathing"],
        "triage_priority": "yellow",
        "timestamp": "2026-10-17T08:00:00Z",
    }
    context.update(overrides)
    return context


def test_get_after_put_is_marked_from_cache():
    cache = ResponseCache(InMemoryKVStore(), model="gemma3:4b")
    spec = get_task("caregiver_summary")

    async def _run():
        assert await cache.put(spec, _context(), _response()) is True
        return await cache.get(spec, _context())

    hit = asyncio.run(_run())

    assert hit is not None
    assert hit.metadata.from_cache is True
    assert hit.response.explanation == "Keep the child warm."


def test_key_ignores_ordering_whitespace_and_volatile_fields():
    cache = ResponseCache(InMemoryKVStore(), model="gemma3:4b")
    spec = get_task("caregiver_summary")

    first = cache.key_for(spec, _context())
    second = cache.key_for(
        spec,
        _context(findings=[" fast_breathing", "fever"], timestamp="2026-10-18T09:30:00Z", request_id="ai_other"),
    )

    assert first == second
    assert first.endswith(":patient:p-001")


def test_key_changes_with_clinical_content_and_model():
    spec = get_task("caregiver_summary")
    cache = ResponseCache(InMemoryKVStore(), model="gemma3:4b")
    other_model = ResponseCache(InMemoryKVStore(), model="gemma3:12b")

    assert cache.key_for(spec, _context()) != cache.key_for(spec, _context(triage_priority="red"))
    assert cache.key_for(spec, _context()) != other_model.key_for(spec, _context())


def test_cache_fields_restrict_what_the_key_sees():
    cache = ResponseCache(InMemoryKVStore(), model="gemma3:4b")
    spec = get_task("explain_triage")

    assert cache.key_for(spec, _context()) == cache.key_for(spec, _context(nurse_note="recheck at noon"))


def test_safety_modified_and_failed_responses_are_not_cached():
    cache = ResponseCache(InMemoryKVStore(), model="gemma3:4b")
    spec = get_task("caregiver_summary")
    blocked = SafetyVerdict(allowed=False, output="fallback", blocked_phrases=["you must"], was_modified=True)
    failed = GatewayResponse(success=False, request_id="ai_2", task="caregiver_summary")

    async def _run():
        return (
            await cache.put(spec, _context(), _response(), blocked),
            await cache.put(spec, _context(), failed),
            await cache.get(spec, _context()),
        )

    stored_blocked, stored_failed, hit = asyncio.run(_run())

    assert stored_blocked is False
    assert stored_failed is False
    assert hit is None
    assert cache.stats()["refusals"] == 2


def test_non_cacheable_task_never_stored():
    cache = ResponseCache(InMemoryKVStore(), model="gemma3:4b")
    spec = get_task("red_case_analysis")

    async def _run():
        return await cache.put(spec, _context(), _response()), await cache.get(spec, _context())

    assert asyncio.run(_run()) == (False, None)


def test_entries_expire_after_task_ttl():
    clock = FakeClock()
    cache = ResponseCache(InMemoryKVStore(clock=clock), model="gemma3:4b")
    spec = get_task("caregiver_summary")

    asyncio.run(cache.put(spec, _context(), _response()))
    clock.now += spec.cache_ttl_sec + 1

    assert asyncio.run(cache.get(spec, _context())) is None


def test_invalidate_patient_removes_only_that_patient():
    cache = ResponseCache(InMemoryKVStore(), model="gemma3:4b")
    spec = get_task("caregiver_summary")

    async def _run():
        await cache.put(spec, _context(), _response())
        await cache.put(spec, _context(patient_id="p-002"), _response())
        removed = await cache.invalidate_patient("p-001")
        return removed, await cache.get(spec, _context()), await cache.get(spec, _context(patient_id="p-002"))

    removed, first, second = asyncio.run(_run())

    assert removed == 1
    assert first is None
    assert second is not None


def test_patient_id_lookup_accepts_nested_patient():
    assert patient_id_of({"patient": {"id": "p-9"}}) == "p-9"
    assert patient_id_of({"patientId": "p-3"}) == "p-3"
    assert patient_id_of({}) is None


def test_invalidate_task_and_clear():
    cache = ResponseCache(InMemoryKVStore(), model="gemma3:4b")
    caregiver = get_task("caregiver_summary")
    checklist = get_task("symptom_checklist")

    async def _run():
        await cache.put(caregiver, _context(), _response())
        await cache.put(checklist, _context(), _response())
        by_task = await cache.invalidate_task("caregiver_summary")
        remaining = await cache.get(checklist, _context())
        cleared = await cache.clear()
        return by_task, remaining, cleared

    by_task, remaining, cleared = asyncio.run(_run())

    assert by_task == 1
    assert remaining is not None
    assert cleared == 1


def test_triage_alias_keys_the_same_as_triage_priority():
    cache = ResponseCache(InMemoryKVStore(), model="gemma3:4b")
    spec = get_task("explain_triage")
    base = {key: value for key, value in _context().items() if key != "triage_priority"}

    yellow = cache.key_for(spec, dict(base, triage="yellow"))
    red = cache.key_for(spec, dict(base, triage="red"))

    assert yellow != red
    assert yellow == cache.key_for(spec, dict(base, triage_priority="yellow"))
    assert cache.key_for(spec, dict(base, triage_color="RED")) == red
