import asyncio
from pathlib import Path

import httpx
import pytest

from clinigate.audit import AuditStore
from clinigate.config import Settings
from clinigate.context import HttpContextSource, StaticContextSource, merge_context
from clinigate.errors import ProviderUnavailableError
from clinigate.schemas import AuditRecord


def _settings(tmp_path: Path) -> Settings:
    return Settings(local_storage_dir=str(tmp_path), s3_bucket=None)


def test_audit_records_append_as_json_lines(tmp_path: Path):
    store = AuditStore(_settings(tmp_path))

    location = asyncio.run(
        store.append(AuditRecord(request_id="ai_1", task="explain_triage", principal="n-1", role="nurse", success=True))
    )
    asyncio.run(
        store.append(
            AuditRecord(
                request_id="ai_2",
                task="caregiver_summary",
                principal="n-1",
                role="nurse",
                success=False,
                error_category="safety_violation",
            )
        )
    )

    assert location.endswith("ai_requests.jsonl")
    assert len((tmp_path / "audit" / "ai_requests.jsonl").read_text().splitlines()) == 2
    only = store.read_records(request_id="ai_2")
    assert len(only) == 1
    assert only[0]["error_category"] == "safety_violation"
    assert [r["request_id"] for r in store.read_records(limit=1)] == ["ai_2"]


def test_static_context_source_returns_copies():
    source = StaticContextSource({"s-1": {"triage_priority": "green"}})

    fetched = asyncio.run(source.fetch("s-1"))
    fetched["triage_priority"] = "red"

    assert asyncio.run(source.fetch("s-1")) == {"triage_priority": "green"}
    assert asyncio.run(source.fetch("missing")) == {}


def test_http_context_source_unwraps_context_and_handles_404():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/sessions/s-1/context":
            return httpx.Response(200, json={"context": {"age_months": 18, "findings": ["fever"]}})
        return httpx.Response(404, json={"detail": "not found"})

    source = HttpContextSource("http://ehr.local/", transport=httpx.MockTransport(handler))

    assert asyncio.run(source.fetch("s-1")) == {"age_months": 18, "findings": ["fever"]}
    assert asyncio.run(source.fetch("s-2")) == {}


def test_http_context_source_server_error_is_provider_unavailable():
    source = HttpContextSource(
        "http://ehr.local",
        transport=httpx.MockTransport(lambda request: httpx.Response(503, text="down")),
    )

    with pytest.raises(ProviderUnavailableError):
        asyncio.run(source.fetch("s-1"))


def test_merge_context_prefers_supplied_values_but_ignores_nulls():
    merged = merge_context(
        {"triage_priority": "green", "chief_complaint": "Cough"},
        {"triage_priority": "yellow", "chief_complaint": None, "age_months": 9},
    )

    assert merged == {"triage_priority": "yellow", "chief_complaint": "Cough", "age_months": 9}
