"""Read-only clinical context collaborator."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from clinigate.errors import ProviderUnavailableError
from clinigate.inconsistency import TRIAGE_PRIORITY_KEYS, triage_priority_of

logger = logging.getLogger(__name__)


class ContextSource(Protocol):
    async def fetch(self, session_id: str) -> dict[str, Any]: ...


class StaticContextSource:
    """Context served from memory; used when no upstream is configured."""

    def __init__(self, contexts: dict[str, dict[str, Any]] | None = None):
        self._contexts = contexts or {}

    async def fetch(self, session_id: str) -> dict[str, Any]:
        return dict(self._contexts.get(session_id, {}))


class HttpContextSource:
    def __init__(
        self,
        base_url: str,
        *,
        timeout_sec: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout_sec = timeout_sec
        self._transport = transport

    async def fetch(self, session_id: str) -> dict[str, Any]:
        url = f"{self._base_url}/sessions/{session_id}/context"
        try:
            async with httpx.AsyncClient(timeout=self._timeout_sec, transport=self._transport) as client:
                response = await client.get(url)
                if response.status_code == 404:
                    return {}
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(f"Context source unavailable: {type(exc).__name__}") from exc

        if not isinstance(payload, dict):
            logger.warning("context_source_unexpected_payload: session_id=%s", session_id)
            return {}
        context = payload.get("context", payload)
        return dict(context) if isinstance(context, dict) else {}


def merge_context(fetched: dict[str, Any], supplied: dict[str, Any]) -> dict[str, Any]:
    """Caller-supplied keys win over fetched ones."""
    merged = dict(fetched)
    merged.update({k: v for k, v in supplied.items() if v is not None})
    return merged


def normalize_context(context: dict[str, Any]) -> dict[str, Any]:
    """Fold the triage priority aliases into a single ``triage_priority`` key."""
    out = {k: v for k, v in context.items() if k not in TRIAGE_PRIORITY_KEYS}
    priority = triage_priority_of(context)
    if priority:
        out["triage_priority"] = priority
    return out
