"""Response cache keyed on task plus normalised clinical context."""

from __future__ import annotations

import glob
import logging
from typing import Any

from clinigate.context import normalize_context
from clinigate.schemas import CacheEntry, GatewayResponse, SafetyVerdict
from clinigate.store import KeyValueStore
from clinigate.tasks import TaskSpec
from clinigate.utils import canonical_json, sha256_hex

logger = logging.getLogger(__name__)


CACHE_PREFIX = "ai_response"
VOLATILE_FIELDS = frozenset({"timestamp", "request_id", "requestId", "session_id", "sessionId", "user_id", "_token"})


def _normalize(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(k): _normalize(v)
            for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))
            if str(k) not in VOLATILE_FIELDS
        }
    if isinstance(value, (list, tuple, set)):
        items = [_normalize(v) for v in value]
        if all(isinstance(v, str) for v in items):
            return sorted(v.strip() for v in items)
        return items
    if isinstance(value, str):
        return value.strip()
    return value


def patient_id_of(context: dict[str, Any]) -> str | None:
    for key in ("patient_id", "patientId", "patient_cpt"):
        value = context.get(key)
        if value:
            return str(value)
    patient = context.get("patient")
    if isinstance(patient, dict):
        value = patient.get("id") or patient.get("patient_id")
        if value:
            return str(value)
    return None


class ResponseCache:
    def __init__(self, store: KeyValueStore, *, model: str, enabled: bool = True):
        self._store = store
        self._model = model
        self._enabled = enabled
        self._hits = 0
        self._misses = 0
        self._writes = 0
        self._refusals = 0

    def normalized_context(self, spec: TaskSpec, context: dict[str, Any]) -> dict[str, Any]:
        context = normalize_context(context)
        if spec.cache_fields:
            context = {k: v for k, v in context.items() if k in spec.cache_fields}
        return _normalize(context)

    def key_for(self, spec: TaskSpec, context: dict[str, Any]) -> str:
        material = canonical_json(
            {
                "task": spec.name,
                "model": self._model,
                "temperature": spec.temperature,
                "context": self.normalized_context(spec, context),
            }
        )
        key = f"{CACHE_PREFIX}:{spec.name}:{sha256_hex(material)}"
        patient_id = patient_id_of(context)
        if patient_id:
            key += f":patient:{patient_id}"
        return key

    async def get(self, spec: TaskSpec, context: dict[str, Any]) -> GatewayResponse | None:
        if not self._enabled or not spec.cacheable:
            return None
        key = self.key_for(spec, context)
        raw = await self._store.get(key)
        if raw is None:
            self._misses += 1
            return None

        entry = CacheEntry.model_validate(raw)
        response = GatewayResponse.model_validate(entry.response)
        response.metadata.from_cache = True
        self._hits += 1
        logger.info("cache_hit: task=%s key=%s", spec.name, key[:48])
        return response

    async def put(
        self,
        spec: TaskSpec,
        context: dict[str, Any],
        response: GatewayResponse,
        verdict: SafetyVerdict | None = None,
    ) -> bool:
        refusal = None
        if not self._enabled or not spec.cacheable or spec.cache_ttl_sec <= 0:
            refusal = "not_cacheable"
        elif not response.success or response.response is None:
            refusal = "unsuccessful"
        elif verdict is not None and (verdict.was_modified or verdict.blocked_phrases or not verdict.allowed):
            refusal = "safety_modified"
        if refusal is not None:
            self._refusals += 1
            logger.debug("cache_put_refused: task=%s reason=%s", spec.name, refusal)
            return False

        key = self.key_for(spec, context)
        entry = CacheEntry(
            cache_key=key,
            task=spec.name,
            response=response.model_dump(mode="json"),
            ttl_seconds=spec.cache_ttl_sec,
            patient_id=patient_id_of(context),
        )
        await self._store.set(key, entry.model_dump(mode="json"), ttl_sec=spec.cache_ttl_sec)
        self._writes += 1
        return True

    async def _delete_matching(self, pattern: str) -> int:
        keys = await self._store.scan(pattern)
        for key in keys:
            await self._store.delete(key)
        return len(keys)

    async def invalidate_patient(self, patient_id: str) -> int:
        count = await self._delete_matching(f"{CACHE_PREFIX}:*:patient:{glob.escape(str(patient_id))}")
        logger.info("cache_invalidated: patient_id=%s entries=%d", patient_id, count)
        return count

    async def invalidate_task(self, task: str) -> int:
        count = await self._delete_matching(f"{CACHE_PREFIX}:{glob.escape(task)}:*")
        logger.info("cache_invalidated: task=%s entries=%d", task, count)
        return count

    async def clear(self) -> int:
        return await self._delete_matching(f"{CACHE_PREFIX}:*")

    def stats(self) -> dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "enabled": self._enabled,
            "hits": self._hits,
            "misses": self._misses,
            "writes": self._writes,
            "refusals": self._refusals,
            "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
        }
