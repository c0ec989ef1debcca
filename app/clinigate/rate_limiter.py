"""Admission control: per-task, global and daily-quota budgets."""

from __future__ import annotations

import logging
import math
import time
from typing import Callable

from clinigate.config import Settings
from clinigate.schemas import AdmissionDecision, LimitStatus
from clinigate.store import KeyValueStore
from clinigate.tasks import TASKS

logger = logging.getLogger(__name__)


DEFAULT_TASK_LIMIT = 20
DEFAULT_GLOBAL_LIMIT = 200
DEFAULT_ROLE_QUOTAS = {
    "doctor": 500,
    "nurse": 300,
    "senior-nurse": 300,
    "clinician": 400,
    "admin": 100,
}
DEFAULT_QUOTA = 100

MINUTE_SEC = 60
DAY_SEC = 86400
# Buckets outlive their window so late readers still see the final count.
MINUTE_KEY_TTL = 120


def _status(limit: int, used: int, reset_at: int) -> LimitStatus:
    return LimitStatus(limit=limit, used=used, remaining=max(0, limit - used), reset_at=reset_at)


class RateLimiter:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        global_limit: int = DEFAULT_GLOBAL_LIMIT,
        task_limits: dict[str, int] | None = None,
        role_quotas: dict[str, int] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._global_limit = global_limit
        self._task_limits = dict(task_limits or {})
        self._role_quotas = {**DEFAULT_ROLE_QUOTAS, **(role_quotas or {})}
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        store: KeyValueStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> "RateLimiter":
        return cls(
            store,
            global_limit=settings.global_limit_per_minute,
            task_limits=settings.task_limit_overrides,
            role_quotas=settings.role_quota_overrides,
            clock=clock,
        )

    def task_limit(self, task: str) -> int:
        if task in self._task_limits:
            return self._task_limits[task]
        spec = TASKS.get(task)
        return spec.limit_per_minute if spec else DEFAULT_TASK_LIMIT

    def daily_quota(self, role: str) -> int:
        return self._role_quotas.get(str(role or "").strip().lower(), DEFAULT_QUOTA)

    def _buckets(self) -> tuple[int, int]:
        now = self._clock()
        return int(now // MINUTE_SEC), int(now // DAY_SEC)

    @staticmethod
    def _task_key(task: str, principal: str, minute: int) -> str:
        return f"ai_rate:task:{task}:{principal}:{minute}"

    @staticmethod
    def _global_key(minute: int) -> str:
        return f"ai_rate:global:{minute}"

    @staticmethod
    def _quota_key(principal: str, day: int) -> str:
        return f"ai_quota:{principal}:{day}"

    async def _count(self, key: str) -> int:
        return int(await self._store.get(key) or 0)

    def _budgets(self, task: str, principal: str, role: str) -> dict[str, tuple[str, int, int, int]]:
        """name -> (counter key, limit, reset_at, key ttl)."""
        minute, day = self._buckets()
        minute_reset = (minute + 1) * MINUTE_SEC
        day_reset = (day + 1) * DAY_SEC
        return {
            "task": (self._task_key(task, principal, minute), self.task_limit(task), minute_reset, MINUTE_KEY_TTL),
            "global": (self._global_key(minute), self._global_limit, minute_reset, MINUTE_KEY_TTL),
            "quota": (self._quota_key(principal, day), self.daily_quota(role), day_reset, DAY_SEC),
        }

    async def remaining(self, task: str, principal: str, role: str) -> dict[str, LimitStatus]:
        return {
            name: _status(limit, await self._count(key), reset_at)
            for name, (key, limit, reset_at, _) in self._budgets(task, principal, role).items()
        }

    async def admit(self, task: str, principal: str, role: str) -> AdmissionDecision:
        """Reserve one request against all three budgets, or against none.

        Counters are incremented before they are compared, so concurrent
        admissions never see the same spare capacity. A denied request
        gives its reservation back.
        """
        budgets = self._budgets(task, principal, role)
        used = {
            name: await self._store.incr(key, ttl_sec=ttl)
            for name, (key, _, _, ttl) in budgets.items()
        }

        reason = None
        exhausted = None
        for name, label in (
            ("task", "task_limit_exceeded"),
            ("global", "global_limit_exceeded"),
            ("quota", "quota_exceeded"),
        ):
            if used[name] > budgets[name][1]:
                reason, exhausted = label, name
                break

        retry_after = None
        if exhausted is not None:
            for name, (key, _, _, ttl) in budgets.items():
                used[name] = await self._store.incr(key, amount=-1, ttl_sec=ttl)
            retry_after = max(1, math.ceil(budgets[exhausted][2] - self._clock()))
            logger.warning(
                "rate_limit_blocked: reason=%s task=%s principal=%s retry_after=%s",
                reason,
                task,
                principal,
                retry_after,
            )

        decision = AdmissionDecision(
            allowed=reason is None,
            reason=reason,
            retry_after=retry_after,
            limits={
                name: _status(limit, used[name], reset_at)
                for name, (_, limit, reset_at, _) in budgets.items()
            },
        )
        decision.headers = self.headers(decision)
        return decision

    async def record(self, task: str, principal: str, *, success: bool) -> None:
        """Count the outcome of an admitted request. Budgets were spent in ``admit``."""
        day = self._buckets()[1]
        outcome = "success" if success else "failure"
        await self._store.incr(f"ai_rate:outcome:{task}:{outcome}:{day}", ttl_sec=DAY_SEC)

    @staticmethod
    def headers(decision: AdmissionDecision) -> dict[str, str]:
        out: dict[str, str] = {}
        task = decision.limits.get("task")
        if task is not None:
            out["X-RateLimit-Limit"] = str(task.limit)
            out["X-RateLimit-Remaining"] = str(task.remaining)
            out["X-RateLimit-Reset"] = str(task.reset_at)
        global_ = decision.limits.get("global")
        if global_ is not None:
            out["X-GlobalLimit-Limit"] = str(global_.limit)
            out["X-GlobalLimit-Remaining"] = str(global_.remaining)
        quota = decision.limits.get("quota")
        if quota is not None:
            out["X-DailyQuota-Limit"] = str(quota.limit)
            out["X-DailyQuota-Remaining"] = str(quota.remaining)
            out["X-DailyQuota-Reset"] = str(quota.reset_at)
        if decision.retry_after is not None:
            out["Retry-After"] = str(decision.retry_after)
        return out

    async def reset_for(self, principal: str) -> int:
        keys = await self._store.scan(f"ai_rate:task:*:{principal}:*")
        keys += await self._store.scan(f"ai_quota:{principal}:*")
        for key in keys:
            await self._store.delete(key)
        logger.info("rate_limit_reset: principal=%s keys=%d", principal, len(keys))
        return len(keys)

    async def stats(self) -> dict[str, object]:
        minute, day = self._buckets()
        per_task: dict[str, dict[str, int]] = {}
        for key in await self._store.scan(f"ai_rate:outcome:*:*:{day}"):
            _, _, task, outcome, _ = key.split(":", 4)
            per_task.setdefault(task, {"success": 0, "failure": 0})[outcome] = await self._count(key)
        return {
            "global_this_minute": await self._count(self._global_key(minute)),
            "global_limit": self._global_limit,
            "tasks_today": per_task,
        }
