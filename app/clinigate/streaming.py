"""Streaming relay: model fragments in, typed stream events out.

A session moves connecting -> generating -> finalizing -> complete|error.
Exactly one terminal event is produced per session and nothing follows it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

from clinigate.errors import CancelledStreamError, ModelTimeoutError, ProviderUnavailableError
from clinigate.extractor import extract_summary
from clinigate.gateway import StreamFragment, as_gateway_error
from clinigate.safety import find_phrases
from clinigate.schemas import StreamEvent
from clinigate.utils import now_ms, truncate_to_words

logger = logging.getLogger(__name__)


PROGRESS_EVERY_CHUNKS = 5
PROGRESS_SENT = 10
PROGRESS_RECEIVING = 30
PROGRESS_FINALIZING = 90


class StreamPhase(str, Enum):
    CONNECTING = "connecting"
    GENERATING = "generating"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    ERROR = "error"


_TRANSITIONS = {
    StreamPhase.CONNECTING: {StreamPhase.GENERATING, StreamPhase.FINALIZING, StreamPhase.ERROR},
    StreamPhase.GENERATING: {StreamPhase.GENERATING, StreamPhase.FINALIZING, StreamPhase.ERROR},
    StreamPhase.FINALIZING: {StreamPhase.COMPLETE, StreamPhase.ERROR},
    StreamPhase.COMPLETE: set(),
    StreamPhase.ERROR: set(),
}


class StreamStateError(RuntimeError):
    pass


@dataclass
class StreamSession:
    request_id: str
    phase: StreamPhase = StreamPhase.CONNECTING
    text: str = ""
    emitted_length: int = 0
    chunk_count: int = 0
    token_count: int = 0
    declared_total: int | None = None

    @property
    def terminal(self) -> bool:
        return self.phase in {StreamPhase.COMPLETE, StreamPhase.ERROR}

    def transition(self, phase: StreamPhase) -> None:
        if phase not in _TRANSITIONS[self.phase]:
            raise StreamStateError(f"illegal stream transition {self.phase.value} -> {phase.value}")
        self.phase = phase


@dataclass
class RelayResult:
    raw_text: str
    text: str
    summary: str | None
    was_truncated: bool
    model: str | None = None
    provider: str | None = None
    eval_count: int | None = None
    chunk_count: int = 0
    blocked_phrases: list[str] = field(default_factory=list)


FinalizeFn = Callable[[RelayResult], Awaitable[tuple[str, dict[str, Any]]]]
FailFn = Callable[[BaseException, RelayResult], Awaitable[dict[str, Any]]]


async def _default_finalize(result: RelayResult) -> tuple[str, dict[str, Any]]:
    return "complete", {
        "full_response": result.text,
        "summary": result.summary,
        "was_truncated": result.was_truncated,
        "model": result.model,
    }


async def _default_fail(exc: BaseException, result: RelayResult) -> dict[str, Any]:
    error = as_gateway_error(exc)
    return {
        "code": "cancelled" if isinstance(error, CancelledStreamError) else getattr(error, "category", "unknown"),
        "message": str(error),
        "recoverable": bool(getattr(error, "retryable", False)),
    }


class StreamingRelay:
    def __init__(
        self,
        *,
        deny_phrases: list[str] | None = None,
        stale_timeout_sec: float = 20.0,
        deadline_sec: float = 60.0,
        progress_every: int = PROGRESS_EVERY_CHUNKS,
    ):
        self._deny_phrases = [p.lower() for p in (deny_phrases or [])]
        self._holdback = max((len(p) for p in self._deny_phrases), default=1) - 1
        self._stale_timeout_sec = stale_timeout_sec
        self._deadline_sec = deadline_sec
        self._progress_every = max(1, progress_every)

    def _event(self, session: StreamSession, event_type: str, payload: dict[str, Any]) -> StreamEvent:
        return StreamEvent(type=event_type, request_id=session.request_id, payload=payload)

    def _progress(self, session: StreamSession, progress: int, message: str) -> StreamEvent:
        return self._event(
            session,
            "progress",
            {"progress": progress, "message": message, "chunk_index": session.chunk_count},
        )

    def _chunk(self, session: StreamSession, text: str, *, is_last: bool) -> StreamEvent:
        event = self._event(
            session,
            "chunk",
            {
                "chunk": text,
                "total_length": session.emitted_length + len(text),
                "chunk_index": session.chunk_count,
                "is_first": session.chunk_count == 0,
                "is_last": is_last,
            },
        )
        session.emitted_length += len(text)
        session.chunk_count += 1
        return event

    async def _next_fragment(
        self,
        fragments: AsyncIterator[StreamFragment],
        *,
        cancel: asyncio.Event | None,
        deadline_ms: float,
    ) -> StreamFragment | None:
        remaining = (deadline_ms - now_ms()) / 1000.0
        if remaining <= 0:
            raise ModelTimeoutError(f"Stream exceeded the {self._deadline_sec:g}s request deadline.")
        timeout = min(self._stale_timeout_sec, remaining)

        read = asyncio.ensure_future(fragments.__anext__())
        waiters: set[asyncio.Future] = {read}
        cancel_wait = None
        if cancel is not None:
            cancel_wait = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_wait is not None and not cancel_wait.done():
                cancel_wait.cancel()

        if read not in done:
            read.cancel()
            with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                await read
            if cancel is not None and cancel.is_set():
                raise CancelledStreamError("Stream cancelled by caller.")
            if timeout < self._stale_timeout_sec:
                raise ModelTimeoutError(f"Stream exceeded the {self._deadline_sec:g}s request deadline.")
            raise ProviderUnavailableError(f"No model output for {self._stale_timeout_sec:g}s; stream stalled.")

        if cancel is not None and cancel.is_set():
            raise CancelledStreamError("Stream cancelled by caller.")
        try:
            return read.result()
        except StopAsyncIteration:
            return None

    def _releasable(self, session: StreamSession) -> str:
        """Text that can be emitted without exposing a partial deny phrase."""
        safe_end = max(session.emitted_length, len(session.text) - self._holdback)
        return session.text[session.emitted_length : safe_end]

    async def relay(
        self,
        session: StreamSession,
        fragments: AsyncIterator[StreamFragment],
        *,
        word_limit: int,
        model: str | None = None,
        cancel: asyncio.Event | None = None,
        finalize: FinalizeFn | None = None,
        fail: FailFn | None = None,
    ) -> AsyncIterator[StreamEvent]:
        finalize = finalize or _default_finalize
        fail = fail or _default_fail
        deadline_ms = now_ms() + self._deadline_sec * 1000.0
        result = RelayResult(raw_text="", text="", summary=None, was_truncated=False, model=model)

        yield self._event(session, "connection_established", {"status": "connected", "model": model})
        yield self._progress(session, PROGRESS_SENT, "Sending request to model")

        try:
            blocked: list[str] = []
            while True:
                fragment = await self._next_fragment(fragments, cancel=cancel, deadline_ms=deadline_ms)
                if fragment is None:
                    break

                result.model = fragment.model or result.model
                result.provider = fragment.provider
                if fragment.eval_count is not None:
                    result.eval_count = fragment.eval_count

                if fragment.text:
                    session.transition(StreamPhase.GENERATING)
                    session.text += fragment.text
                    session.token_count += 1
                    if session.token_count == 1:
                        yield self._progress(session, PROGRESS_RECEIVING, "Receiving response")

                    blocked = find_phrases(session.text, self._deny_phrases)
                    if blocked:
                        logger.warning(
                            "stream_deny_phrase: request_id=%s phrases=%s",
                            session.request_id,
                            ",".join(blocked),
                        )
                        break

                    pending = self._releasable(session)
                    if pending and not fragment.done:
                        yield self._chunk(session, pending, is_last=False)
                        if session.chunk_count % self._progress_every == 0:
                            progress = min(PROGRESS_FINALIZING, PROGRESS_RECEIVING + 2 * session.chunk_count)
                            yield self._progress(session, progress, "Generating")

                if fragment.done:
                    break

            if not blocked:
                tail = session.text[session.emitted_length :]
                yield self._chunk(session, tail, is_last=True)

            session.transition(StreamPhase.FINALIZING)
            yield self._progress(session, PROGRESS_FINALIZING, "Finalizing response")

            text, was_truncated = truncate_to_words(session.text, word_limit)
            result.raw_text = session.text
            result.text = text
            result.was_truncated = was_truncated
            result.summary = extract_summary(text)
            result.chunk_count = session.chunk_count
            result.blocked_phrases = blocked

            event_type, payload = await finalize(result)
        except Exception as exc:
            result.raw_text = result.raw_text or session.text
            result.chunk_count = session.chunk_count
            logger.warning(
                "stream_failed: request_id=%s phase=%s error=%s",
                session.request_id,
                session.phase.value,
                f"{type(exc).__name__}: {exc}",
            )
            payload = await fail(exc, result)
            session.phase = StreamPhase.ERROR
            yield self._event(session, "error", payload)
            return
        finally:
            aclose = getattr(fragments, "aclose", None)
            if aclose is not None:
                await aclose()

        if event_type == "complete":
            session.transition(StreamPhase.COMPLETE)
        else:
            session.transition(StreamPhase.ERROR)
        yield self._event(session, event_type, payload)
