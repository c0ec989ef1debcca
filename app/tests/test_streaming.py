import asyncio

import pytest

from clinigate.gateway import StreamFragment
from clinigate.streaming import RelayResult, StreamingRelay, StreamPhase, StreamSession, StreamStateError
from clinigate.utils import count_words


def _fragment(text: str, *, done: bool = False) -> StreamFragment:
    return StreamFragment(text=text, done=done, model="gemma3:4b", provider="primary", eval_count=7 if done else None)


async def _fragments(parts, *, delay: float = 0.0):
    for index, part in enumerate(parts):
        if delay:
            await asyncio.sleep(delay)
        yield _fragment(part, done=index == len(parts) - 1)


async def _slow_fragments():
    await asyncio.sleep(5)
    yield _fragment("late", done=True)


def _collect(relay: StreamingRelay, fragments, **kwargs):
    async def _run():
        session = StreamSession(request_id="ai_stream")
        events = [event async for event in relay.relay(session, fragments, **kwargs)]
        return session, events

    return asyncio.run(_run())


def _chunks(events) -> str:
    return "".join(e.payload["chunk"] for e in events if e.type == "chunk")


def test_stream_emits_exactly_one_terminal_event_last():
    session, events = _collect(
        StreamingRelay(),
        _fragments(["Hello there. ", "All is well.", ""]),
        word_limit=300,
    )

    terminal = [e for e in events if e.is_terminal]
    assert len(terminal) == 1
    assert events[-1].type == "complete"
    assert events[0].type == "connection_established"
    assert [e.payload["progress"] for e in events if e.type == "progress"] == [10, 30, 90]
    assert _chunks(events) == "Hello there. All is well."
    assert [e.payload["is_last"] for e in events if e.type == "chunk"][-1] is True
    assert session.phase == StreamPhase.COMPLETE


def test_word_cap_applies_to_final_text_and_summary():
    sentence = "The child has fast breathing and needs review today. "
    raw = sentence * 90 + "SUMMARY: Tail summary that must not appear."
    parts = [raw[i : i + 50] for i in range(0, len(raw), 50)]

    _, events = _collect(StreamingRelay(), _fragments(parts), word_limit=500)

    complete = events[-1].payload
    assert complete["was_truncated"] is True
    assert count_words(complete["full_response"]) <= 500
    assert complete["summary"] == "The child has fast breathing and needs review today."


def test_deny_phrase_is_never_emitted_even_across_fragments():
    captured: list[RelayResult] = []

    async def finalize(result: RelayResult):
        captured.append(result)
        return "error", {"code": "safety_violation"}

    _, events = _collect(
        StreamingRelay(deny_phrases=["I recommend"]),
        _fragments(["The child ", "is stable. I reco", "mmend rest.", " More text."]),
        word_limit=300,
        finalize=finalize,
    )

    emitted = _chunks(events).lower()
    assert "recommend" not in emitted
    assert "i reco" not in emitted
    assert captured[0].blocked_phrases == ["i recommend"]
    assert events[-1].type == "error"
    assert sum(1 for e in events if e.is_terminal) == 1


def test_stalled_stream_ends_with_provider_error():
    _, events = _collect(StreamingRelay(stale_timeout_sec=0.05, deadline_sec=5), _slow_fragments(), word_limit=300)

    assert events[-1].type == "error"
    assert events[-1].payload["code"] == "provider_unavailable"
    assert events[-1].payload["recoverable"] is True


def test_request_deadline_ends_with_timeout():
    _, events = _collect(StreamingRelay(stale_timeout_sec=1, deadline_sec=0.05), _slow_fragments(), word_limit=300)

    assert events[-1].payload["code"] == "timeout"


def test_cancelled_stream_reports_cancellation():
    async def _run():
        cancel = asyncio.Event()
        cancel.set()
        session = StreamSession(request_id="ai_cancel")
        relay = StreamingRelay(stale_timeout_sec=1)
        return [e async for e in relay.relay(session, _slow_fragments(), word_limit=300, cancel=cancel)]

    events = asyncio.run(_run())

    assert events[-1].type == "error"
    assert events[-1].payload["code"] == "cancelled"
    assert sum(1 for e in events if e.is_terminal) == 1


def test_terminal_phase_cannot_be_left():
    session = StreamSession(request_id="ai_phase")
    session.transition(StreamPhase.GENERATING)
    session.transition(StreamPhase.FINALIZING)
    session.transition(StreamPhase.COMPLETE)

    assert session.terminal is True
    with pytest.raises(StreamStateError):
        session.transition(StreamPhase.GENERATING)
