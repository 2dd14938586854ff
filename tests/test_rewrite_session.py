"""Tests for rewrite_session: accumulator throttle and the session state machine."""

import asyncio

import pytest

from rewrite_session import (
    CANCELLED,
    FAILED,
    IDLE,
    SETTLED,
    STREAMING,
    RewriteSession,
    SessionBusyError,
    StreamAccumulator,
)
from text_correction import RateLimitError
from text_diff import DELETE, EQUAL, INSERT, StyledSegment

ORIGINAL = "今天天氣很好，我想去公圓走走。"
CORRECTED = "今天天氣很好，我想去公園走走。"


def _session(service, recorder=None, **kwargs):
    kwargs.setdefault("settle_delay", 0)
    kwargs.setdefault("timeout", 5)
    callbacks = recorder.callbacks() if recorder else {}
    return RewriteSession(service, **kwargs, **callbacks)


async def _wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# StreamAccumulator
# ---------------------------------------------------------------------------


def test_accumulator_fires_only_after_threshold():
    acc = StreamAccumulator(compare_threshold=5)
    assert [acc.append(f) for f in ["a", "b", "c", "de"]] == [False, False, False, True]
    assert acc.text == "abcde"
    assert acc.displayed_length == 0


def test_accumulator_mark_displayed_resets_pending():
    acc = StreamAccumulator(compare_threshold=3)
    acc.append("abc")
    assert acc.mark_displayed() == "abc"
    assert acc.displayed_length == 3
    assert acc.pending == 0
    assert acc.append("de") is False
    assert acc.append("f") is True
    assert acc.displayed_length == 3
    assert len(acc) == 6


def test_accumulator_rejects_non_positive_threshold():
    with pytest.raises(ValueError):
        StreamAccumulator(compare_threshold=0)


# ---------------------------------------------------------------------------
# Streaming and settling
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_throttled_recompute_waits_for_threshold(fake_service):
    service = fake_service(["a", "b", "c", "de"])
    seen = []
    session = RewriteSession(service, compare_threshold=5, settle_delay=0)
    session.on_diff_update = lambda segments: seen.append(
        (session.accumulator.text, session.accumulator.displayed_length)
    )

    result = await session.start("abcde")

    # One throttled recompute at "abcde", then the settled diff.
    assert seen == [("abcde", 5), ("abcde", 5)]
    assert result.segments == [StyledSegment(EQUAL, "abcde")]


@pytest.mark.asyncio
async def test_recompute_diffs_against_text_so_far(fake_service, recorder):
    service = fake_service(["今天天氣", "很好，我想", "去公園走走。"])
    session = _session(service, recorder, compare_threshold=4)

    await session.start(ORIGINAL)

    diffs = recorder.of("diff")
    # "今天天氣" (4), "很好，我想" (+5), "去公園走走。" (+6), settle
    assert len(diffs) == 4
    first = diffs[0][1]
    assert first[0] == StyledSegment(EQUAL, "今天天氣")
    assert first[-1].kind == DELETE


@pytest.mark.asyncio
async def test_end_to_end_single_character_correction(fake_service, recorder):
    service = fake_service(["今天天氣很好，", "我想去公園", "走走。"])
    session = _session(service, recorder)

    result = await session.start(ORIGINAL)

    assert result.corrected_text == CORRECTED
    assert result.segments == [
        StyledSegment(EQUAL, "今天天氣很好，我想去公"),
        StyledSegment(DELETE, "圓"),
        StyledSegment(INSERT, "園"),
        StyledSegment(EQUAL, "走走。"),
    ]
    assert result.stats.change_count == 1
    assert result.stats.character_count == 15
    assert session.state == SETTLED
    assert session.outcome == SETTLED
    assert not session.is_rewriting
    assert [e[0] for e in recorder.events] == ["diff", "stats", "settled"]
    assert service.calls == [ORIGINAL]


@pytest.mark.asyncio
async def test_final_diff_ignores_surrounding_whitespace(fake_service):
    service = fake_service(["\n", "公園", "\n"])
    session = _session(service)

    result = await session.start("公圓")

    assert result.corrected_text == "公園"
    assert [s.kind for s in result.segments] == [EQUAL, DELETE, INSERT]


@pytest.mark.asyncio
async def test_settle_delay_is_applied_before_final_diff(fake_service, recorder):
    service = fake_service(["公園"])
    session = _session(service, recorder, settle_delay=0.05)

    task = asyncio.ensure_future(session.start("公圓"))
    await _wait_for(lambda: service.closed)
    assert recorder.of("settled") == []
    await task
    assert len(recorder.of("settled")) == 1


@pytest.mark.asyncio
async def test_session_can_be_restarted_after_settling(fake_service):
    service = fake_service(["公園"])
    session = _session(service)

    await session.start("公圓")
    result = await session.start("公圓")

    assert result.corrected_text == "公園"
    assert service.calls == ["公圓", "公圓"]


# ---------------------------------------------------------------------------
# Preconditions and single-flight
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize("original", ["", "   \n", None])
async def test_empty_original_is_rejected_before_streaming(fake_service, original):
    service = fake_service(["x"])
    session = _session(service)

    with pytest.raises(ValueError):
        await session.start(original)

    assert service.calls == []
    assert session.state == IDLE


@pytest.mark.asyncio
async def test_second_start_while_streaming_is_rejected(fake_service, recorder):
    service = fake_service(["今天天氣很好，", "我想去公園", "走走。"], delay=0.02)
    session = _session(service, recorder)

    task = asyncio.ensure_future(session.start(ORIGINAL))
    await _wait_for(lambda: service.yielded >= 1)
    assert session.state == STREAMING

    with pytest.raises(SessionBusyError):
        await session.start("另一段文字")

    assert session.state == STREAMING
    assert session.original_text == ORIGINAL

    result = await task
    assert result.corrected_text == CORRECTED
    assert service.calls == [ORIGINAL]


# ---------------------------------------------------------------------------
# Failure, cancellation and timeout
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_mid_stream_stops_all_updates(fake_service, recorder):
    fragments = ["今", "天", "天", "氣", "很", "好", "，", "我", "想", "去"]
    service = fake_service(fragments, delay=0.01)
    session = _session(service, recorder, compare_threshold=1)

    task = asyncio.ensure_future(session.start(ORIGINAL))
    await _wait_for(lambda: len(recorder.of("diff")) >= 2)

    assert session.cancel() is True
    events_at_cancel = len(recorder.events)
    result = await task
    await asyncio.sleep(0.05)

    assert result is None
    assert len(recorder.events) == events_at_cancel
    assert recorder.of("settled") == []
    assert service.closed
    assert service.yielded < len(fragments)
    assert session.state == IDLE
    assert session.outcome == CANCELLED
    assert session.segments == []


@pytest.mark.asyncio
async def test_restart_right_after_cancel_is_not_clobbered(fake_service, recorder):
    service = fake_service(["公", "園"], delay=0.02)
    session = _session(service, recorder)

    first = asyncio.ensure_future(session.start("公圓"))
    await _wait_for(lambda: service.yielded >= 1)
    assert session.cancel() is True

    # The cancelled run unwinds while the new one is already streaming.
    second = await session.start("公圓")

    assert await first is None
    assert second.corrected_text == "公園"
    assert session.state == SETTLED
    assert session.outcome == SETTLED
    assert session.segments == second.segments
    assert len(recorder.of("settled")) == 1
    assert recorder.of("error") == []


@pytest.mark.asyncio
async def test_cancel_when_idle_is_a_noop(fake_service):
    session = _session(fake_service([]))
    assert session.cancel() is False
    assert session.state == IDLE


@pytest.mark.asyncio
async def test_timeout_reports_error_once_and_cancels_stream(fake_service, recorder):
    service = fake_service(["今天"], hang=True)
    session = _session(service, recorder, timeout=0.05)

    result = await session.start(ORIGINAL)

    assert result is None
    errors = recorder.of("error")
    assert len(errors) == 1
    assert errors[0][1] == "CorrectionTimeout"
    assert recorder.of("diff") == []
    assert recorder.of("settled") == []
    assert service.closed
    assert session.state == IDLE
    assert session.outcome == FAILED


@pytest.mark.asyncio
async def test_service_error_discards_partial_diff(fake_service, recorder):
    service = fake_service(["今天天氣很好"], error=RateLimitError("slow down"))
    session = _session(service, recorder, compare_threshold=2)

    result = await session.start(ORIGINAL)

    assert result is None
    assert recorder.of("error") == [("error", "RateLimitError", "slow down")]
    assert recorder.of("settled") == []
    assert session.segments == []
    assert session.stats is None
    assert session.state == IDLE
    assert session.outcome == FAILED


@pytest.mark.asyncio
async def test_empty_response_is_an_error(fake_service, recorder):
    service = fake_service([" ", "\n"])
    session = _session(service, recorder)

    result = await session.start(ORIGINAL)

    assert result is None
    assert [e[1] for e in recorder.of("error")] == ["InvalidResponseError"]


@pytest.mark.asyncio
async def test_failing_callback_does_not_break_session(fake_service):
    def boom(segments):
        raise RuntimeError("ui went away")

    session = RewriteSession(fake_service(["公園"]), settle_delay=0, on_diff_update=boom)

    result = await session.start("公圓")

    assert result.corrected_text == "公園"
    assert session.state == SETTLED
