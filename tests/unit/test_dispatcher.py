"""Unit tests for the dispatch loop: qos, frame filtering, limits, settling."""
from __future__ import annotations

import asyncio

import pytest

from pipe_consumer.app.application.dispatcher import DeliveryDispatcher
from pipe_consumer.app.constants import DISPATCHER_STATE
from pipe_consumer.app.domain.errors import PipelineSpawnError, TransportError
from pipe_consumer.app.domain.models import ConsumeOptions, Frame, FrameKind
from tests.fakes import FakeLauncher, FakeSession

COMMAND = ("sh", "-c", "cat > /dev/null")


def _deliveries(*tags: int) -> tuple[list[Frame], dict[int, list[bytes]]]:
    frames = [Frame.deliver(tag, 8) for tag in tags]
    bodies = {tag: [b"body", b"-%03d" % (tag % 1000)] for tag in tags}
    return frames, bodies


def _run(session, launcher, options, **kwargs) -> int:
    dispatcher = DeliveryDispatcher(session, launcher, options, **kwargs)
    return asyncio.run(dispatcher.run(b"orders"))


def test_count_sets_qos_before_consume_and_bounds_the_loop(events):
    frames, bodies = _deliveries(1, 2, 3, 4)
    session = FakeSession(frames, bodies, events=events)
    launcher = FakeLauncher(events=events)

    processed = _run(session, launcher, ConsumeOptions(command=COMMAND, count=2))

    assert processed == 2
    assert events[0] == ("basic.qos", 2)
    assert events[1] == ("basic.consume", b"orders", False)
    assert len(launcher.pipelines) == 2
    assert session.acked == [1, 2]


def test_count_outside_short_range_skips_qos(events):
    frames, bodies = _deliveries(1, 2)
    session = FakeSession(frames, bodies, events=events)
    launcher = FakeLauncher(events=events)

    # Two deliveries, then the connection drops before the limit is hit.
    with pytest.raises(TransportError, match="waiting for header frame"):
        _run(session, launcher, ConsumeOptions(command=COMMAND, count=70_000))

    assert session.calls("basic.qos") == []
    assert session.acked == [1, 2]


def test_no_ack_mode_streams_every_delivery_and_never_acks(events):
    frames, bodies = _deliveries(1, 2, 3)
    session = FakeSession(frames, bodies, events=events)
    launcher = FakeLauncher([(0,), (1,), (0,)], events=events)

    processed = _run(session, launcher, ConsumeOptions(command=COMMAND, no_ack=True, count=3))

    assert processed == 3
    assert session.calls("basic.consume") == [("basic.consume", b"orders", True)]
    assert launcher.argvs == [COMMAND, COMMAND, COMMAND]
    assert [bytes(p.written) for p in launcher.pipelines] == [b"body-001", b"body-002", b"body-003"]
    assert session.calls("basic.ack") == []


def test_failed_pipeline_is_not_acked_and_loop_continues(events):
    frames, bodies = _deliveries(42, 43)
    session = FakeSession(frames, bodies, events=events)
    launcher = FakeLauncher([(1,), (0,)], events=events)

    processed = _run(session, launcher, ConsumeOptions(command=COMMAND, count=2))

    assert processed == 2
    assert session.acked == [43]


def test_ack_follows_full_body_and_pipeline_exit(events):
    frames, bodies = _deliveries(5)
    session = FakeSession(frames, bodies, events=events)
    launcher = FakeLauncher(events=events)

    _run(session, launcher, ConsumeOptions(command=COMMAND, count=1))

    names = [event[0] for event in events]
    assert names == [
        "basic.qos",
        "basic.consume",
        "wait_frame",
        "pipeline.spawn",
        "body_fragment",
        "pipeline.write",
        "body_fragment",
        "pipeline.write",
        "pipeline.close_input",
        "pipeline.wait",
        "basic.ack",
        "release_buffers",
    ]
    assert launcher.pipelines[0].exited is True


def test_non_delivery_frames_are_ignored_and_not_counted(events):
    frames = [
        Frame(kind=FrameKind.HEARTBEAT),
        Frame(kind=FrameKind.METHOD_OTHER),
        Frame(kind=FrameKind.HEADER),
        Frame(kind=FrameKind.BODY),
        Frame.deliver(9, 3),
    ]
    session = FakeSession(frames, {9: [b"xyz"]}, events=events)
    launcher = FakeLauncher(events=events)

    processed = _run(session, launcher, ConsumeOptions(command=COMMAND, count=1))

    assert processed == 1
    assert len(launcher.pipelines) == 1
    assert session.acked == [9]
    assert len(session.calls("release_buffers")) == 1


def test_zero_count_consumes_nothing(events):
    frames, bodies = _deliveries(1)
    session = FakeSession(frames, bodies, events=events)
    launcher = FakeLauncher(events=events)

    processed = _run(session, launcher, ConsumeOptions(command=COMMAND, count=0))

    assert processed == 0
    assert session.calls("basic.qos") == []
    assert session.calls("basic.consume") == [("basic.consume", b"orders", False)]
    assert session.calls("wait_frame") == []


def test_spawn_failure_is_fatal_and_nothing_is_acked(events):
    frames, bodies = _deliveries(1)
    session = FakeSession(frames, bodies, events=events)
    launcher = FakeLauncher(events=events, spawn_error=PipelineSpawnError("nosuchcmd: not found"))

    with pytest.raises(PipelineSpawnError):
        _run(session, launcher, ConsumeOptions(command=("nosuchcmd",), count=1))

    assert session.acked == []


def test_short_body_aborts_pipeline_without_ack(events):
    session = FakeSession([Frame.deliver(1, 100)], {1: [b"only-part"]}, events=events)
    launcher = FakeLauncher(events=events)

    with pytest.raises(TransportError):
        _run(session, launcher, ConsumeOptions(command=COMMAND, count=1))

    assert session.acked == []
    assert launcher.pipelines[0].aborted is True


def test_unbounded_run_stops_on_shutdown_between_deliveries(events):
    async def _scenario() -> tuple[int, str]:
        shutdown = asyncio.Event()
        frames, bodies = _deliveries(1, 2, 3)
        # The fake sets `shutdown` once it has no more frames to hand out.
        session = FakeSession(frames, bodies, events=events, idle=shutdown)
        launcher = FakeLauncher(events=events)
        dispatcher = DeliveryDispatcher(session, launcher, ConsumeOptions(command=COMMAND), shutdown=shutdown)  # type: ignore[arg-type]
        processed = await dispatcher.run(b"orders")
        return processed, dispatcher.state

    processed, state = asyncio.run(_scenario())

    assert processed == 3
    assert state == DISPATCHER_STATE.DONE
    assert [event for event in events if event[0] == "basic.ack"] == [("basic.ack", 1), ("basic.ack", 2), ("basic.ack", 3)]
    assert ("basic.qos", 3) not in events


def test_shutdown_requested_before_first_frame(events):
    async def _scenario() -> int:
        shutdown = asyncio.Event()
        shutdown.set()
        frames, bodies = _deliveries(1)
        session = FakeSession(frames, bodies, events=events)
        dispatcher = DeliveryDispatcher(session, FakeLauncher(events=events), ConsumeOptions(command=COMMAND), shutdown=shutdown)  # type: ignore[arg-type]
        return await dispatcher.run(b"orders")

    assert asyncio.run(_scenario()) == 0
    assert [event[0] for event in events] == ["basic.consume"]
