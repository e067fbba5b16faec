"""
Tests for step templates and the progress tracker.
"""

import threading

import pytest

from models import PackType
from progress import (
    GenerationMode,
    ProgressTracker,
    StepStatus,
    estimated_total_seconds,
    format_duration,
    steps_for_batch,
    steps_for_mode,
)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _ids(steps):
    return [s.id for s in steps]


def _statuses(state):
    return [s.status for s in state.steps]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(clock):
    return ProgressTracker(tick_interval=None, clock=clock)


class TestTemplates:
    """Tests for per-mode step templates."""

    def test_simple_all(self):
        assert _ids(steps_for_mode(GenerationMode.SIMPLE, PackType.ALL)) == [
            "analyze", "qa-generation", "prompt-refinement", "anchor-image",
            "studio-additional", "lifestyle-generation", "finalize",
        ]

    def test_simple_all_with_marketing(self):
        ids = _ids(steps_for_mode(GenerationMode.SIMPLE, PackType.ALL, include_marketing=True))
        assert ids[-2:] == ["marketing-generation", "finalize"]

    def test_simple_lifestyle(self):
        steps = steps_for_mode(GenerationMode.SIMPLE, PackType.LIFESTYLE)
        assert _ids(steps)[3:] == ["anchor-image", "lifestyle-generation", "finalize"]
        assert steps[3].label == "Generating first lifestyle scene"

    def test_advanced(self):
        steps = steps_for_mode(GenerationMode.ADVANCED, PackType.ALL, image_count=6)
        assert _ids(steps) == ["analyze", "manual-qa", "prompt-refinement", "image-generation", "finalize"]
        assert steps[3].label == "Generating 6 images"

    def test_batch_template(self):
        assert _ids(steps_for_batch(1)) == ["image-generation", "finalize"]
        assert steps_for_batch(1)[0].label == "Generating 1 image"

    def test_estimated_total(self):
        steps = steps_for_batch(2)
        assert estimated_total_seconds(steps) == sum(s.estimated_duration for s in steps)

    @pytest.mark.parametrize("seconds,expected", [
        (0, "0s"),
        (45, "45s"),
        (44.2, "45s"),
        (90, "1m 30s"),
        (3700, "1h 1m"),
    ])
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected


class TestTracker:
    """Tests for ProgressTracker state transitions."""

    def test_start_activates_first_step(self, tracker):
        tracker.start(steps_for_batch(3))
        state = tracker.state
        assert _statuses(state) == [StepStatus.ACTIVE, StepStatus.PENDING]
        assert state.current_step_id == "image-generation"
        assert tracker.active_step_id == "image-generation"

    def test_completing_steps_advances_and_finishes(self, tracker, clock):
        tracker.start(steps_for_batch(3))
        clock.now += 12
        tracker.advance("image-generation", StepStatus.COMPLETED)
        state = tracker.state
        assert _statuses(state) == [StepStatus.COMPLETED, StepStatus.ACTIVE]
        assert state.elapsed_time == 12

        tracker.advance("finalize", StepStatus.COMPLETED)
        state = tracker.state
        assert state.is_complete
        assert state.current_step_id is None

    def test_no_regression(self, tracker):
        tracker.start(steps_for_batch(3))
        tracker.advance("image-generation", StepStatus.COMPLETED)
        tracker.advance("image-generation", StepStatus.ACTIVE)
        tracker.advance("finalize", StepStatus.PENDING)
        assert _statuses(tracker.state) == [StepStatus.COMPLETED, StepStatus.ACTIVE]

    def test_pending_step_cannot_jump_to_completed(self, tracker):
        tracker.start(steps_for_mode(GenerationMode.SIMPLE, PackType.STUDIO))
        tracker.advance("prompt-refinement", StepStatus.COMPLETED)
        state = tracker.state
        assert state.step("prompt-refinement").status == StepStatus.PENDING
        assert state.current_step_id == "analyze"
        assert sum(1 for s in state.steps if s.status == StepStatus.ACTIVE) == 1

    def test_unknown_step_ignored(self, tracker):
        tracker.start(steps_for_batch(3))
        tracker.advance("nope", StepStatus.COMPLETED)
        assert _statuses(tracker.state) == [StepStatus.ACTIVE, StepStatus.PENDING]

    def test_error_freezes_the_run(self, tracker):
        tracker.start(steps_for_mode(GenerationMode.ADVANCED, PackType.ALL))
        tracker.fail("analyze", "quota exceeded")
        state = tracker.state
        assert state.has_error
        assert state.steps[0].status == StepStatus.ERROR
        assert state.steps[0].error == "quota exceeded"

        tracker.advance("analyze", StepStatus.COMPLETED)
        tracker.advance("manual-qa", StepStatus.COMPLETED)
        assert tracker.state.steps[1].status == StepStatus.PENDING

    def test_complete_marks_everything(self, tracker):
        tracker.start(steps_for_mode(GenerationMode.SIMPLE, PackType.STUDIO))
        tracker.complete()
        state = tracker.state
        assert state.is_complete
        assert all(s.status == StepStatus.COMPLETED for s in state.steps)

    def test_reset(self, tracker):
        tracker.start(steps_for_batch(1))
        tracker.reset()
        assert tracker.state is None
        assert tracker.active_step_id is None

    def test_to_dict_is_plain(self, tracker):
        tracker.start(steps_for_batch(1))
        d = tracker.state.to_dict()
        assert d["steps"][0]["status"] == "active"
        assert d["current_step_id"] == "image-generation"


class TestSubscribers:
    """Tests for snapshot broadcasting."""

    def test_subscribers_receive_snapshots(self, tracker):
        received = []
        tracker.subscribe(received.append)
        tracker.start(steps_for_batch(1))
        tracker.advance("image-generation", StepStatus.COMPLETED)
        assert len(received) == 2
        assert received[0].steps[0].status == StepStatus.ACTIVE
        assert received[1].steps[0].status == StepStatus.COMPLETED

    def test_snapshots_are_copies(self, tracker):
        received = []
        tracker.subscribe(received.append)
        tracker.start(steps_for_batch(1))
        received[0].steps[0].status = StepStatus.ERROR
        assert tracker.state.steps[0].status == StepStatus.ACTIVE

    def test_unsubscribe(self, tracker):
        received = []
        unsubscribe = tracker.subscribe(received.append)
        tracker.start(steps_for_batch(1))
        unsubscribe()
        tracker.advance("image-generation", StepStatus.COMPLETED)
        assert len(received) == 1

    def test_reset_notifies_subscribers(self, tracker):
        received = []
        tracker.subscribe(received.append)
        tracker.start(steps_for_batch(1))
        tracker.reset()
        assert len(received) == 2
        assert received[-1] is None

    def test_broken_subscriber_does_not_block_others(self, tracker):
        received = []

        def broken(state):
            raise RuntimeError("listener bug")

        tracker.subscribe(broken)
        tracker.subscribe(received.append)
        tracker.start(steps_for_batch(1))
        assert len(received) == 1

    def test_timer_ticks_while_running(self):
        ticks = threading.Event()
        seen = []

        def on_state(state):
            seen.append(state)
            if len(seen) >= 3:
                ticks.set()

        tracker = ProgressTracker(tick_interval=0.01)
        tracker.subscribe(on_state)
        tracker.start(steps_for_batch(1))
        try:
            assert ticks.wait(timeout=2.0)
            assert tracker.running
        finally:
            tracker.complete()
        assert not tracker.running
