"""
Tests for batch generation ordering, isolation and pacing.
"""

import threading

import pytest

from conftest import FakePredictions, prompt_for
from errors import SafetyRejection
from models import (
    LIFESTYLE_TITLES,
    GenerationTask,
    RefinedPrompt,
    SeedImage,
    TaskStatus,
    expected_titles,
)
from orchestrator import (
    ABORTED_MESSAGE,
    ANCHOR_FAILED_MESSAGE,
    BatchOrchestrator,
    find_anchor,
    summarize,
)

SUBJECTS = ["data:image/png;base64,SUBJECT1"]


def _tasks(titles=None):
    titles = titles or expected_titles()
    return [GenerationTask.from_prompt(RefinedPrompt(t, prompt_for(t))) for t in titles]


def _front(tasks):
    return next(t for t in tasks if "Front" in t.title)


class TestFindAnchor:
    """Tests for anchor selection."""

    def test_front_view_wins(self):
        tasks = _tasks()
        tasks.reverse()
        assert find_anchor(tasks).title == "Studio Prompt - Front View"

    def test_first_task_without_front(self):
        tasks = _tasks(LIFESTYLE_TITLES)
        assert find_anchor(tasks) is tasks[0]


class TestGenerateBatch:
    """Tests for BatchOrchestrator.generate_batch."""

    def test_anchor_runs_first_on_subject_images_only(self, fake_sleep):
        predictions = FakePredictions()
        tasks = _tasks()
        tasks.reverse()  # anchor is not first in the list
        orchestrator = BatchOrchestrator(predictions, sleep=fake_sleep)

        orchestrator.generate_batch(tasks, SUBJECTS)

        anchor = _front(tasks)
        assert predictions.prompts()[0] == anchor.prompt_text
        assert predictions.calls[0]["input"]["input_images"] == SUBJECTS
        for call in predictions.calls[1:]:
            assert call["input"]["input_images"] == SUBJECTS + [anchor.result_image_url]
        assert orchestrator.seed == SeedImage(anchor.result_image_url)
        assert all(t.status == TaskStatus.SUCCEEDED for t in tasks)

    def test_anchor_failure_skips_everything_else(self, fake_sleep):
        tasks = _tasks()
        predictions = FakePredictions(fail_prompts={_front(tasks).prompt_text})

        BatchOrchestrator(predictions, sleep=fake_sleep).generate_batch(tasks, SUBJECTS)

        assert len(predictions.calls) == 1
        anchor = _front(tasks)
        assert anchor.status == TaskStatus.FAILED
        assert anchor.error_message == "Prediction failed: boom"
        others = [t for t in tasks if t is not anchor]
        assert all(t.status == TaskStatus.FAILED for t in others)
        assert all(t.error_message == ANCHOR_FAILED_MESSAGE for t in others)
        assert summarize(tasks).failed == len(tasks)

    def test_one_failure_does_not_stop_the_batch(self, fake_sleep):
        tasks = _tasks()
        failing = tasks[5]
        predictions = FakePredictions(
            fail_prompts={failing.prompt_text},
            fail_with=lambda: SafetyRejection("blocked by the safety filter"),
        )

        BatchOrchestrator(predictions, sleep=fake_sleep).generate_batch(tasks, SUBJECTS)

        assert len(predictions.calls) == 8
        assert failing.status == TaskStatus.FAILED
        assert failing.error_message == "blocked by the safety filter"
        summary = summarize(tasks)
        assert (summary.succeeded, summary.failed) == (7, 1)
        assert summary.partial_failure

    def test_fixed_delay_between_dispatches(self, sleeps, fake_sleep):
        BatchOrchestrator(FakePredictions(), inter_task_delay=1.0, sleep=fake_sleep).generate_batch(_tasks(), SUBJECTS)
        assert sleeps == [1.0] * 7

    def test_existing_seed_skips_anchor(self, sleeps, fake_sleep):
        predictions = FakePredictions()
        tasks = _tasks(LIFESTYLE_TITLES)
        seed = SeedImage("https://img/anchor.png")
        orchestrator = BatchOrchestrator(predictions, sleep=fake_sleep)

        orchestrator.generate_batch(tasks, SUBJECTS, seed=seed)

        assert len(predictions.calls) == 4
        assert all(c["input"]["input_images"] == SUBJECTS + [seed.url] for c in predictions.calls)
        assert orchestrator.seed == seed
        assert sleeps == [1.0] * 3

    def test_unexpected_exception_recorded_on_task(self, fake_sleep):
        class Exploding(FakePredictions):
            def submit_and_await(self, model, input):
                if "Back" in input["prompt"]:
                    raise RuntimeError("socket closed")
                return super().submit_and_await(model, input)

        tasks = _tasks()
        BatchOrchestrator(Exploding(), sleep=fake_sleep).generate_batch(tasks, SUBJECTS)
        back = next(t for t in tasks if "Back" in t.title)
        assert back.status == TaskStatus.FAILED
        assert back.error_message == "socket closed"

    def test_abort_between_tasks(self, fake_sleep):
        abort = threading.Event()
        tasks = _tasks()

        def on_event(event):
            if event["status"] == "completed":
                abort.set()

        predictions = FakePredictions()
        BatchOrchestrator(predictions, sleep=fake_sleep, abort_event=abort, on_event=on_event).generate_batch(
            tasks, SUBJECTS,
        )

        assert len(predictions.calls) == 1
        skipped = [t for t in tasks if t.status == TaskStatus.FAILED]
        assert len(skipped) == 7
        assert all(t.error_message == ABORTED_MESSAGE for t in skipped)

    def test_events_and_history(self, fake_sleep):
        events, archived = [], []
        tasks = _tasks(LIFESTYLE_TITLES)
        BatchOrchestrator(
            FakePredictions(), sleep=fake_sleep, on_event=events.append, on_image=archived.append,
        ).generate_batch(tasks, SUBJECTS)

        first = [e for e in events if e["stage"] == tasks[0].id]
        assert [e["status"] for e in first] == ["started", "completed"]
        assert first[-1]["data"]["status"] == "succeeded"
        assert len(archived) == 4
        assert archived[0] == {
            "prompt": tasks[0].prompt_text,
            "imageUrl": tasks[0].result_image_url,
            "title": tasks[0].title,
            "aspectRatio": "3:4",
            "model": "flux-kontext-apps/multi-image-list",
        }

    def test_history_failure_is_not_fatal(self, fake_sleep):
        def broken(record):
            raise OSError("disk full")

        tasks = _tasks(LIFESTYLE_TITLES)
        BatchOrchestrator(FakePredictions(), sleep=fake_sleep, on_image=broken).generate_batch(tasks, SUBJECTS)
        assert all(t.status == TaskStatus.SUCCEEDED for t in tasks)

    def test_empty_batch(self, fake_sleep):
        predictions = FakePredictions()
        assert BatchOrchestrator(predictions, sleep=fake_sleep).generate_batch([], SUBJECTS) == []
        assert predictions.calls == []


class TestConcurrency:
    """Tests for the bounded-concurrency variant."""

    def test_grouped_generation(self, sleeps, fake_sleep):
        predictions = FakePredictions()
        tasks = _tasks()
        BatchOrchestrator(predictions, concurrency=3, sleep=fake_sleep).generate_batch(tasks, SUBJECTS)

        assert predictions.prompts()[0] == _front(tasks).prompt_text
        assert all(t.status == TaskStatus.SUCCEEDED for t in tasks)
        # anchor, then 7 remaining in groups of 3, 3, 1
        assert sleeps == [1.0] * 3

    @pytest.mark.parametrize("concurrency", [0, 4])
    def test_concurrency_bounds(self, concurrency):
        with pytest.raises(ValueError):
            BatchOrchestrator(FakePredictions(), concurrency=concurrency)
