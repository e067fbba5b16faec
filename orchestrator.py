"""Batch image generation: one anchor image first, then every other task conditioned on it.

Ordering rules:
  * the anchor (the "front" task, else the first) runs alone and must finish
    before any other task is dispatched;
  * if the anchor fails, nothing else is attempted;
  * remaining tasks run one at a time with a fixed delay between remote calls
    (or in small fixed-size groups when ``concurrency`` > 1), and each task
    succeeds or fails on its own.

Tasks are mutated in place and the same list is returned.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from errors import PhotosetError
from models import GenerationTask, SeedImage, TaskStatus, is_front_title
from predictions import DEFAULT_IMAGE_MODEL, PredictionClient, build_prediction_input

log = logging.getLogger(__name__)

DEFAULT_INTER_TASK_DELAY_S = 1.0
MAX_CONCURRENCY = 3

ANCHOR_FAILED_MESSAGE = "Skipped: the anchor image failed, so this image was not generated."
ABORTED_MESSAGE = "Run was cancelled before this image was generated."


@dataclass
class BatchSummary:
    total: int
    succeeded: int
    failed: int

    @property
    def partial_failure(self) -> bool:
        return 0 < self.failed < self.total


def summarize(tasks: Sequence[GenerationTask]) -> BatchSummary:
    return BatchSummary(
        total=len(tasks),
        succeeded=sum(1 for t in tasks if t.status == TaskStatus.SUCCEEDED),
        failed=sum(1 for t in tasks if t.status == TaskStatus.FAILED),
    )


def find_anchor(tasks: Sequence[GenerationTask]) -> GenerationTask:
    for task in tasks:
        if is_front_title(task.title):
            return task
    return tasks[0]


class BatchOrchestrator:
    """Owns one batch's task list and drives the prediction client over it."""

    def __init__(
        self,
        predictions: PredictionClient,
        model: str = DEFAULT_IMAGE_MODEL,
        inter_task_delay: float = DEFAULT_INTER_TASK_DELAY_S,
        concurrency: int = 1,
        safety_tolerance: int = 2,
        sleep: Callable[[float], None] = time.sleep,
        abort_event: Optional[threading.Event] = None,
        on_event: Optional[Callable[[Dict], None]] = None,
        on_image: Optional[Callable[[Dict], None]] = None,
    ) -> None:
        if not 1 <= concurrency <= MAX_CONCURRENCY:
            raise ValueError(f"concurrency must be between 1 and {MAX_CONCURRENCY}")
        self.predictions = predictions
        self.model = model
        self.inter_task_delay = inter_task_delay
        self.concurrency = concurrency
        self.safety_tolerance = safety_tolerance
        self._sleep = sleep
        self._abort = abort_event or threading.Event()
        self._on_event = on_event
        self._on_image = on_image
        self.seed: Optional[SeedImage] = None

    # ------------------------------------------------------------------
    # Event helpers
    # ------------------------------------------------------------------

    def _emit(self, task: GenerationTask, status: str, message: str) -> None:
        event: Dict[str, Any] = {
            "stage": task.id,
            "status": status,
            "message": message,
            "ts": time.time(),
            "data": task.to_dict(),
        }
        if self._on_event:
            self._on_event(event)
        lvl = logging.WARNING if status == "failed" else logging.DEBUG
        log.log(lvl, "[%s] %s — %s", task.title, status, message)

    def _archive(self, task: GenerationTask) -> None:
        if not self._on_image:
            return
        record = {
            "prompt": task.prompt_text,
            "imageUrl": task.result_image_url,
            "title": task.title,
            "aspectRatio": task.aspect_ratio,
            "model": self.model,
        }
        try:
            self._on_image(record)
        except Exception as exc:
            log.warning("History save failed for %s: %s", task.title, exc)

    # ------------------------------------------------------------------
    # Single task
    # ------------------------------------------------------------------

    def generate_one(self, task: GenerationTask, input_images: Sequence[str]) -> GenerationTask:
        """Run one task to a terminal state. Errors are recorded on the task, never raised."""
        task.mark_generating()
        self._emit(task, "started", f"Generating {task.title}…")
        payload = build_prediction_input(
            self.model, task.prompt_text, task.aspect_ratio, list(input_images), self.safety_tolerance,
        )
        try:
            url = self.predictions.submit_and_await(self.model, payload)
        except PhotosetError as exc:
            task.mark_failed(exc.message)
            self._emit(task, "failed", exc.message)
            return task
        except Exception as exc:
            log.exception("Unexpected error generating %s", task.title)
            task.mark_failed(str(exc) or "Image generation failed.")
            self._emit(task, "failed", task.error_message or "")
            return task

        task.mark_succeeded(url)
        self._emit(task, "completed", f"{task.title} ready")
        self._archive(task)
        return task

    def _skip(self, tasks: Sequence[GenerationTask], message: str) -> None:
        for task in tasks:
            if task.status == TaskStatus.PENDING:
                task.mark_failed(message)
                self._emit(task, "skipped", message)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def generate_batch(
        self,
        tasks: List[GenerationTask],
        subject_images: Sequence[str],
        seed: Optional[SeedImage] = None,
    ) -> List[GenerationTask]:
        """Generate every task; returns ``tasks`` with each one terminal.

        ``subject_images`` are data URLs (or https URLs) of the real subject.
        When ``seed`` is given (an anchor from an earlier batch of the same
        run) every task fans out from it and no new anchor is made.
        """
        if not tasks:
            return tasks
        if not subject_images:
            raise ValueError("subject_images must not be empty")

        t0 = time.time()
        remaining = list(tasks)
        dispatched = 0

        if seed is None:
            anchor = find_anchor(tasks)
            remaining.remove(anchor)
            if self._abort.is_set():
                self._skip(tasks, ABORTED_MESSAGE)
                return tasks
            self.generate_one(anchor, subject_images)
            dispatched += 1
            if anchor.status != TaskStatus.SUCCEEDED:
                log.warning("Anchor task %r failed; %d task(s) not attempted", anchor.title, len(remaining))
                self._skip(remaining, ANCHOR_FAILED_MESSAGE)
                return tasks
            seed = SeedImage(url=anchor.result_image_url or "")
        self.seed = seed

        conditioning = list(subject_images) + [seed.url]
        if self.concurrency == 1:
            for task in remaining:
                if self._abort.is_set():
                    self._skip(remaining, ABORTED_MESSAGE)
                    break
                if dispatched:
                    self._sleep(self.inter_task_delay)
                self.generate_one(task, conditioning)
                dispatched += 1
        else:
            self._generate_grouped(remaining, conditioning, delay_first=bool(dispatched))

        s = summarize(tasks)
        log.info(
            "Batch done: %d/%d succeeded, %d failed  %.1fs",
            s.succeeded, s.total, s.failed, time.time() - t0,
        )
        return tasks

    def _generate_grouped(
        self,
        tasks: List[GenerationTask],
        conditioning: List[str],
        delay_first: bool,
    ) -> None:
        groups = [tasks[i : i + self.concurrency] for i in range(0, len(tasks), self.concurrency)]
        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            for i, group in enumerate(groups):
                if self._abort.is_set():
                    self._skip(tasks, ABORTED_MESSAGE)
                    return
                if i or delay_first:
                    self._sleep(self.inter_task_delay)
                futures = [pool.submit(self.generate_one, task, conditioning) for task in group]
                for f in futures:
                    f.result()
