"""Step-based progress tracking for a photoshoot run.

A tracker holds one live ProgressState. Every change, and a once-a-second
tick while a run is active, is broadcast to subscribers as a full snapshot,
so a late subscriber never needs history.
"""

from __future__ import annotations

import copy
import logging
import math
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from models import PackType, PhotoshootType, TaskCategory

log = logging.getLogger(__name__)

TICK_INTERVAL_S = 1.0
SECONDS_PER_IMAGE = 15


class GenerationMode(str, Enum):
    SIMPLE = "simple"
    ADVANCED = "advanced"


class StepStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.ERROR)


@dataclass
class Step:
    id: str
    label: str
    estimated_duration: float
    status: StepStatus = StepStatus.PENDING
    error: Optional[str] = None


@dataclass
class ProgressState:
    steps: List[Step]
    start_time: float
    elapsed_time: float = 0.0
    current_step_id: Optional[str] = None
    is_complete: bool = False
    has_error: bool = False

    def step(self, step_id: str) -> Optional[Step]:
        for s in self.steps:
            if s.id == step_id:
                return s
        return None

    def to_dict(self) -> Dict:
        d = asdict(self)
        for s in d["steps"]:
            s["status"] = s["status"].value if isinstance(s["status"], StepStatus) else s["status"]
        return d


# ---------------------------------------------------------------------------
# Step templates
# ---------------------------------------------------------------------------

# Step that covers the non-anchor tasks of each category
GROUP_STEP_IDS = {
    TaskCategory.STUDIO: "studio-additional",
    TaskCategory.LIFESTYLE: "lifestyle-generation",
    TaskCategory.MARKETING: "marketing-generation",
}
ANCHOR_STEP_ID = "anchor-image"
BATCH_STEP_ID = "image-generation"
FINALIZE_STEP_ID = "finalize"


def _step(step_id: str, label: str, seconds: float) -> Step:
    return Step(id=step_id, label=label, estimated_duration=seconds)


def steps_for_mode(
    mode: GenerationMode,
    pack: PackType,
    image_count: int = 4,
    include_marketing: bool = False,
    photoshoot_type: PhotoshootType = PhotoshootType.GARMENT,
) -> List[Step]:
    item = photoshoot_type.value
    steps: List[Step] = [_step("analyze", f"Analyzing {item} details", 8)]

    if mode == GenerationMode.SIMPLE:
        steps.append(_step("qa-generation", "Generating QA reference image", 12))
        steps.append(_step("prompt-refinement", "Creating optimized prompts", 6))

        anchor_label = {
            PackType.LIFESTYLE: "Generating first lifestyle scene",
            PackType.MARKETING: "Generating first marketing shot",
        }.get(pack, "Generating front view")
        steps.append(_step(ANCHOR_STEP_ID, anchor_label, SECONDS_PER_IMAGE))

        if pack in (PackType.STUDIO, PackType.ALL):
            steps.append(_step(
                GROUP_STEP_IDS[TaskCategory.STUDIO],
                "Generating studio angles (back, side, detail)",
                3 * SECONDS_PER_IMAGE,
            ))
        if pack == PackType.ALL:
            steps.append(_step(
                GROUP_STEP_IDS[TaskCategory.LIFESTYLE], "Generating lifestyle scenes", 4 * SECONDS_PER_IMAGE,
            ))
        elif pack == PackType.LIFESTYLE:
            steps.append(_step(
                GROUP_STEP_IDS[TaskCategory.LIFESTYLE], "Generating lifestyle images", 3 * SECONDS_PER_IMAGE,
            ))
        if pack == PackType.MARKETING or (pack == PackType.ALL and include_marketing):
            n = 3 if pack == PackType.MARKETING else 4
            steps.append(_step(
                GROUP_STEP_IDS[TaskCategory.MARKETING], "Generating marketing shots", n * SECONDS_PER_IMAGE,
            ))
    else:
        steps.append(_step("manual-qa", "Waiting for QA image upload", 0))
        steps.append(_step("prompt-refinement", "Performing QA and refining prompts", 10))
        steps.append(_step(BATCH_STEP_ID, f"Generating {image_count} images", image_count * SECONDS_PER_IMAGE))

    steps.append(_step(FINALIZE_STEP_ID, "Finalizing and saving results", 3))
    return steps


def steps_for_batch(image_count: int) -> List[Step]:
    """Template for follow-up packs and single-task retries."""
    label = "Generating 1 image" if image_count == 1 else f"Generating {image_count} images"
    return [
        _step(BATCH_STEP_ID, label, image_count * SECONDS_PER_IMAGE),
        _step(FINALIZE_STEP_ID, "Finalizing and saving results", 3),
    ]


def estimated_total_seconds(steps: List[Step]) -> float:
    return sum(s.estimated_duration for s in steps)


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{math.ceil(seconds)}s"
    minutes = int(seconds // 60)
    rem = math.ceil(seconds % 60)
    if minutes < 60:
        return f"{minutes}m {rem}s"
    return f"{minutes // 60}h {minutes % 60}m"


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

# Receives None after reset()
Subscriber = Callable[[Optional[ProgressState]], None]


class ProgressTracker:
    """Publish/subscribe holder for one run's ProgressState."""

    def __init__(
        self,
        tick_interval: Optional[float] = TICK_INTERVAL_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.tick_interval = tick_interval
        self._clock = clock
        self._lock = threading.RLock()
        self._subscribers: List[Subscriber] = []
        self._state: Optional[ProgressState] = None
        self._timer_stop: Optional[threading.Event] = None

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    @property
    def state(self) -> Optional[ProgressState]:
        with self._lock:
            return copy.deepcopy(self._state)

    def _notify(self) -> None:
        with self._lock:
            if self._state is None:
                return
            snapshot = copy.deepcopy(self._state)
            subscribers = list(self._subscribers)
        self._broadcast(subscribers, snapshot)

    @staticmethod
    def _broadcast(subscribers: List[Subscriber], snapshot: Optional[ProgressState]) -> None:
        for cb in subscribers:
            try:
                cb(snapshot)
            except Exception:
                log.exception("Progress subscriber raised")

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def _start_timer(self) -> None:
        if not self.tick_interval:
            return
        stop = threading.Event()
        self._timer_stop = stop
        threading.Thread(target=self._tick, args=(stop,), daemon=True).start()

    def _tick(self, stop: threading.Event) -> None:
        while not stop.wait(self.tick_interval):
            with self._lock:
                if self._state is None or stop.is_set():
                    return
                self._state.elapsed_time = self._clock() - self._state.start_time
            self._notify()

    def _stop_timer(self) -> None:
        if self._timer_stop is not None:
            self._timer_stop.set()
            self._timer_stop = None

    @property
    def running(self) -> bool:
        return self._timer_stop is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, steps: List[Step]) -> None:
        with self._lock:
            self._stop_timer()
            steps = [copy.copy(s) for s in steps]
            for s in steps:
                s.status = StepStatus.PENDING
                s.error = None
            self._state = ProgressState(steps=steps, start_time=self._clock())
            if steps:
                steps[0].status = StepStatus.ACTIVE
                self._state.current_step_id = steps[0].id
            self._start_timer()
        self._notify()

    def advance(self, step_id: str, status: StepStatus, error: Optional[str] = None) -> None:
        status = StepStatus(status)
        with self._lock:
            state = self._state
            if state is None or state.is_complete or state.has_error:
                log.debug("Ignoring %s -> %s: run not in progress", step_id, status.value)
                return
            idx = next((i for i, s in enumerate(state.steps) if s.id == step_id), -1)
            if idx == -1:
                log.debug("Ignoring unknown progress step %s", step_id)
                return
            step = state.steps[idx]
            if step.status.terminal or status == StepStatus.PENDING:
                log.debug("Ignoring %s -> %s: step is %s", step_id, status.value, step.status.value)
                return
            if status == StepStatus.ACTIVE and step.status == StepStatus.ACTIVE:
                return
            # Steps complete in order; complete() is the only way to close pending ones
            if status == StepStatus.COMPLETED and step.status != StepStatus.ACTIVE:
                log.debug("Ignoring %s -> completed: step is not active", step_id)
                return

            step.status = status
            state.elapsed_time = self._clock() - state.start_time
            if status == StepStatus.ACTIVE:
                state.current_step_id = step_id
            elif status == StepStatus.COMPLETED:
                if idx + 1 < len(state.steps):
                    nxt = state.steps[idx + 1]
                    if nxt.status == StepStatus.PENDING:
                        nxt.status = StepStatus.ACTIVE
                    state.current_step_id = nxt.id
                else:
                    state.is_complete = True
                    state.current_step_id = None
                    self._stop_timer()
            else:
                step.error = error or "Step failed"
                state.has_error = True
                self._stop_timer()
        self._notify()

    def fail(self, step_id: str, error: str) -> None:
        self.advance(step_id, StepStatus.ERROR, error)

    def complete(self) -> None:
        with self._lock:
            state = self._state
            if state is None or state.has_error:
                return
            for s in state.steps:
                if s.status in (StepStatus.PENDING, StepStatus.ACTIVE):
                    s.status = StepStatus.COMPLETED
            state.is_complete = True
            state.current_step_id = None
            state.elapsed_time = self._clock() - state.start_time
            self._stop_timer()
        self._notify()

    def reset(self) -> None:
        """Drop the current run and tell subscribers there is nothing to show."""
        with self._lock:
            self._stop_timer()
            self._state = None
            subscribers = list(self._subscribers)
        self._broadcast(subscribers, None)

    @property
    def active_step_id(self) -> Optional[str]:
        with self._lock:
            if self._state is None:
                return None
            for s in self._state.steps:
                if s.status == StepStatus.ACTIVE:
                    return s.id
            return None
