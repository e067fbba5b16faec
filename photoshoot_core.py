"""Core photoshoot pipeline. Used by both the web app and CLI.

simple mode:   analyze -> seed (QA) image -> QA & refine -> anchor + batch
advanced mode: analyze -> user-supplied QA image -> QA & refine -> anchor + batch

Artifacts from finished stages stay on the pipeline object, so a failed run
can be resumed (retry a task, generate another pack) without asking the text
model again.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import image_codec
import stages
from errors import PhotosetError, RunAborted, ValidationError
from models import (
    DEFAULT_ASPECT_RATIO,
    DEFAULT_PHOTOSHOOT_TYPE,
    LIFESTYLE_TITLES,
    MARKETING_TITLES,
    STUDIO_TITLES,
    AnalysisResult,
    GenerationTask,
    ImageInput,
    PackType,
    PhotoshootType,
    RefinedPrompt,
    SeedImage,
    TaskStatus,
    replace_task,
    select_pack,
    update_task,
    with_aspect_ratio,
)
from orchestrator import ANCHOR_FAILED_MESSAGE, BatchOrchestrator, find_anchor, summarize
from predictions import DEFAULT_IMAGE_MODEL, PredictionClient
from progress import (
    ANCHOR_STEP_ID,
    BATCH_STEP_ID,
    GROUP_STEP_IDS,
    GenerationMode,
    ProgressTracker,
    StepStatus,
    steps_for_batch,
    steps_for_mode,
)
from vision_client import TextModelClient

log = logging.getLogger(__name__)

ASPECT_RATIOS = ["1:1", "3:4", "4:3", "2:3", "3:2", "9:16", "16:9"]

DEFAULT_SETTINGS: Dict[str, Any] = {
    "text_provider": "openai",
    "text_model": None,
    "image_model": DEFAULT_IMAGE_MODEL,
    "aspect_ratio": DEFAULT_ASPECT_RATIO,
    "inter_task_delay": 1.0,
    "batch_concurrency": 1,
    "poll_interval": 3.0,
    "max_poll_attempts": 100,
    "safety_tolerance": 2,
    "include_marketing": False,
}


def pack_size(pack: PackType, include_marketing: bool = False) -> int:
    sizes = {
        PackType.STUDIO: len(STUDIO_TITLES),
        PackType.LIFESTYLE: len(LIFESTYLE_TITLES),
        PackType.MARKETING: len(MARKETING_TITLES),
    }
    if pack == PackType.ALL:
        return len(STUDIO_TITLES) + len(LIFESTYLE_TITLES) + (len(MARKETING_TITLES) if include_marketing else 0)
    return sizes[pack]


class PhotoshootPipeline:
    """Runs one photoshoot with real-time progress callbacks."""

    def __init__(
        self,
        run_id: str,
        subject_images: Sequence[ImageInput],
        background_refs: Optional[Sequence[ImageInput]] = None,
        model_refs: Optional[Sequence[ImageInput]] = None,
        photoshoot_type: PhotoshootType = DEFAULT_PHOTOSHOOT_TYPE,
        settings: Optional[Dict] = None,
        progress: Optional[ProgressTracker] = None,
        progress_cb: Optional[Callable[[Dict], None]] = None,
        history_cb: Optional[Callable[[Dict], None]] = None,
        text_client: Optional[TextModelClient] = None,
        predictions: Optional[PredictionClient] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.run_id = run_id
        self.subject_images = list(subject_images)
        self.background_refs = list(background_refs or [])
        self.model_refs = list(model_refs or [])
        self.photoshoot_type = photoshoot_type
        self.settings = {**DEFAULT_SETTINGS, **(settings or {})}
        self.progress = progress or ProgressTracker()
        self.progress_cb = progress_cb
        self.history_cb = history_cb
        self._sleep = sleep
        self._abort = threading.Event()

        self.image_model: str = self.settings["image_model"]
        self.aspect_ratio: str = self.settings["aspect_ratio"]
        self.include_marketing: bool = bool(self.settings["include_marketing"])

        self.text_client = text_client or TextModelClient(
            provider=self.settings["text_provider"],
            model=self.settings["text_model"],
        )
        self.predictions = predictions or PredictionClient(
            api_token=os.environ.get("REPLICATE_API_TOKEN", ""),
            poll_interval=float(self.settings["poll_interval"]),
            max_attempts=int(self.settings["max_poll_attempts"]),
            sleep=sleep,
        )

        # Artifacts, filled in as stages succeed
        self.analysis: Optional[AnalysisResult] = None
        self.qa_image: Optional[SeedImage] = None
        self.refined: List[RefinedPrompt] = []
        self.tasks: List[GenerationTask] = []
        self.anchor: Optional[SeedImage] = None

        self._anchor_task_id: Optional[str] = None
        self._batch_tasks: List[GenerationTask] = []

        log.info(
            "Pipeline init: run=%s type=%s subjects=%d bg=%d model_refs=%d text=%s image=%s",
            run_id, photoshoot_type.value, len(self.subject_images),
            len(self.background_refs), len(self.model_refs),
            self.text_client.provider, self.image_model,
        )

    # ------------------------------------------------------------------
    # Event helpers
    # ------------------------------------------------------------------

    def _emit(self, stage: str, status: str, message: str, data: Optional[Dict] = None) -> None:
        event: Dict[str, Any] = {
            "stage": stage,
            "status": status,
            "message": message,
            "ts": time.time(),
        }
        if data:
            event["data"] = data
        if self.progress_cb:
            self.progress_cb(event)
        lvl = logging.WARNING if status == "failed" else logging.DEBUG
        log.log(lvl, "[%s] %s — %s", self.run_id, stage, message)

    def abort(self) -> None:
        """Request coarse cancellation; checked between stages and between tasks."""
        self._abort.set()

    def _begin_job(self, pack: Optional[PackType] = None) -> None:
        # A cancel only applies to the job it interrupted
        if self._abort.is_set():
            log.info("Clearing earlier cancel for run %s", self.run_id)
            self._abort.clear()
        if pack == PackType.MARKETING and not self.include_marketing:
            log.info("Marketing pack requested: asking for marketing prompts (run %s)", self.run_id)
            self.include_marketing = True

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def _run_stage(self, step_id: str, label: str, fn: Callable[[], Any]) -> Any:
        if self._abort.is_set():
            exc = RunAborted("Run was cancelled.")
            self.progress.fail(step_id, exc.message)
            raise exc
        self._emit(step_id, "started", f"{label}…")
        try:
            result = fn()
        except PhotosetError as exc:
            self.progress.fail(step_id, exc.message)
            self._emit(step_id, "failed", f"{label} failed: {exc.message}", exc.to_dict())
            raise
        self.progress.advance(step_id, StepStatus.COMPLETED)
        return result

    @property
    def subject_data_urls(self) -> List[str]:
        return [img.to_data_url() for img in self.subject_images]

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def run_analysis(self) -> AnalysisResult:
        if self.analysis is not None:
            log.info("Reusing analysis for run %s", self.run_id)
            self._emit("analyze", "completed", "Reusing previous analysis")
            self.progress.advance("analyze", StepStatus.COMPLETED)
            return self.analysis

        def _do() -> AnalysisResult:
            return stages.analyze(
                self.text_client,
                self.subject_images,
                self.background_refs,
                self.model_refs,
                self.photoshoot_type,
            )

        self.analysis = self._run_stage("analyze", f"Analyzing {self.photoshoot_type.value}", _do)
        self._emit("analyze", "completed", "Analysis ready", {
            "analysis": self.analysis.to_dict(),
            "subjects": self.analysis.subject_sections(),
        })
        return self.analysis

    def run_seed(self) -> ImageInput:
        """Generate the QA/seed image and return it encoded for the QA call."""
        analysis = self._require_analysis()

        def _do() -> ImageInput:
            self.qa_image = stages.generate_seed(
                self.predictions,
                analysis.initial_prompt,
                self.subject_images,
                model=self.image_model,
                aspect_ratio=self.aspect_ratio,
                safety_tolerance=int(self.settings["safety_tolerance"]),
            )
            return image_codec.fetch_image(self.qa_image.url)

        encoded = self._run_stage("qa-generation", "Generating QA reference image", _do)
        self._emit("qa-generation", "completed", "QA reference image ready", {"url": self.qa_image.url})
        return encoded

    def run_refinement(self, qa_image: ImageInput) -> List[RefinedPrompt]:
        analysis = self._require_analysis()

        def _do() -> List[RefinedPrompt]:
            return stages.refine(
                self.text_client,
                self.subject_images,
                qa_image,
                analysis,
                include_marketing=self.include_marketing,
            )

        self.refined = self._run_stage("prompt-refinement", "Refining prompts", _do)
        self._emit(
            "prompt-refinement",
            "completed",
            f"{len(self.refined)} prompts ready",
            {"prompts": [p.to_dict() for p in self.refined]},
        )
        return self.refined

    def _require_analysis(self) -> AnalysisResult:
        if self.analysis is None:
            raise ValidationError("Analysis is missing; analyze the subject first.")
        return self.analysis

    # ------------------------------------------------------------------
    # Tasks & batch
    # ------------------------------------------------------------------

    def build_tasks(self, pack: PackType) -> List[GenerationTask]:
        if not self.refined:
            raise ValidationError("Refined prompts are missing; run QA & refinement first.")
        chosen = select_pack(self.refined, pack)
        if not chosen:
            raise ValidationError(f"No refined prompts match the '{pack.value}' pack.")
        return [GenerationTask.from_prompt(p, self.aspect_ratio) for p in chosen]

    def _orchestrator(self) -> BatchOrchestrator:
        return BatchOrchestrator(
            self.predictions,
            model=self.image_model,
            inter_task_delay=float(self.settings["inter_task_delay"]),
            concurrency=int(self.settings["batch_concurrency"]),
            safety_tolerance=int(self.settings["safety_tolerance"]),
            sleep=self._sleep,
            abort_event=self._abort,
            on_event=self._on_task_event,
            on_image=self.history_cb,
        )

    def _on_task_event(self, event: Dict) -> None:
        if self.progress_cb:
            self.progress_cb(event)
        if event["status"] in ("completed", "failed", "skipped"):
            self._advance_progress(event)

    def _advance_progress(self, event: Dict) -> None:
        if event["stage"] == self._anchor_task_id:
            if event["status"] == "completed":
                self.progress.advance(ANCHOR_STEP_ID, StepStatus.COMPLETED)
            else:
                self.progress.fail(ANCHOR_STEP_ID, event["message"])
            return

        # Close each per-category step once all of its tasks are terminal
        group_ids = {step_id: cat for cat, step_id in GROUP_STEP_IDS.items()}
        while True:
            active = self.progress.active_step_id
            category = group_ids.get(active or "")
            if category is None:
                return
            pending = [
                t for t in self._batch_tasks
                if t.category == category and t.id != self._anchor_task_id and not t.status.terminal
            ]
            if pending:
                return
            self.progress.advance(active, StepStatus.COMPLETED)

    def run_batch(self, tasks: List[GenerationTask]) -> List[GenerationTask]:
        """Generate ``tasks``; reuses the run's anchor when one already exists."""
        self._batch_tasks = tasks
        self._anchor_task_id = None if self.anchor else find_anchor(tasks).id
        self.tasks.extend(tasks)

        orchestrator = self._orchestrator()
        orchestrator.generate_batch(tasks, self.subject_data_urls, seed=self.anchor)
        if orchestrator.seed is not None:
            self.anchor = orchestrator.seed
        return tasks

    def _finish(self, tasks: List[GenerationTask], started: float) -> Dict:
        summary = summarize(tasks)
        duration = time.time() - started
        if self.anchor is None:
            status = "failed"
            self.progress.fail(self.progress.active_step_id or BATCH_STEP_ID, ANCHOR_FAILED_MESSAGE)
            self._emit("pipeline", "failed", "Anchor image failed; no further images were generated")
        else:
            self.progress.complete()
            status = "partial" if summary.failed else "complete"
            self._emit(
                "pipeline",
                "completed",
                f"Done in {duration:.0f}s — {summary.succeeded}/{summary.total} images generated",
                {"duration": duration, "succeeded": summary.succeeded, "failed": summary.failed},
            )
        log.info(
            "Pipeline finished: run=%s status=%s %d/%d images  %.1fs",
            self.run_id, status, summary.succeeded, summary.total, duration,
        )
        result = self.snapshot()
        result.update({"status": status, "duration": duration})
        return result

    # ------------------------------------------------------------------
    # Full runs
    # ------------------------------------------------------------------

    def run(self, pack: PackType = PackType.ALL) -> Dict:
        """Simple mode: every stage runs automatically."""
        started = time.time()
        log.info("Pipeline start: run=%s pack=%s", self.run_id, pack.value)
        self._begin_job(pack)
        self.progress.start(steps_for_mode(
            GenerationMode.SIMPLE, pack,
            include_marketing=self.include_marketing,
            photoshoot_type=self.photoshoot_type,
        ))
        self.run_analysis()
        qa_image = self.run_seed()
        self.run_refinement(qa_image)
        tasks = self.build_tasks(pack)
        self.run_batch(tasks)
        return self._finish(tasks, started)

    def run_advanced(self, qa_image: ImageInput, pack: PackType = PackType.ALL) -> Dict:
        """Advanced mode: the caller supplies their own QA image instead of the seed stage."""
        started = time.time()
        self._begin_job(pack)
        self.progress.start(steps_for_mode(
            GenerationMode.ADVANCED, pack,
            image_count=pack_size(pack, self.include_marketing),
            photoshoot_type=self.photoshoot_type,
        ))
        self.run_analysis()
        self.progress.advance("manual-qa", StepStatus.COMPLETED)
        self.run_refinement(qa_image)
        tasks = self.build_tasks(pack)
        self.run_batch(tasks)
        return self._finish(tasks, started)

    def generate_pack(self, pack: PackType) -> Dict:
        """Generate another pack from stored prompts, reusing the anchor if any."""
        started = time.time()
        tasks = self.build_tasks(pack)
        self._begin_job()
        self.progress.start(steps_for_batch(len(tasks)))
        self.run_batch(tasks)
        return self._finish(tasks, started)

    def retry_task(self, task_id: str) -> GenerationTask:
        """Regenerate one failed task; returns the task that supersedes it."""
        old = self._find_task(task_id)
        if old.status != TaskStatus.FAILED:
            raise ValidationError("Only failed images can be retried.")

        self._begin_job()
        fresh = old.spawn_retry()
        self.tasks = replace_task(self.tasks, task_id, fresh)
        self.progress.start(steps_for_batch(1))
        self._emit(fresh.id, "started", f"Retrying {fresh.title}…")

        orchestrator = self._orchestrator()
        if self.anchor is not None:
            conditioning = self.subject_data_urls + [self.anchor.url]
            orchestrator.generate_one(fresh, conditioning)
        else:
            # Nothing to condition on yet: this task becomes the anchor
            orchestrator.generate_batch([fresh], self.subject_data_urls)
            self.anchor = orchestrator.seed

        if fresh.status == TaskStatus.SUCCEEDED:
            self.progress.complete()
        else:
            self.progress.fail(BATCH_STEP_ID, fresh.error_message or "Retry failed")
        return fresh

    def set_aspect_ratio(self, task_id: str, aspect_ratio: str) -> GenerationTask:
        if aspect_ratio not in ASPECT_RATIOS:
            raise ValidationError(f"aspect_ratio must be one of {ASPECT_RATIOS}")
        task = self._find_task(task_id)
        if task.status == TaskStatus.GENERATING:
            raise ValidationError("Cannot change the aspect ratio while the image is generating.")
        self.tasks = update_task(self.tasks, task_id, lambda t: with_aspect_ratio(t, aspect_ratio))
        return self._find_task(task_id)

    def _find_task(self, task_id: str) -> GenerationTask:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise ValidationError(f"Unknown task: {task_id}")

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict:
        return {
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "qa_image": self.qa_image.url if self.qa_image else None,
            "prompts": [p.to_dict() for p in self.refined],
            "tasks": [t.to_dict() for t in self.tasks],
            "anchor": self.anchor.url if self.anchor else None,
        }

    def restore(self, record: Dict) -> None:
        """Load artifacts saved by ``snapshot`` (e.g. from the runs table)."""
        if record.get("analysis"):
            self.analysis = AnalysisResult.from_dict(record["analysis"])
        if record.get("qa_image"):
            self.qa_image = SeedImage(url=record["qa_image"])
        self.refined = [RefinedPrompt.from_dict(p) for p in record.get("prompts") or []]
        self.tasks = [GenerationTask.from_dict(t) for t in record.get("tasks") or []]
        if record.get("anchor"):
            self.anchor = SeedImage(url=record["anchor"])
