"""Data model for a photoshoot run: inputs, analysis, prompts, tasks."""

from __future__ import annotations

import re
import uuid
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class PhotoshootType(str, Enum):
    GARMENT = "garment"
    PRODUCT = "product"


class PackType(str, Enum):
    STUDIO = "studio"
    LIFESTYLE = "lifestyle"
    MARKETING = "marketing"
    ALL = "all"


class TaskCategory(str, Enum):
    STUDIO = "studio"
    LIFESTYLE = "lifestyle"
    MARKETING = "marketing"
    OTHER = "other"


class TaskStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED)


# Allowed forward moves. Nothing ever returns to PENDING.
_TASK_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.GENERATING, TaskStatus.FAILED},
    TaskStatus.GENERATING: {TaskStatus.SUCCEEDED, TaskStatus.FAILED},
    TaskStatus.SUCCEEDED: set(),
    TaskStatus.FAILED: set(),
}

DEFAULT_PHOTOSHOOT_TYPE = PhotoshootType.GARMENT
DEFAULT_ASPECT_RATIO = "3:4"

STUDIO_TITLES = [
    "Studio Prompt - Front View",
    "Studio Prompt - Back View",
    "Studio Prompt - Side View",
    "Studio Prompt - Close-up Detail",
]
LIFESTYLE_TITLES = [
    "Lifestyle Prompt - Scene 1",
    "Lifestyle Prompt - Scene 2",
    "Lifestyle Prompt - Scene 3",
    "Lifestyle Prompt - Scene 4",
]
MARKETING_TITLES = [
    "Marketing Prompt - Hero Shot",
    "Marketing Prompt - Dramatic Angle",
    "Marketing Prompt - Creative Composition",
    "Marketing Prompt - Social Feed",
]

# Heading the text model is told to use when two distinct subjects are found
SUBJECT_HEADING_RE = re.compile(r"^\*\*Item (\d+)\b[^\n]*:\*\*\s*$", re.MULTILINE)


def is_valid_photoshoot_type(value: str) -> bool:
    return value in {t.value for t in PhotoshootType}


def expected_titles(include_marketing: bool = False) -> List[str]:
    titles = STUDIO_TITLES + LIFESTYLE_TITLES
    if include_marketing:
        titles = titles + MARKETING_TITLES
    return titles


# ---------------------------------------------------------------------------
# Title classification
# ---------------------------------------------------------------------------

def classify_title(title: str) -> TaskCategory:
    """Infer a task category from its free-text title (substring match)."""
    lowered = (title or "").lower()
    for category in (TaskCategory.STUDIO, TaskCategory.LIFESTYLE, TaskCategory.MARKETING):
        if category.value in lowered:
            return category
    return TaskCategory.OTHER


def is_front_title(title: str) -> bool:
    return "front" in (title or "").lower()


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ImageInput:
    base64: str
    mime_type: str

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"

    def to_dict(self) -> Dict[str, str]:
        return {"base64": self.base64, "mimeType": self.mime_type}


@dataclass(frozen=True)
class AnalysisResult:
    item_analysis: str
    qa_checklist: str
    initial_prompt: str
    photoshoot_type: PhotoshootType = DEFAULT_PHOTOSHOOT_TYPE

    @property
    def is_multi_subject(self) -> bool:
        return len(SUBJECT_HEADING_RE.findall(self.item_analysis)) >= 2

    def subject_sections(self) -> List[str]:
        """Split a two-subject analysis on its ``**Item N (...):**`` headings."""
        matches = list(SUBJECT_HEADING_RE.finditer(self.item_analysis))
        if len(matches) < 2:
            return [self.item_analysis]
        sections = []
        for i, m in enumerate(matches):
            end = matches[i + 1].start() if i + 1 < len(matches) else len(self.item_analysis)
            sections.append(self.item_analysis[m.start():end].strip())
        return sections

    def to_dict(self) -> Dict[str, str]:
        return {
            "itemAnalysis": self.item_analysis,
            "qaChecklist": self.qa_checklist,
            "initialPrompt": self.initial_prompt,
            "photoshootType": self.photoshoot_type.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisResult":
        return cls(
            item_analysis=data["itemAnalysis"],
            qa_checklist=data["qaChecklist"],
            initial_prompt=data["initialPrompt"],
            photoshoot_type=PhotoshootType(data.get("photoshootType", DEFAULT_PHOTOSHOOT_TYPE.value)),
        )


@dataclass(frozen=True)
class RefinedPrompt:
    title: str
    prompt_text: str

    @property
    def category(self) -> TaskCategory:
        return classify_title(self.title)

    def to_dict(self) -> Dict[str, str]:
        return {"title": self.title, "prompt": self.prompt_text}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RefinedPrompt":
        return cls(title=data["title"], prompt_text=data["prompt"])


@dataclass(frozen=True)
class SeedImage:
    url: str


@dataclass
class GenerationTask:
    """Mutable unit of work tracked by the batch orchestrator."""

    title: str
    prompt_text: str
    aspect_ratio: str = DEFAULT_ASPECT_RATIO
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    category: TaskCategory = TaskCategory.OTHER
    status: TaskStatus = TaskStatus.PENDING
    result_image_url: Optional[str] = None
    error_message: Optional[str] = None
    retry_of: Optional[str] = None

    @classmethod
    def from_prompt(cls, prompt: RefinedPrompt, aspect_ratio: str = DEFAULT_ASPECT_RATIO) -> "GenerationTask":
        return cls(
            title=prompt.title,
            prompt_text=prompt.prompt_text,
            aspect_ratio=aspect_ratio,
            category=classify_title(prompt.title),
        )

    def _move(self, status: TaskStatus) -> None:
        if status not in _TASK_TRANSITIONS[self.status]:
            raise ValueError(
                f"Task {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status

    def mark_generating(self) -> None:
        self._move(TaskStatus.GENERATING)

    def mark_succeeded(self, url: str) -> None:
        self._move(TaskStatus.SUCCEEDED)
        self.result_image_url = url
        self.error_message = None

    def mark_failed(self, message: str) -> None:
        self._move(TaskStatus.FAILED)
        self.error_message = message or "Image generation failed."

    def spawn_retry(self) -> "GenerationTask":
        """Return a fresh pending task that supersedes this one."""
        return GenerationTask(
            title=self.title,
            prompt_text=self.prompt_text,
            aspect_ratio=self.aspect_ratio,
            category=self.category,
            retry_of=self.id,
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["category"] = self.category.value
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerationTask":
        return cls(
            id=data["id"],
            title=data["title"],
            prompt_text=data["prompt_text"],
            aspect_ratio=data.get("aspect_ratio", DEFAULT_ASPECT_RATIO),
            category=TaskCategory(data.get("category", classify_title(data["title"]).value)),
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            result_image_url=data.get("result_image_url"),
            error_message=data.get("error_message"),
            retry_of=data.get("retry_of"),
        )


# ---------------------------------------------------------------------------
# Collection helpers
# ---------------------------------------------------------------------------

def update_task(
    tasks: List[GenerationTask],
    task_id: str,
    patch: Callable[[GenerationTask], GenerationTask],
) -> List[GenerationTask]:
    """Return a new list where only the task with ``task_id`` is replaced by ``patch(task)``."""
    if not any(t.id == task_id for t in tasks):
        raise KeyError(task_id)
    return [patch(t) if t.id == task_id else t for t in tasks]


def replace_task(tasks: List[GenerationTask], task_id: str, new_task: GenerationTask) -> List[GenerationTask]:
    return update_task(tasks, task_id, lambda _old: new_task)


def with_aspect_ratio(task: GenerationTask, aspect_ratio: str) -> GenerationTask:
    return replace(task, aspect_ratio=aspect_ratio)


def select_pack(prompts: List[RefinedPrompt], pack: PackType) -> List[RefinedPrompt]:
    if pack == PackType.ALL:
        return list(prompts)
    wanted = TaskCategory(pack.value)
    return [p for p in prompts if p.category == wanted]
