"""
Test fixtures and fakes for the remote services.
"""

import json
import os
import sys
import tempfile
import threading
from typing import Any, Callable, Dict, List, Optional, Set

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Keep app.py's import-time init_db() away from the project directory
os.environ.setdefault("PHOTOSET_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="photoset-"), "test.db"))

from errors import PhotosetError, PredictionFailed
from models import ImageInput, expected_titles, is_front_title

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 32


# ============== Canned model replies ==============

def analysis_reply(
    item_analysis: str = "Navy wool blazer, notch lapel, two gold buttons.",
    qa_checklist: str = "- navy color\n- two gold buttons",
    initial_prompt: str = "A navy wool blazer on a white studio background.",
) -> str:
    return json.dumps({
        "itemAnalysis": item_analysis,
        "qaChecklist": qa_checklist,
        "initialPrompt": initial_prompt,
    })


def prompt_for(title: str) -> str:
    return f"PROMPT<{title}>"


def refined_reply(include_marketing: bool = False) -> str:
    return json.dumps([
        {"title": t, "prompt": prompt_for(t)} for t in expected_titles(include_marketing)
    ])


# ============== Fakes ==============

class FakeTextClient:
    """Stand-in for TextModelClient; returns queued replies in order."""

    provider = "openai"
    model = "fake-model"

    def __init__(self, replies: Optional[List[Any]] = None) -> None:
        self.replies = list(replies or [])
        self.calls: List[Dict[str, Any]] = []

    def generate(self, system: str, parts, json_object: bool = True) -> str:
        self.calls.append({"system": system, "parts": list(parts), "json_object": json_object})
        if not self.replies:
            raise AssertionError("FakeTextClient ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakePredictions:
    """Stand-in for PredictionClient.submit_and_await.

    Any request whose prompt is in ``fail_prompts`` raises ``fail_with``;
    everything else returns a fresh data URL.
    """

    def __init__(
        self,
        fail_prompts: Optional[Set[str]] = None,
        fail_with: Optional[Callable[[], PhotosetError]] = None,
    ) -> None:
        self.fail_prompts = set(fail_prompts or ())
        self.fail_with = fail_with or (lambda: PredictionFailed("Prediction failed: boom"))
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def submit_and_await(self, model: str, input: Dict[str, Any]) -> str:
        with self._lock:
            self.calls.append({"model": model, "input": input})
            n = len(self.calls)
        if input["prompt"] in self.fail_prompts:
            raise self.fail_with()
        return f"data:image/png;base64,IMG{n}"

    def prompts(self) -> List[str]:
        return [c["input"]["prompt"] for c in self.calls]

    def images_for(self, prompt: str) -> List[str]:
        for c in self.calls:
            if c["input"]["prompt"] == prompt:
                return c["input"].get("input_images") or c["input"].get("image_input") or []
        raise AssertionError(f"no call for {prompt!r}")


def front_prompt() -> str:
    return prompt_for(next(t for t in expected_titles() if is_front_title(t)))


# ============== Fixtures ==============

@pytest.fixture
def png_image() -> ImageInput:
    import image_codec
    return image_codec.encode_image(PNG_BYTES, "image/png")


@pytest.fixture
def jpeg_image() -> ImageInput:
    import image_codec
    return image_codec.encode_image(JPEG_BYTES, "image/jpeg")


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    """Records requested delays instead of waiting."""
    return sleeps.append


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    import db
    monkeypatch.setattr(db, "DB_PATH", tmp_path / "runs.db")
    db.init_db()
    return db
