"""Follow-up edits on generated images: prompt-driven edit and upscale.

Both go through the ``replicate`` SDK's blocking ``run`` call; the
explicit submit/poll client in ``predictions.py`` is only used for the
photoshoot itself.
"""

from __future__ import annotations

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from errors import (
    AuthError,
    PhotosetError,
    PredictionFailed,
    QuotaError,
    SafetyRejection,
    TransportError,
    ValidationError,
)
from predictions import extract_output_url

log = logging.getLogger(__name__)

EDIT_MODEL = "black-forest-labs/flux-kontext-dev"
UPSCALE_MODEL = "nightmareai/real-esrgan"

OUTPUT_FORMATS = ("jpg", "png")
UPSCALE_SCALES = (2, 4)
MAX_EDIT_PROMPT_CHARS = 1000
DEFAULT_INFERENCE_STEPS = 30
BULK_EDIT_DELAY_S = 1.0
MAX_PARALLEL_EDITS = 3

SUGGESTED_EDIT_PROMPTS = [
    "Change the background to a solid white",
    "Make the lighting brighter and more professional",
    "Add more contrast and saturation",
    "Remove the background completely",
    "Add dramatic shadows",
    "Change to black and white",
    "Make the image sharper and more detailed",
    "Add a soft blur effect to the background",
]


@dataclass
class EditRequest:
    prompt: str
    input_image: str                     # https URL or data URL
    output_format: str = "png"
    num_inference_steps: int = DEFAULT_INFERENCE_STEPS

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EditRequest":
        return cls(
            prompt=d.get("prompt") or "",
            input_image=d.get("input_image") or d.get("inputImage") or "",
            output_format=d.get("output_format") or "png",
            num_inference_steps=int(d.get("num_inference_steps") or DEFAULT_INFERENCE_STEPS),
        )


@dataclass
class EditResult:
    success: bool
    image_url: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "imageUrl": self.image_url, "error": self.error}


@dataclass
class BulkEditResult:
    results: List[EditResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "successCount": self.success_count,
            "failureCount": self.failure_count,
        }


def _is_image_ref(value: str) -> bool:
    return value.startswith("http") or value.startswith("data:")


def validate_edit_request(req: EditRequest) -> None:
    """Raise ValidationError when ``req`` would be rejected."""
    if not req.prompt or not req.prompt.strip():
        raise ValidationError("Edit prompt is required.")
    if not req.input_image or not req.input_image.strip():
        raise ValidationError("Input image is required.")
    if not _is_image_ref(req.input_image):
        raise ValidationError("Input image must be a valid URL or data URL.")
    if len(req.prompt) > MAX_EDIT_PROMPT_CHARS:
        raise ValidationError(f"Edit prompt is too long (max {MAX_EDIT_PROMPT_CHARS} characters).")
    if req.output_format not in OUTPUT_FORMATS:
        raise ValidationError("Output format must be jpg or png.")
    if not 1 <= req.num_inference_steps <= 100:
        raise ValidationError("Number of inference steps must be between 1 and 100.")


def validate_upscale_request(image_url: str, scale: int, output_format: str = "png") -> None:
    if not image_url or not image_url.strip():
        raise ValidationError("Image URL is required.")
    if not _is_image_ref(image_url):
        raise ValidationError("Image URL must be a valid URL or data URL.")
    if scale not in UPSCALE_SCALES:
        raise ValidationError("Scale must be 2x or 4x.")
    if output_format not in OUTPUT_FORMATS:
        raise ValidationError("Output format must be jpg or png.")


def _output_to_url(raw_output: Any) -> str:
    # The SDK may hand back FileOutput objects instead of plain strings
    if isinstance(raw_output, list):
        raw_output = [getattr(o, "url", o) for o in raw_output]
    else:
        raw_output = getattr(raw_output, "url", raw_output)
    return extract_output_url(raw_output)


class EditService:
    """Runs edit/upscale models on the image service."""

    def __init__(
        self,
        api_token: Optional[str] = None,
        client: Any = None,
        delay: float = BULK_EDIT_DELAY_S,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._token = api_token if api_token is not None else os.environ.get("REPLICATE_API_TOKEN", "")
        self._client = client
        self.delay = delay
        self._sleep = sleep

    def _sdk(self) -> Any:
        if self._client is None:
            if not self._token:
                raise AuthError("REPLICATE_API_TOKEN not set")
            import replicate as rep
            self._client = rep.Client(api_token=self._token)
        return self._client

    def _run(self, model: str, payload: Dict[str, Any]) -> str:
        client = self._sdk()
        t0 = time.time()
        try:
            raw_output = client.run(model, input=payload)
        except PhotosetError:
            raise
        except Exception as exc:
            raise self._translate(exc) from exc
        url = _output_to_url(raw_output)
        log.info("Replicate run: model=%s  %.1fs", model, time.time() - t0)
        return url

    @staticmethod
    def _translate(exc: Exception) -> PhotosetError:
        err = str(exc)
        lowered = err.lower()
        status = getattr(exc, "status", None)
        log.error("Replicate error: %s", err)
        if status in (401, 403) or "401" in err or "authentication" in lowered:
            return AuthError("Image service token is invalid or expired. Check REPLICATE_API_TOKEN.")
        if status in (402, 429) or "402" in err or "429" in err or "quota" in lowered or "payment" in lowered:
            return QuotaError("Image service quota or rate limit exceeded.")
        if "nsfw" in lowered or "sensitive" in lowered or "safety" in lowered:
            return SafetyRejection("The edit was blocked by the safety filter.")
        if type(exc).__name__ == "ModelError":
            return PredictionFailed(f"Edit prediction failed: {err}")
        return TransportError(f"Image service request failed: {err}")

    # ------------------------------------------------------------------
    # Edit
    # ------------------------------------------------------------------

    def edit_image(self, req: EditRequest) -> str:
        """Apply one prompt-driven edit and return the new image URL."""
        validate_edit_request(req)
        payload = {
            "prompt": req.prompt.strip(),
            "input_image": req.input_image,
            "output_format": req.output_format,
            "num_inference_steps": req.num_inference_steps,
        }
        return self._run(EDIT_MODEL, payload)

    def _edit_isolated(self, req: EditRequest) -> EditResult:
        try:
            return EditResult(success=True, image_url=self.edit_image(req))
        except PhotosetError as exc:
            log.warning("Edit failed: %s", exc.message)
            return EditResult(success=False, error=exc.message)

    def edit_many(
        self,
        requests: List[EditRequest],
        on_progress: Optional[Callable[[Dict], None]] = None,
    ) -> BulkEditResult:
        """Edit one at a time with a fixed pause between calls; failures don't stop the rest."""
        bulk = BulkEditResult()
        total = len(requests)
        for i, req in enumerate(requests):
            if on_progress:
                on_progress({"total": total, "completed": i, "current": f"Editing image {i + 1} of {total}"})
            bulk.results.append(self._edit_isolated(req))
            if i < total - 1:
                self._sleep(self.delay)
        if on_progress:
            on_progress({"total": total, "completed": total, "current": "Completed"})
        log.info("Bulk edit: %d ok, %d failed", bulk.success_count, bulk.failure_count)
        return bulk

    def edit_many_parallel(
        self,
        requests: List[EditRequest],
        max_concurrency: int = MAX_PARALLEL_EDITS,
    ) -> BulkEditResult:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        results: List[Optional[EditResult]] = [None] * len(requests)
        groups = [
            list(range(i, min(i + max_concurrency, len(requests))))
            for i in range(0, len(requests), max_concurrency)
        ]
        with ThreadPoolExecutor(max_workers=max_concurrency) as pool:
            for g, idxs in enumerate(groups):
                if g:
                    self._sleep(self.delay)
                futures = {i: pool.submit(self._edit_isolated, requests[i]) for i in idxs}
                for i, f in futures.items():
                    results[i] = f.result()
        bulk = BulkEditResult(results=[r for r in results if r is not None])
        log.info("Parallel edit: %d ok, %d failed", bulk.success_count, bulk.failure_count)
        return bulk

    # ------------------------------------------------------------------
    # Upscale
    # ------------------------------------------------------------------

    def upscale_image(self, image_url: str, scale: int = 2, output_format: str = "png") -> str:
        validate_upscale_request(image_url, scale, output_format)
        return self._run(UPSCALE_MODEL, {"image": image_url, "scale": scale})
