"""The three single-artifact stages that precede batch generation.

analyze  -> AnalysisResult   (text model)
generate_seed -> SeedImage   (image service)
refine   -> [RefinedPrompt]  (text model, validated against the expected titles)

Each stage either returns its artifact or raises a PhotosetError; there is no
partial result below the batch orchestrator.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import prompts
from errors import SchemaError, ValidationError
from models import (
    DEFAULT_ASPECT_RATIO,
    DEFAULT_PHOTOSHOOT_TYPE,
    AnalysisResult,
    ImageInput,
    PhotoshootType,
    RefinedPrompt,
    SeedImage,
    expected_titles,
)
from predictions import DEFAULT_IMAGE_MODEL, PredictionClient, build_prediction_input
from vision_client import TextModelClient, parse_json

log = logging.getLogger(__name__)

MAX_SUBJECT_IMAGES = 2
MAX_REFERENCE_IMAGES = 3

_ANALYSIS_KEYS = {
    "item_analysis": ("itemAnalysis", "garmentAnalysis", "productAnalysis"),
    "qa_checklist": ("qaChecklist",),
    "initial_prompt": ("initialPrompt", "initialJsonPrompt"),
}


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

def _validate_inputs(
    subject_images: Sequence[ImageInput],
    background_refs: Sequence[ImageInput],
    model_refs: Sequence[ImageInput],
    photoshoot_type: PhotoshootType,
) -> None:
    if not subject_images or len(subject_images) > MAX_SUBJECT_IMAGES:
        raise ValidationError(f"Please provide 1 or 2 {photoshoot_type.value} images.")
    if len(background_refs) > MAX_REFERENCE_IMAGES:
        raise ValidationError(f"At most {MAX_REFERENCE_IMAGES} background reference images are allowed.")
    if len(model_refs) > MAX_REFERENCE_IMAGES:
        raise ValidationError(f"At most {MAX_REFERENCE_IMAGES} model reference images are allowed.")


def _pick(data: Dict[str, Any], keys: Sequence[str]) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise SchemaError(
        f"Analysis response is missing a non-empty '{keys[0]}' string."
    )


def analyze(
    text_client: TextModelClient,
    subject_images: Sequence[ImageInput],
    background_refs: Optional[Sequence[ImageInput]] = None,
    model_refs: Optional[Sequence[ImageInput]] = None,
    photoshoot_type: PhotoshootType = DEFAULT_PHOTOSHOOT_TYPE,
) -> AnalysisResult:
    background_refs = list(background_refs or [])
    model_refs = list(model_refs or [])
    _validate_inputs(subject_images, background_refs, model_refs, photoshoot_type)

    system = prompts.analysis_instruction(
        photoshoot_type,
        len(subject_images),
        has_background_refs=bool(background_refs),
        has_model_refs=bool(model_refs),
    )
    parts: List[Any] = []
    for idx, img in enumerate(subject_images, 1):
        parts.append(prompts.analysis_parts_header(photoshoot_type, idx))
        parts.append(img)
    if background_refs:
        parts.append("Optional Background Reference Image(s):")
        parts.extend(background_refs)
    if model_refs:
        parts.append("Optional Model Reference Image(s):")
        parts.extend(model_refs)
    parts.append(
        f"Analyze the images and generate the {photoshoot_type.value} analysis, "
        "QA checklist, and initial prompt."
    )

    text = text_client.generate(system, parts, json_object=True)
    data = parse_json(text, expect=dict)
    if not isinstance(data, dict):
        raise SchemaError("Analysis response must be a JSON object.")

    result = AnalysisResult(
        item_analysis=_pick(data, _ANALYSIS_KEYS["item_analysis"]),
        qa_checklist=_pick(data, _ANALYSIS_KEYS["qa_checklist"]),
        initial_prompt=_pick(data, _ANALYSIS_KEYS["initial_prompt"]),
        photoshoot_type=photoshoot_type,
    )
    log.info(
        "Analysis ready: %s, %d subject image(s), multi-subject=%s",
        photoshoot_type.value, len(subject_images), result.is_multi_subject,
    )
    return result


# ---------------------------------------------------------------------------
# Seed image
# ---------------------------------------------------------------------------

def generate_seed(
    predictions: PredictionClient,
    prompt: str,
    reference_images: Sequence[ImageInput],
    model: str = DEFAULT_IMAGE_MODEL,
    aspect_ratio: str = DEFAULT_ASPECT_RATIO,
    safety_tolerance: int = 2,
) -> SeedImage:
    """Render the initial prompt once, conditioned on the real subject photos."""
    if not prompt or not prompt.strip():
        raise ValidationError("An initial prompt is required to generate the seed image.")
    if not reference_images:
        raise ValidationError("At least one subject image is required to generate the seed image.")

    payload = build_prediction_input(
        model,
        prompt,
        aspect_ratio,
        [img.to_data_url() for img in reference_images],
        safety_tolerance,
    )
    url = predictions.submit_and_await(model, payload)
    log.info("Seed image ready (%s)", url[:80])
    return SeedImage(url=url)


# ---------------------------------------------------------------------------
# QA & refinement
# ---------------------------------------------------------------------------

def validate_refined_batch(data: Any, titles: List[str]) -> List[RefinedPrompt]:
    """Check the refinement reply and return prompts in the expected title order."""
    if not isinstance(data, list):
        raise SchemaError("Refined prompts must be a JSON array.")
    if len(data) != len(titles):
        raise SchemaError(
            f"Expected {len(titles)} refined prompts but the model returned {len(data)}."
        )

    by_title: Dict[str, RefinedPrompt] = {}
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            raise SchemaError(f"Refined prompt #{i + 1} is not an object.")
        title = item.get("title")
        text = item.get("prompt")
        if not isinstance(title, str) or not title.strip():
            raise SchemaError(f"Refined prompt #{i + 1} has no title.")
        if not isinstance(text, str) or not text.strip():
            raise SchemaError(f"Refined prompt '{title}' has no prompt text.")
        title = title.strip()
        if title not in titles:
            raise SchemaError(f"Unexpected refined prompt title: '{title}'.")
        if title in by_title:
            raise SchemaError(f"Duplicate refined prompt title: '{title}'.")
        by_title[title] = RefinedPrompt(title=title, prompt_text=text.strip())

    return [by_title[t] for t in titles]


def refine(
    text_client: TextModelClient,
    subject_images: Sequence[ImageInput],
    seed_or_qa_image: ImageInput,
    analysis: AnalysisResult,
    include_marketing: bool = False,
) -> List[RefinedPrompt]:
    if not subject_images:
        raise ValidationError("Original subject image(s) are required for QA.")
    titles = expected_titles(include_marketing)
    item = analysis.photoshoot_type.value.title()
    system = prompts.refinement_instruction(analysis.photoshoot_type, titles, include_marketing)

    parts: List[Any] = []
    for idx, img in enumerate(subject_images, 1):
        parts.append(f"Original {item} Image {idx}:")
        parts.append(img)
    parts.extend([
        f"{item} Analysis:", analysis.item_analysis,
        "QA Checklist:", analysis.qa_checklist,
        "Initial Prompt:", analysis.initial_prompt,
        "Generated Image (for QA):", seed_or_qa_image,
        f"Perform QA and generate the {len(titles)} final prompts.",
    ])

    text = text_client.generate(system, parts, json_object=False)
    refined = validate_refined_batch(parse_json(text, expect=list), titles)
    log.info("Refinement ready: %d prompts (marketing=%s)", len(refined), include_marketing)
    return refined
