"""Instruction text for the analysis and refinement calls, plus UI labels per photoshoot type."""

from __future__ import annotations

from typing import Dict, List

from models import PhotoshootType

# ---------------------------------------------------------------------------
# Labels
# ---------------------------------------------------------------------------

_ITEM_ATTRIBUTES = {
    PhotoshootType.GARMENT: [
        "Garment type (T-shirt, kurta, dress, onesie, jacket, trousers)",
        "Target wearer (infant / child / adult male / adult female)",
        "Fabric type and weave",
        "Color tone, with nuance (e.g. muted dusty blue)",
        "Material finish (matte / glossy / satin / velvet)",
        "Neckline or collar shape",
        "Sleeve style",
        "Closure details (type, count, spacing, material)",
        "Seam type and edge finishing",
        "Print, embroidery or pattern (type, size, placement)",
        "Fit style and drape",
        "Trims and extra details (pockets, lace, belts, hood)",
    ],
    PhotoshootType.PRODUCT: [
        "Product type and category",
        "Primary materials and construction",
        "Color tone, with nuance",
        "Surface finish (matte / glossy / brushed / textured)",
        "Dimensions and proportions as they appear",
        "Functionality and visible controls, ports or moving parts",
        "Branding, labels or printed text (placement and legibility)",
        "Packaging or accessories shown",
        "Distinguishing design details",
    ],
}


def photoshoot_labels(photoshoot_type: PhotoshootType) -> Dict[str, str]:
    """User-facing wording for a photoshoot type."""
    item = photoshoot_type.value
    if photoshoot_type == PhotoshootType.GARMENT:
        studio = "Professional studio shots with clean backgrounds"
        lifestyle = "Lifestyle shots showing the garment in real-world contexts"
        marketing = "Creative marketing shots for fashion campaigns"
    else:
        studio = "Professional studio shots highlighting product features"
        lifestyle = "Lifestyle shots showing the product in use scenarios"
        marketing = "Viral-worthy marketing shots with dramatic angles and creative compositions"
    return {
        "uploadMainLabel": f"Upload {item.title()} Images",
        "uploadMainDescription": f"Upload 1-2 images of the {item} you want to photograph",
        "analysisTitle": f"{item.title()} Analysis",
        "mainItemName": item,
        "studioDescription": studio,
        "lifestyleDescription": lifestyle,
        "marketingDescription": marketing,
        "analysisButtonText": f"Analyze {item.title()}",
        "qaButtonText": "Generate QA & Refine Prompts",
        "errorUploadMessage": f"Please upload 1 or 2 {item} image(s).",
    }


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

def analysis_instruction(
    photoshoot_type: PhotoshootType,
    n_subject_images: int,
    has_background_refs: bool,
    has_model_refs: bool,
) -> str:
    item = photoshoot_type.value
    if n_subject_images == 2:
        intake = (
            f"You will be provided with two {item} images.\n"
            "First, determine whether they show:\n"
            f"(a) the same {item} from different perspectives or details, or\n"
            f"(b) two distinct {item}s.\n"
            f"If (a): write one comprehensive analysis for the single {item}.\n"
            "If (b): 'itemAnalysis' and 'qaChecklist' must each be split into two blocks, "
            "each starting on its own line with a heading of exactly this form:\n"
            "**Item 1 (short name):**\n...\n\n**Item 2 (short name):**\n...\n"
            f"and 'initialPrompt' must feature both {item}s together as one look or set."
        )
    else:
        intake = f"You will be provided with one image of a {item}. Analyze it accordingly."

    refs: List[str] = []
    if has_background_refs:
        refs.append(
            "Background reference images are provided. Let their palette, texture and mood "
            "inspire the STUDIO background in 'initialPrompt' while keeping it a clean studio setup."
        )
    if has_model_refs:
        refs.append(
            "Model reference images are provided. The person described in 'initialPrompt' "
            "should resemble them (hair, features, body type where discernible)."
        )

    attributes = "\n".join(f"    - {a}" for a in _ITEM_ATTRIBUTES[photoshoot_type])
    return (
        f"You are an AI assistant specialized in {item} image prompting. {intake}\n\n"
        "Step 1 - Input analysis. Extract and document:\n"
        f"{attributes}\n"
        "Step 2 - Build a strict QA checklist from those attributes, with checks specific "
        f"to the {item} type.\n"
        "Step 3 - Write one detailed, copy-paste ready image generation prompt for a premium "
        f"photo of the {item}, on a STUDIO background with professional studio lighting.\n"
        + ("\n".join(refs) + "\n" if refs else "")
        + "\nReturn a single JSON object with exactly the keys "
        '"itemAnalysis", "qaChecklist" and "initialPrompt", all strings. '
        "No markdown, no text outside the JSON object."
    )


def analysis_parts_header(photoshoot_type: PhotoshootType, index: int) -> str:
    return f"Input {photoshoot_type.value.title()} Image {index}:"


# ---------------------------------------------------------------------------
# QA & refinement
# ---------------------------------------------------------------------------

def refinement_instruction(photoshoot_type: PhotoshootType, titles: List[str], include_marketing: bool) -> str:
    item = photoshoot_type.value
    title_list = "\n".join(f'    {i}. "{t}"' for i, t in enumerate(titles, 1))
    marketing = ""
    if include_marketing:
        marketing = (
            "D. Marketing prompts: four bold, scroll-stopping compositions (dramatic angles, "
            f"creative framing) that still render the {item} exactly as analyzed.\n"
        )
    return (
        f"You are an AI {item} QA expert and prompt generator.\n"
        f"You receive the original {item} image(s), an analysis, a QA checklist, the initial "
        "prompt, and a generated image made from that prompt.\n\n"
        f"A. Ultra-strict QA: compare the generated image with the original {item}(s), the "
        "analysis and the checklist. Note every discrepancy (color, material, fit, details). "
        "If the analysis has separate **Item N** blocks, check each item.\n"
        "B. Studio prompts: choose ONE clean studio background and ONE professional lighting "
        "setup and repeat those exact same descriptions word for word in every studio prompt. "
        "Vary only the view (front, back, side, close-up detail).\n"
        "C. Lifestyle prompts: establish ONE detailed, realistic lifestyle scene and repeat that "
        "exact scene description in every lifestyle prompt. Vary only pose, camera angle and "
        "natural lighting nuance within that scene.\n"
        + marketing
        + f"All prompts must correct the QA issues implicitly by describing the true {item}.\n\n"
        f"Return a single JSON array of exactly {len(titles)} objects, each with a \"title\" "
        "and a \"prompt\" string, titled exactly:\n"
        f"{title_list}\n"
        "No markdown fences and no text outside the array."
    )
