#!/usr/bin/env python3
"""CLI wrapper for the photoshoot pipeline.

Usage:
    python photoshoot_cli.py --subject jacket.jpg --type garment --pack all
    python photoshoot_cli.py --subject mug.png --type product --pack marketing --json
    python photoshoot_cli.py --subject front.jpg --subject back.jpg --background beach.jpg
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

import log_setup
log_setup.configure()

import image_codec
from errors import PhotosetError
from models import PackType, PhotoshootType, TaskStatus
from photoshoot_core import ASPECT_RATIOS, PhotoshootPipeline
from predictions import DEFAULT_IMAGE_MODEL, IMAGE_MODELS
from progress import GenerationMode, ProgressTracker, estimated_total_seconds, format_duration, steps_for_mode
from vision_client import DEFAULT_TEXT_MODELS


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate a consistent product/garment photoshoot from 1-2 photos",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python photoshoot_cli.py --subject jacket.jpg --type garment --pack all
  python photoshoot_cli.py --subject mug.png --type product --pack marketing --json
  python photoshoot_cli.py --subject a.jpg --qa-image my_qa.png   (advanced mode)
""",
    )
    parser.add_argument("--subject", action="append", default=[], help="Subject photo (repeat for a 2nd)")
    parser.add_argument("--background", action="append", default=[], help="Background reference (up to 3)")
    parser.add_argument("--model-ref", action="append", default=[], help="Model reference (up to 3)")
    parser.add_argument("--qa-image", default=None, help="Use this image for QA instead of generating one")
    parser.add_argument(
        "--type",
        choices=[t.value for t in PhotoshootType],
        default=PhotoshootType.GARMENT.value,
        help="Photoshoot type (default: garment)",
    )
    parser.add_argument(
        "--pack",
        choices=[p.value for p in PackType],
        default=PackType.ALL.value,
        help="Which set of shots to generate (default: all)",
    )
    parser.add_argument("--marketing", action="store_true", help="Also request the marketing prompts")
    parser.add_argument(
        "--text-provider",
        choices=sorted(DEFAULT_TEXT_MODELS),
        default="openai",
        help="LLM provider for analysis and QA (default: openai)",
    )
    parser.add_argument("--text-model", default=None, help="LLM model (default depends on provider)")
    parser.add_argument(
        "--image-model",
        default=DEFAULT_IMAGE_MODEL,
        help=f"Replicate model for image generation (default: {DEFAULT_IMAGE_MODEL})",
    )
    parser.add_argument("--aspect-ratio", choices=ASPECT_RATIOS, default="3:4")
    parser.add_argument("--concurrency", type=int, choices=(1, 2, 3), default=1, help="Parallel image requests")
    parser.add_argument(
        "--safety-tolerance",
        type=int,
        default=2,
        choices=range(1, 6),
        help="Safety tolerance 1–5 (default: 2)",
    )
    parser.add_argument(
        "--output-dir",
        default="cli_output",
        help="Directory to save images (default: cli_output)",
    )
    parser.add_argument("--json", action="store_true", help="Print full JSON result to stdout")
    parser.add_argument("--list-models", action="store_true", help="List available image models and exit")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.list_models:
        _list_models()
        return 0

    if not 1 <= len(args.subject) <= 2:
        parser.error("give one or two --subject images")

    if not os.environ.get("REPLICATE_API_TOKEN"):
        print("✗  REPLICATE_API_TOKEN not set", file=sys.stderr)
        return 2
    key_var = "ANTHROPIC_API_KEY" if args.text_provider == "anthropic" else "OPENAI_API_KEY"
    if not os.environ.get(key_var):
        print(f"✗  {key_var} not set", file=sys.stderr)
        return 2

    try:
        subjects = [image_codec.encode_file(p) for p in args.subject]
        backgrounds = [image_codec.encode_file(p) for p in args.background]
        model_refs = [image_codec.encode_file(p) for p in args.model_ref]
        qa_image = image_codec.encode_file(args.qa_image) if args.qa_image else None
    except (OSError, PhotosetError) as exc:
        print(f"✗  {getattr(exc, 'message', exc)}", file=sys.stderr)
        return 2

    photoshoot_type = PhotoshootType(args.type)
    pack = PackType(args.pack)
    mode = GenerationMode.ADVANCED if qa_image else GenerationMode.SIMPLE
    include_marketing = args.marketing or pack == PackType.MARKETING

    run_id = f"cli-{int(time.time())}"
    output_dir = Path(args.output_dir) / f"{photoshoot_type.value}_{pack.value}_{int(time.time())}"

    settings = {
        "text_provider": args.text_provider,
        "text_model": args.text_model,
        "image_model": args.image_model,
        "aspect_ratio": args.aspect_ratio,
        "batch_concurrency": args.concurrency,
        "safety_tolerance": args.safety_tolerance,
        "include_marketing": include_marketing,
    }

    estimate = estimated_total_seconds(steps_for_mode(mode, pack, include_marketing=include_marketing))
    _echo(f"\n  ✦ AI Photoshoot CLI")
    _echo(f"  Type    : {photoshoot_type.value}  ({len(subjects)} subject image(s))")
    _echo(f"  Pack    : {pack.value}  [{mode.value} mode]")
    _echo(f"  LLM     : {args.text_provider}/{args.text_model or DEFAULT_TEXT_MODELS[args.text_provider]}")
    _echo(f"  Images  : {args.image_model}")
    _echo(f"  Estimate: ~{format_duration(estimate)}")
    _echo(f"  Output  : {output_dir}\n")

    pipeline = PhotoshootPipeline(
        run_id=run_id,
        subject_images=subjects,
        background_refs=backgrounds,
        model_refs=model_refs,
        photoshoot_type=photoshoot_type,
        settings=settings,
        progress=ProgressTracker(tick_interval=None),
        progress_cb=progress_cb,
    )
    try:
        result = pipeline.run_advanced(qa_image, pack) if qa_image else pipeline.run(pack)
    except PhotosetError as exc:
        print(f"\n✗  {exc.message}", file=sys.stderr)
        return 1

    saved = _save_images(result, output_dir)
    tasks = result["tasks"]
    ok = sum(1 for t in tasks if t["status"] == TaskStatus.SUCCEEDED.value)

    _echo(f"\n  ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    _echo(f"  Status  : {result['status']}")
    _echo(f"  Images  : {ok}/{len(tasks)} generated")
    for t in tasks:
        if t["status"] == TaskStatus.FAILED.value:
            _echo(f"    ✗ {t['title']}: {t['error_message']}")
    _echo(f"  Duration: {format_duration(result['duration'])}")
    _echo(f"  Output  : {output_dir}  ({len(saved)} file(s))\n")

    if args.json:
        print(json.dumps(result, indent=2))

    return 0 if result["status"] != "failed" else 1


def progress_cb(event: Dict) -> None:
    status = event.get("status", "")
    msg    = event.get("message", "")
    prefix = {
        "started":   "  ◌ ",
        "completed": "  ✓ ",
        "failed":    "  ✗ ",
        "skipped":   "  – ",
    }.get(status, "    ")
    _echo(f"{prefix}{msg}")


def _save_images(result: Dict, output_dir: Path) -> List[str]:
    saved = []
    if result.get("qa_image"):
        path = image_codec.download_to(result["qa_image"], output_dir / "qa_reference.png")
        if path:
            saved.append(path)
    for t in result["tasks"]:
        if not t.get("result_image_url"):
            continue
        name = t["title"].lower().replace(" - ", "_").replace(" ", "_")
        path = image_codec.download_to(t["result_image_url"], output_dir / f"{name}.png")
        if path:
            saved.append(path)
    return saved


def _list_models() -> None:
    print("\nAvailable Image Models (Replicate)")
    print("─" * 40)
    for m in IMAGE_MODELS:
        print(f"  {m['id']}")
        print(f"    {m['description']}")
    print("\nText Models")
    print("─" * 40)
    for provider, model in sorted(DEFAULT_TEXT_MODELS.items()):
        print(f"  {provider}: {model}")
    print()


def _echo(msg: str) -> None:
    print(msg, flush=True)


if __name__ == "__main__":
    raise SystemExit(main())
