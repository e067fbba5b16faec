"""AI Photoshoot — Flask web application."""

from __future__ import annotations

import json
import logging
import os
import queue
import threading
import time
import traceback
import uuid
from typing import Callable, Dict, Generator, List, Optional

import requests
from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request
from flask_cors import CORS

load_dotenv()

import log_setup
log_setup.configure()

import db
import image_codec
import prompts
import stages
from edits import SUGGESTED_EDIT_PROMPTS, EditRequest, EditService
from errors import PhotosetError, ValidationError
from models import PackType, PhotoshootType, TaskStatus, is_valid_photoshoot_type
from photoshoot_core import ASPECT_RATIOS, PhotoshootPipeline, pack_size
from predictions import DEFAULT_IMAGE_MODEL, IMAGE_MODELS, REPLICATE_API_BASE
from progress import GenerationMode, ProgressTracker, estimated_total_seconds, format_duration, steps_for_mode
from vision_client import DEFAULT_TEXT_MODELS

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

app = Flask(__name__)
CORS(app)

db.init_db()

# Active SSE queues: run_id -> Queue
_run_queues: Dict[str, queue.Queue] = {}
_run_queues_lock = threading.Lock()

# Live pipelines (hold the uploaded images needed for retries and follow-up packs)
_pipelines: Dict[str, PhotoshootPipeline] = {}
_busy: Dict[str, bool] = {}
_last_used: Dict[str, float] = {}
_pipelines_lock = threading.Lock()

# Idle pipelines are dropped after this long, and beyond this many, oldest first
PIPELINE_TTL_S = float(os.environ.get("PHOTOSET_PIPELINE_TTL", 3600))
MAX_LIVE_PIPELINES = int(os.environ.get("PHOTOSET_MAX_LIVE_RUNS", 20))

_PROXY_HOP_HEADERS = {"host", "authorization", "content-length", "connection", "cookie"}


@app.errorhandler(PhotosetError)
def handle_photoset_error(exc: PhotosetError):
    return jsonify(exc.to_dict()), exc.http_status


# ---------------------------------------------------------------------------
# SSE helpers
# ---------------------------------------------------------------------------

def _sse_event(data: dict) -> str:
    return f"data: {json.dumps(data)}\n\n"


def _get_or_create_queue(run_id: str) -> queue.Queue:
    with _run_queues_lock:
        if run_id not in _run_queues:
            _run_queues[run_id] = queue.Queue(maxsize=500)
        return _run_queues[run_id]


def _cleanup_queue(run_id: str) -> None:
    with _run_queues_lock:
        _run_queues.pop(run_id, None)


def _queue_cb(run_id: str) -> Callable[[Dict], None]:
    """Forward events to whichever queue the run's current stream is reading."""
    _get_or_create_queue(run_id)

    def progress_cb(event: Dict) -> None:
        try:
            _get_or_create_queue(run_id).put_nowait(event)
        except queue.Full:
            pass

    return progress_cb


def _close_stream(run_id: str) -> None:
    try:
        _get_or_create_queue(run_id).put_nowait(None)
    except queue.Full:
        pass


# ---------------------------------------------------------------------------
# Pipeline threads
# ---------------------------------------------------------------------------

def _evict_idle() -> None:
    """Drop expired or surplus idle pipelines. Caller holds _pipelines_lock."""
    now = time.time()
    idle = sorted(
        (rid for rid in _pipelines if not _busy.get(rid)),
        key=lambda rid: _last_used.get(rid, 0.0),
    )
    expired = [rid for rid in idle if now - _last_used.get(rid, now) >= PIPELINE_TTL_S]
    surplus = len(_pipelines) - len(expired) - MAX_LIVE_PIPELINES
    if surplus > 0:
        expired += [rid for rid in idle if rid not in expired][:surplus]

    for rid in expired:
        pipeline = _pipelines.pop(rid)
        _busy.pop(rid, None)
        _last_used.pop(rid, None)
        pipeline.progress.reset()
        log.info("Evicted idle pipeline: id=%s", rid)


def _register(run_id: str, pipeline: PhotoshootPipeline) -> None:
    with _pipelines_lock:
        _pipelines[run_id] = pipeline
        _busy[run_id] = True
        _last_used[run_id] = time.time()
        _evict_idle()


def _claim(run_id: str) -> PhotoshootPipeline:
    """Mark a live pipeline busy, or raise if it can't take more work."""
    with _pipelines_lock:
        _evict_idle()
        pipeline = _pipelines.get(run_id)
        if pipeline is None:
            raise ValidationError("Run is no longer active; start a new photoshoot.")
        if _busy.get(run_id):
            raise ValidationError("Run is still in progress.")
        _busy[run_id] = True
        _last_used[run_id] = time.time()
        return pipeline


def _release(run_id: str) -> None:
    with _pipelines_lock:
        if run_id in _pipelines:
            _busy[run_id] = False
            _last_used[run_id] = time.time()


def _run_job(run_id: str, pipeline: PhotoshootPipeline, job: Callable[[], Dict], label: str) -> None:
    """Run ``job`` on a pipeline, persist what it produced, then close the SSE stream."""
    progress_cb = _queue_cb(run_id)
    unsubscribe = pipeline.progress.subscribe(
        lambda state: progress_cb({"type": "progress", "state": state.to_dict() if state else None})
    )
    db.set_run_status(run_id, "running")
    log.info("%s started: id=%s", label, run_id)
    progress_cb({"stage": "pipeline", "status": "started", "message": f"{label} started…"})

    try:
        result = job()
        db.finish_run(run_id, result)
        progress_cb({
            "stage": "pipeline",
            "status": "complete" if result.get("status") != "failed" else "failed",
            "message": "Done!" if result.get("status") != "failed" else "Anchor image failed",
            "data": result,
        })
    except PhotosetError as exc:
        log.error("%s failed: id=%s  %s: %s", label, run_id, exc.kind, exc.message)
        db.save_artifacts(run_id, pipeline.snapshot())
        db.fail_run(run_id, exc.message)
        progress_cb({"stage": "pipeline", "status": "failed", "message": exc.message, "data": exc.to_dict()})
    except Exception as exc:
        log.error("%s failed: id=%s  error=%s", label, run_id, exc, exc_info=True)
        db.save_artifacts(run_id, pipeline.snapshot())
        db.fail_run(run_id, str(exc))
        progress_cb({
            "stage": "pipeline",
            "status": "failed",
            "message": str(exc),
            "data": {"traceback": traceback.format_exc()},
        })
    finally:
        unsubscribe()
        _release(run_id)
        _close_stream(run_id)


def _start_job(run_id: str, pipeline: PhotoshootPipeline, job: Callable[[], Dict], label: str) -> None:
    _get_or_create_queue(run_id)
    threading.Thread(target=_run_job, args=(run_id, pipeline, job, label), daemon=True).start()


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------

def _read_uploads(field: str) -> List:
    images = []
    for f in request.files.getlist(field):
        if not f or not f.filename:
            continue
        images.append(image_codec.encode_image(f.read(), f.mimetype))
    return images


def _parse_enum(enum_cls, raw: Optional[str], default):
    if not raw:
        return default
    try:
        return enum_cls(raw)
    except ValueError:
        choices = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"{raw!r} is not valid; choose one of: {choices}")


def _check_keys(settings: Dict) -> None:
    provider = settings.get("text_provider", "openai")
    if provider == "anthropic":
        if not os.environ.get("ANTHROPIC_API_KEY"):
            raise ValidationError("ANTHROPIC_API_KEY is not configured")
    elif not os.environ.get("OPENAI_API_KEY"):
        raise ValidationError("OPENAI_API_KEY is not configured")
    if not os.environ.get("REPLICATE_API_TOKEN"):
        raise ValidationError("REPLICATE_API_TOKEN is not configured")


def _make_pipeline(run_id: str, photoshoot_type: PhotoshootType, settings: Dict, **kwargs) -> PhotoshootPipeline:
    """Factory hook; tests replace this to inject fake remote clients."""
    return PhotoshootPipeline(
        run_id=run_id,
        photoshoot_type=photoshoot_type,
        settings=settings,
        progress=ProgressTracker(),
        progress_cb=_queue_cb(run_id),
        history_cb=db.history_saver(run_id),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Routes — Config
# ---------------------------------------------------------------------------

@app.get("/api/config")
def api_config():
    providers = []
    if os.environ.get("OPENAI_API_KEY"):
        providers.append({"id": "openai", "name": "OpenAI", "default_model": DEFAULT_TEXT_MODELS["openai"]})
    if os.environ.get("ANTHROPIC_API_KEY"):
        providers.append({"id": "anthropic", "name": "Anthropic (Claude)", "default_model": DEFAULT_TEXT_MODELS["anthropic"]})

    estimates = {}
    for pack in PackType:
        steps = steps_for_mode(GenerationMode.SIMPLE, pack)
        estimates[pack.value] = format_duration(estimated_total_seconds(steps))

    return jsonify({
        "text_providers": providers,
        "image_models": IMAGE_MODELS,
        "default_image_model": DEFAULT_IMAGE_MODEL,
        "replicate_available": bool(os.environ.get("REPLICATE_API_TOKEN")),
        "photoshoot_types": {t.value: prompts.photoshoot_labels(t) for t in PhotoshootType},
        "packs": [p.value for p in PackType],
        "aspect_ratios": ASPECT_RATIOS,
        "estimated_durations": estimates,
        "suggested_edits": SUGGESTED_EDIT_PROMPTS,
        "limits": {
            "subject_images": stages.MAX_SUBJECT_IMAGES,
            "reference_images": stages.MAX_REFERENCE_IMAGES,
            "max_upload_bytes": image_codec.MAX_UPLOAD_SIZE_BYTES,
        },
    })


# ---------------------------------------------------------------------------
# Routes — Run management
# ---------------------------------------------------------------------------

@app.post("/api/run")
def api_start_run():
    form = request.form
    raw_type = form.get("photoshoot_type") or PhotoshootType.GARMENT.value
    if not is_valid_photoshoot_type(raw_type):
        raise ValidationError("photoshoot_type must be garment or product")
    photoshoot_type = PhotoshootType(raw_type)
    pack = _parse_enum(PackType, form.get("pack"), PackType.ALL)
    mode = _parse_enum(GenerationMode, form.get("mode"), GenerationMode.SIMPLE)
    try:
        settings = json.loads(form.get("settings") or "{}")
    except json.JSONDecodeError:
        raise ValidationError("settings must be a JSON object")
    if not isinstance(settings, dict):
        raise ValidationError("settings must be a JSON object")

    subjects = _read_uploads("subject")
    if not 1 <= len(subjects) <= stages.MAX_SUBJECT_IMAGES:
        raise ValidationError(f"Please upload 1 or 2 {photoshoot_type.value} images.")
    background_refs = _read_uploads("background")
    model_refs = _read_uploads("model_ref")
    qa_uploads = _read_uploads("qa_image")
    if mode == GenerationMode.ADVANCED and len(qa_uploads) != 1:
        raise ValidationError("Advanced mode needs exactly one QA image.")
    if pack == PackType.MARKETING:
        settings["include_marketing"] = True

    _check_keys(settings)

    run_id = str(uuid.uuid4())[:8]
    db.create_run(run_id, photoshoot_type.value, mode.value, pack.value, settings)

    pipeline = _make_pipeline(
        run_id,
        photoshoot_type,
        settings,
        subject_images=subjects,
        background_refs=background_refs,
        model_refs=model_refs,
    )
    _register(run_id, pipeline)

    if mode == GenerationMode.ADVANCED:
        job = lambda: pipeline.run_advanced(qa_uploads[0], pack)  # noqa: E731
    else:
        job = lambda: pipeline.run(pack)  # noqa: E731
    _start_job(run_id, pipeline, job, "Photoshoot")

    return jsonify({"run_id": run_id, "image_count": pack_size(pack, pipeline.include_marketing)})


@app.get("/api/stream/<run_id>")
def api_stream(run_id: str):
    """Server-Sent Events stream for a run."""
    q = _get_or_create_queue(run_id)

    def generate() -> Generator[str, None, None]:
        yield _sse_event({"type": "heartbeat", "run_id": run_id})
        try:
            while True:
                try:
                    event = q.get(timeout=25)
                except queue.Empty:
                    yield _sse_event({"type": "heartbeat"})
                    continue

                if event is None:
                    yield _sse_event({"type": "done"})
                    break
                yield _sse_event(event)
        finally:
            _cleanup_queue(run_id)

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )


@app.get("/api/progress/<run_id>")
def api_progress(run_id: str):
    with _pipelines_lock:
        pipeline = _pipelines.get(run_id)
    if pipeline is None:
        return jsonify({"error": "Not found"}), 404
    state = pipeline.progress.state
    return jsonify(state.to_dict() if state else None)


@app.get("/api/runs")
def api_list_runs():
    summary = []
    for r in db.list_runs():
        tasks = r.get("tasks") or []
        summary.append({
            "id": r["id"],
            "photoshoot_type": r["photoshoot_type"],
            "mode": r["mode"],
            "pack": r["pack"],
            "status": r["status"],
            "created_at": r["created_at"],
            "duration": r.get("duration"),
            "anchor": r.get("anchor"),
            "succeeded": sum(1 for t in tasks if t.get("status") == "succeeded"),
            "total": len(tasks),
            "error_msg": r.get("error_msg") or "",
        })
    return jsonify(summary)


@app.get("/api/runs/<run_id>")
def api_get_run(run_id: str):
    run = db.get_run(run_id)
    if not run:
        return jsonify({"error": "Not found"}), 404
    with _pipelines_lock:
        run["active"] = run_id in _pipelines
    return jsonify(run)


@app.post("/api/runs/<run_id>/cancel")
def api_cancel(run_id: str):
    with _pipelines_lock:
        pipeline = _pipelines.get(run_id)
    if pipeline is None:
        return jsonify({"error": "Not found"}), 404
    pipeline.abort()
    log.info("Cancel requested: id=%s", run_id)
    return jsonify({"run_id": run_id, "cancelled": True})


@app.post("/api/runs/<run_id>/tasks/<task_id>/retry")
def api_retry_task(run_id: str, task_id: str):
    pipeline = _claim(run_id)
    task = next((t for t in pipeline.tasks if t.id == task_id), None)
    if task is None or task.status != TaskStatus.FAILED:
        _release(run_id)
        raise ValidationError("Only failed images can be retried.")

    def job() -> Dict:
        task = pipeline.retry_task(task_id)
        result = pipeline.snapshot()
        result.update({"status": "complete" if pipeline.anchor else "failed", "retried": task.to_dict()})
        return result

    _start_job(run_id, pipeline, job, "Retry")
    return jsonify({"run_id": run_id, "task_id": task_id})


@app.patch("/api/runs/<run_id>/tasks/<task_id>")
def api_update_task(run_id: str, task_id: str):
    pipeline = _claim(run_id)
    try:
        body = request.json or {}
        task = pipeline.set_aspect_ratio(task_id, body.get("aspect_ratio") or "")
        db.save_artifacts(run_id, pipeline.snapshot())
    finally:
        _release(run_id)
    return jsonify(task.to_dict())


@app.post("/api/runs/<run_id>/packs")
def api_generate_pack(run_id: str):
    body = request.json or {}
    pack = _parse_enum(PackType, body.get("pack"), None)
    if pack is None:
        raise ValidationError("pack is required")
    pipeline = _claim(run_id)
    _start_job(run_id, pipeline, lambda: pipeline.generate_pack(pack), f"{pack.value.title()} pack")
    return jsonify({"run_id": run_id, "pack": pack.value})


# ---------------------------------------------------------------------------
# Routes — History
# ---------------------------------------------------------------------------

@app.get("/api/history")
def api_list_history():
    limit = request.args.get("limit", default=100, type=int)
    return jsonify(db.list_history(limit=limit))


@app.get("/api/history/<history_id>")
def api_get_history(history_id: str):
    item = db.get_history(history_id)
    if not item:
        return jsonify({"error": "Not found"}), 404
    return jsonify(item)


@app.delete("/api/history/<history_id>")
def api_delete_history(history_id: str):
    if not db.delete_history(history_id):
        return jsonify({"error": "Not found"}), 404
    return jsonify({"deleted": history_id})


# ---------------------------------------------------------------------------
# Routes — Edit & upscale
# ---------------------------------------------------------------------------

def _edit_service() -> EditService:
    return EditService()


@app.post("/api/edit")
def api_edit():
    body = request.json or {}
    url = _edit_service().edit_image(EditRequest.from_dict(body))
    history_id = body.get("history_id")
    if history_id:
        try:
            db.append_edit(history_id, body.get("prompt") or "", url)
        except Exception as exc:
            log.warning("Edit history update failed for %s: %s", history_id, exc)
    return jsonify({"url": url})


@app.post("/api/edit/bulk")
def api_edit_bulk():
    body = request.json or {}
    reqs = [EditRequest.from_dict(r) for r in body.get("requests") or []]
    if not reqs:
        raise ValidationError("requests must be a non-empty list")
    service = _edit_service()
    if body.get("parallel"):
        bulk = service.edit_many_parallel(reqs)
    else:
        bulk = service.edit_many(reqs)
    return jsonify(bulk.to_dict())


@app.post("/api/upscale")
def api_upscale():
    body = request.json or {}
    scale = body.get("scale", 2)
    try:
        scale = int(scale)
    except (TypeError, ValueError):
        raise ValidationError("Scale must be 2x or 4x.")
    url = _edit_service().upscale_image(
        body.get("image_url") or "", scale, body.get("output_format") or "png",
    )
    return jsonify({"url": url})


# ---------------------------------------------------------------------------
# Routes — Credential-injecting proxy
# ---------------------------------------------------------------------------

@app.route("/api/replicate/<path:path>", methods=["GET", "POST"])
def api_replicate_proxy(path: str):
    token = os.environ.get("REPLICATE_API_TOKEN")
    if not token:
        return jsonify({"error": "REPLICATE_API_TOKEN is not configured"}), 500

    headers = {k: v for k, v in request.headers.items() if k.lower() not in _PROXY_HOP_HEADERS}
    headers["Authorization"] = f"Bearer {token}"
    try:
        upstream = requests.request(
            request.method,
            f"{REPLICATE_API_BASE}/{path}",
            params=request.args,
            data=request.get_data() if request.method == "POST" else None,
            headers=headers,
            timeout=60,
        )
    except requests.RequestException as exc:
        log.error("Proxy request to %s failed: %s", path, exc)
        return jsonify({"error": "Image service unreachable", "kind": "transport", "retryable": True}), 502

    return Response(
        upstream.content,
        status=upstream.status_code,
        content_type=upstream.headers.get("Content-Type", "application/json"),
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    print(f"\n  AI Photoshoot → http://localhost:{port}\n")
    app.run(host="0.0.0.0", port=port, debug=False, threaded=True)
