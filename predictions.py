"""Polling client for the image service's asynchronous prediction API.

A prediction moves ``starting -> processing -> succeeded | failed | canceled``.
The client submits a job, then polls its ``urls.get`` endpoint at a fixed
interval until a terminal status or ``max_attempts`` polls. HTTP 429 while
polling triggers a longer back-off and does not consume an attempt.

The client can talk to the image service directly (server side, with a token)
or to the ``/api/replicate`` proxy in ``app.py``, which injects the token so
the caller never holds it.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import requests

from errors import (
    AuthError,
    PredictionFailed,
    QuotaError,
    RemoteTimeout,
    SafetyRejection,
    SchemaError,
    TransportError,
    UnexpectedOutputFormat,
    ValidationError,
)

log = logging.getLogger(__name__)

REPLICATE_API_BASE = "https://api.replicate.com/v1"

POLL_INTERVAL_S = 3.0
MAX_POLL_ATTEMPTS = 100          # 100 x 3 s = 5 minutes
MAX_RATE_LIMIT_RETRIES = 20

# Curated image models that accept reference images as conditioning input
IMAGE_MODELS: List[Dict] = [
    {
        "id": "flux-kontext-apps/multi-image-list",
        "name": "FLUX Kontext Multi-Image ★ Recommended",
        "description": "Fuses several reference images into one scene. Best subject consistency.",
        "image_param": "input_images",
    },
    {
        "id": "google/nano-banana",
        "name": "Google Nano Banana (Gemini 2.5)",
        "description": "Gemini 2.5 image model. Generation and editing from reference images.",
        "image_param": "image_input",
    },
    {
        "id": "google/nano-banana-pro",
        "name": "Google Nano Banana Pro",
        "description": "Premium Gemini image model. Highest fidelity to reference images.",
        "image_param": "image_input",
    },
    {
        "id": "bytedance/seedream-4",
        "name": "ByteDance Seedream 4",
        "description": "High-resolution output with multi-reference support.",
        "image_param": "image_input",
    },
]

DEFAULT_IMAGE_MODEL = "flux-kontext-apps/multi-image-list"


def build_prediction_input(
    model: str,
    prompt: str,
    aspect_ratio: str,
    input_images: List[str],
    safety_tolerance: int = 2,
) -> Dict[str, Any]:
    """Shape a generation request for the given model family.

    ``input_images`` are https URLs or data URLs, passed through untouched.
    """
    # Google nano-banana family / Seedream
    if "nano-banana" in model or "seedream" in model:
        payload: Dict[str, Any] = {
            "prompt": prompt,
            "aspect_ratio": aspect_ratio,
            "output_format": "png",
        }
        if input_images:
            payload["image_input"] = list(input_images)
        return payload

    # FLUX Kontext multi-image (default)
    payload = {
        "prompt": prompt,
        "aspect_ratio": aspect_ratio,
        "output_format": "png",
        "safety_tolerance": safety_tolerance,
    }
    if input_images:
        payload["input_images"] = list(input_images)
    return payload


class PredictionStatus(str, Enum):
    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def terminal(self) -> bool:
        return self in (PredictionStatus.SUCCEEDED, PredictionStatus.FAILED, PredictionStatus.CANCELED)


def extract_output_url(output: Any) -> str:
    """Accept either a URL string or a list whose first element is the URL."""
    candidate = output[0] if isinstance(output, list) and output else output
    if isinstance(candidate, str) and candidate.strip():
        return candidate.strip()
    raise UnexpectedOutputFormat("Prediction succeeded but the output format was unexpected.")


def _is_safety_message(message: str) -> bool:
    lowered = message.lower()
    return "nsfw" in lowered or "sensitive" in lowered or "safety" in lowered


class PredictionClient:
    """Submit-and-poll client for one image service endpoint."""

    def __init__(
        self,
        base_url: str = REPLICATE_API_BASE,
        api_token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        poll_interval: float = POLL_INTERVAL_S,
        max_attempts: int = MAX_POLL_ATTEMPTS,
        rate_limit_backoff: Optional[float] = None,
        max_rate_limit_retries: int = MAX_RATE_LIMIT_RETRIES,
        request_timeout: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        backoff = poll_interval * 2 if rate_limit_backoff is None else rate_limit_backoff
        if backoff <= poll_interval:
            raise ValueError("rate_limit_backoff must be longer than poll_interval")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.rate_limit_backoff = backoff
        self.max_rate_limit_retries = max_rate_limit_retries
        self.request_timeout = request_timeout
        self._sleep = sleep
        self._session = session or requests.Session()
        if api_token:
            self._session.headers["Authorization"] = f"Bearer {api_token}"
        self._versions: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            return self._session.request(method, url, timeout=self.request_timeout, **kwargs)
        except requests.RequestException as exc:
            raise TransportError(f"Image service unreachable: {exc}") from exc

    @staticmethod
    def _raise_for_status(resp: requests.Response, action: str) -> None:
        if resp.ok:
            return
        body = (resp.text or "")[:300]
        code = resp.status_code
        if code in (401, 403):
            raise AuthError("Image service token is invalid or expired. Check REPLICATE_API_TOKEN.")
        if code == 402:
            raise QuotaError("Image service account has insufficient credits.")
        if code == 429:
            raise QuotaError(f"Image service rate limit hit while trying to {action}.")
        if code == 422:
            if _is_safety_message(body):
                raise SafetyRejection("The image request was blocked by the safety filter.")
            raise ValidationError(f"Image service rejected the input: {body}")
        raise TransportError(f"Failed to {action}: {code} {body}")

    @staticmethod
    def _json(resp: requests.Response, action: str) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as exc:
            raise SchemaError(f"Image service returned a non-JSON body while trying to {action}.") from exc
        if not isinstance(data, dict):
            raise SchemaError(f"Image service returned an unexpected body while trying to {action}.")
        return data

    def _local_url(self, url: str) -> str:
        """Point upstream URLs at our base (e.g. the credential proxy)."""
        if self.base_url != REPLICATE_API_BASE and url.startswith(REPLICATE_API_BASE):
            return self.base_url + url[len(REPLICATE_API_BASE):]
        return url

    # ------------------------------------------------------------------
    # Model version
    # ------------------------------------------------------------------

    def resolve_version(self, model: str) -> str:
        """Return the version id for ``owner/name`` or ``owner/name:version``."""
        if ":" in model:
            return model.split(":", 1)[1]
        if model in self._versions:
            return self._versions[model]

        resp = self._request("GET", f"{self.base_url}/models/{model}")
        self._raise_for_status(resp, f"fetch model info for {model}")
        data = self._json(resp, "fetch model info")
        versions = data.get("versions")
        version_id = (
            (data.get("default_version") or {}).get("id")
            or (data.get("latest_version") or {}).get("id")
            or (versions[0].get("id") if isinstance(versions, list) and versions else None)
        )
        if not version_id:
            raise SchemaError(f"Unable to determine default version for {model}.")
        self._versions[model] = version_id
        log.debug("Resolved %s -> %s", model, version_id)
        return version_id

    # ------------------------------------------------------------------
    # Submit + poll
    # ------------------------------------------------------------------

    def create_prediction(self, model: str, input: Dict[str, Any]) -> Dict[str, Any]:
        version = self.resolve_version(model)
        throttled = 0
        while True:
            resp = self._request(
                "POST",
                f"{self.base_url}/predictions",
                json={"version": version, "input": input},
            )
            if resp.status_code == 429 and throttled < self.max_rate_limit_retries:
                throttled += 1
                log.warning("Rate-limited creating prediction for %s; backing off", model)
                self._sleep(self.rate_limit_backoff)
                continue
            self._raise_for_status(resp, "create prediction")
            prediction = self._json(resp, "create prediction")
            log.info("Prediction created: id=%s model=%s", prediction.get("id"), model)
            return prediction

    def _poll_url(self, prediction: Dict[str, Any]) -> str:
        url = (prediction.get("urls") or {}).get("get")
        if url:
            return self._local_url(url)
        if prediction.get("id"):
            return f"{self.base_url}/predictions/{prediction['id']}"
        raise SchemaError("Prediction descriptor has no polling URL.")

    @staticmethod
    def _status(prediction: Dict[str, Any]) -> PredictionStatus:
        raw = prediction.get("status")
        try:
            return PredictionStatus(raw)
        except ValueError:
            raise SchemaError(f"Unknown prediction status: {raw!r}")

    @staticmethod
    def _resolve_terminal(prediction: Dict[str, Any], status: PredictionStatus) -> str:
        if status == PredictionStatus.SUCCEEDED:
            return extract_output_url(prediction.get("output"))
        if status == PredictionStatus.CANCELED:
            raise PredictionFailed("Prediction was canceled.")
        error = prediction.get("error")
        message = str(error) if error else "Unknown error"
        if _is_safety_message(message):
            raise SafetyRejection(f"Image generation blocked by the safety filter: {message}")
        raise PredictionFailed(f"Prediction failed: {message}")

    def await_prediction(self, prediction: Dict[str, Any]) -> str:
        status = self._status(prediction)
        if status.terminal:
            return self._resolve_terminal(prediction, status)

        poll_url = self._poll_url(prediction)
        attempts = 0
        throttled = 0
        t0 = time.time()
        while attempts < self.max_attempts:
            self._sleep(self.poll_interval)
            resp = self._request("GET", poll_url)
            if resp.status_code == 429:
                throttled += 1
                if throttled > self.max_rate_limit_retries:
                    raise RemoteTimeout("Image service kept rate-limiting status checks.")
                log.warning("Rate-limited while polling %s; retrying", prediction.get("id"))
                self._sleep(self.rate_limit_backoff)
                continue

            attempts += 1
            self._raise_for_status(resp, "poll prediction")
            polled = self._json(resp, "poll prediction")
            status = self._status(polled)
            log.debug("Poll #%d %s: %s", attempts, prediction.get("id"), status.value)
            if status.terminal:
                log.info(
                    "Prediction %s %s after %d polls  %.1fs",
                    prediction.get("id"), status.value, attempts, time.time() - t0,
                )
                return self._resolve_terminal(polled, status)

        raise RemoteTimeout(
            f"Prediction timed out after {self.max_attempts} polling attempts."
        )

    def submit_and_await(self, model: str, input: Dict[str, Any]) -> str:
        """Run one prediction to completion and return its output URL."""
        prediction = self.create_prediction(model, input)
        return self.await_prediction(prediction)
