"""Text + vision model client (OpenAI or Anthropic) used by the analysis and refinement stages."""

from __future__ import annotations

import json
import logging
import os
import re
import time
from typing import Any, List, Optional, Sequence, Union

from errors import (
    AuthError,
    MalformedResponseError,
    QuotaError,
    SafetyRejection,
    SchemaError,
    TransportError,
    ValidationError,
)
from models import ImageInput

log = logging.getLogger(__name__)

Part = Union[str, ImageInput]

DEFAULT_TEXT_MODELS = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-sonnet-4-6",
}

_FENCE_RE = re.compile(r"^```(\w*)?\s*\n?(.*?)\n?\s*```$", re.DOTALL)


def strip_code_fence(text: str) -> str:
    text = (text or "").strip()
    m = _FENCE_RE.match(text)
    if m:
        return m.group(2).strip()
    return text


def parse_json(text: str, expect: type = dict) -> Any:
    """Parse a model reply that should be a JSON object (or array).

    Optional triple-backtick fencing is removed first. If the reply has chatter
    around the JSON, the outermost braces/brackets are tried as a fallback.
    """
    text = strip_code_fence(text)
    open_ch, close_ch = ("[", "]") if expect is list else ("{", "}")
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        start = text.find(open_ch)
        end = text.rfind(close_ch)
        if start != -1 and end > start:
            try:
                return json.loads(text[start : end + 1])
            except json.JSONDecodeError:
                pass
        raise MalformedResponseError(
            f"The model response is not valid JSON ({exc.msg} at position {exc.pos})."
        ) from exc


class TextModelClient:
    """Sends instructional text plus inline images and returns the raw text reply."""

    def __init__(
        self,
        provider: str = "openai",
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[Any] = None,
        max_tokens: int = 4096,
    ) -> None:
        if provider not in DEFAULT_TEXT_MODELS:
            raise ValidationError(f"Unknown text provider: {provider}")
        self.provider = provider
        self.model = model or DEFAULT_TEXT_MODELS[provider]
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._client = client

    # ------------------------------------------------------------------
    # SDK clients
    # ------------------------------------------------------------------

    def _sdk(self) -> Any:
        if self._client is not None:
            return self._client
        if self.provider == "anthropic":
            import anthropic
            api_key = self._api_key or os.environ.get("ANTHROPIC_API_KEY", "")
            if not api_key:
                raise AuthError("ANTHROPIC_API_KEY not set")
            self._client = anthropic.Anthropic(api_key=api_key)
        else:
            from openai import OpenAI
            api_key = self._api_key or os.environ.get("OPENAI_API_KEY", "")
            if not api_key:
                raise AuthError("OPENAI_API_KEY not set")
            self._client = OpenAI(api_key=api_key)
        return self._client

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def generate(self, system: str, parts: Sequence[Part], json_object: bool = True) -> str:
        n_images = sum(1 for p in parts if isinstance(p, ImageInput))
        t0 = time.time()
        if self.provider == "anthropic":
            text = self._call_anthropic(system, parts)
        else:
            text = self._call_openai(system, parts, json_object)
        log.info(
            "%s call: model=%s  %d parts (%d images)  %.1fs",
            self.provider, self.model, len(parts), n_images, time.time() - t0,
        )
        return text

    # ------------------------------------------------------------------
    # OpenAI
    # ------------------------------------------------------------------

    @staticmethod
    def _openai_content(parts: Sequence[Part]) -> List[dict]:
        content: List[dict] = []
        for part in parts:
            if isinstance(part, ImageInput):
                content.append({"type": "image_url", "image_url": {"url": part.to_data_url()}})
            else:
                content.append({"type": "text", "text": part})
        return content

    def _call_openai(self, system: str, parts: Sequence[Part], json_object: bool) -> str:
        import openai

        kwargs: dict = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": self._openai_content(parts)},
            ],
        }
        if json_object:
            kwargs["response_format"] = {"type": "json_object"}

        client = self._sdk()
        try:
            resp = client.chat.completions.create(**kwargs)
        except openai.AuthenticationError:
            raise AuthError("OpenAI API key is invalid or expired.")
        except openai.PermissionDeniedError as exc:
            raise AuthError(f"OpenAI denied access to {self.model}: {exc}")
        except openai.RateLimitError as exc:
            msg = str(exc)
            if "insufficient_quota" in msg or "quota" in msg.lower():
                raise QuotaError(
                    "OpenAI account is out of credits. "
                    "Please add billing at platform.openai.com."
                )
            raise QuotaError(f"OpenAI rate limit: {exc}")
        except openai.BadRequestError as exc:
            msg = str(exc)
            if "content_policy" in msg or "content_filter" in msg or "safety" in msg.lower():
                raise SafetyRejection("Request was blocked by the OpenAI content policy.")
            raise TransportError(f"OpenAI rejected the request: {exc}")
        except openai.APIConnectionError as exc:
            raise TransportError(f"Could not reach OpenAI: {exc}")
        except openai.APIStatusError as exc:
            raise TransportError(f"OpenAI error {exc.status_code}: {exc}")

        if not resp.choices:
            raise SchemaError("OpenAI returned no choices for this request.")
        choice = resp.choices[0]
        if choice.finish_reason == "content_filter" or getattr(choice.message, "refusal", None):
            raise SafetyRejection("The model refused to analyze these images (safety policy).")
        return (choice.message.content or "").strip()

    # ------------------------------------------------------------------
    # Anthropic
    # ------------------------------------------------------------------

    @staticmethod
    def _anthropic_content(parts: Sequence[Part]) -> List[dict]:
        content: List[dict] = []
        for part in parts:
            if isinstance(part, ImageInput):
                content.append({
                    "type": "image",
                    "source": {"type": "base64", "media_type": part.mime_type, "data": part.base64},
                })
            else:
                content.append({"type": "text", "text": part})
        return content

    def _call_anthropic(self, system: str, parts: Sequence[Part]) -> str:
        import anthropic

        client = self._sdk()
        try:
            msg = client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=system,
                messages=[{"role": "user", "content": self._anthropic_content(parts)}],
            )
        except anthropic.AuthenticationError:
            raise AuthError("Anthropic API key is invalid or expired.")
        except anthropic.PermissionDeniedError as exc:
            raise AuthError(f"Anthropic denied access to {self.model}: {exc}")
        except anthropic.RateLimitError as exc:
            raise QuotaError(f"Anthropic rate limit: {exc}")
        except anthropic.BadRequestError as exc:
            msg_s = str(exc).lower()
            if "credit balance" in msg_s or "billing" in msg_s:
                raise QuotaError(
                    "Anthropic account is out of credits. "
                    "Please add billing at console.anthropic.com."
                )
            raise TransportError(f"Anthropic rejected the request: {exc}")
        except anthropic.APIConnectionError as exc:
            raise TransportError(f"Could not reach Anthropic: {exc}")
        except anthropic.APIStatusError as exc:
            raise TransportError(f"Anthropic error {exc.status_code}: {exc}")

        if msg.stop_reason == "refusal":
            raise SafetyRejection("The model refused to analyze these images (safety policy).")
        text = "".join(
            getattr(block, "text", "") for block in msg.content if getattr(block, "type", "") == "text"
        )
        return text.strip()
