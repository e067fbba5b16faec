"""Conversion between raw image bytes, ImageInput (base64 + MIME) and data URLs."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from pathlib import Path
from typing import Optional, Tuple

import requests

from errors import TransportError, ValidationError
from models import ImageInput

log = logging.getLogger(__name__)

ALLOWED_IMAGE_MIME_TYPES = frozenset({"image/png", "image/jpeg", "image/webp", "image/gif"})
MAX_UPLOAD_SIZE_BYTES = 4 * 1024 * 1024  # 4 MB

IMAGE_MIME_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "image/x-jpeg": "image/jpeg",
    "image/jfif": "image/jpeg",
    "image/x-png": "image/png",
    "image/apng": "image/png",
    "image/x-webp": "image/webp",
}

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[^;,]*)(?:;[^,]*)?;base64,(?P<data>.*)$", re.DOTALL)


def normalize_mime_type(claimed: Optional[str]) -> str:
    mime = (claimed or "").strip().strip("\"'")
    if ";" in mime:
        mime = mime.split(";", 1)[0]
    mime = mime.strip().lower()
    return IMAGE_MIME_ALIASES.get(mime, mime)


def sniff_mime_type(content: bytes) -> Optional[str]:
    """Best-effort MIME detection from magic bytes."""
    if content.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if content.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if content[:4] == b"RIFF" and content[8:12] == b"WEBP":
        return "image/webp"
    if content[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return None


def encode_image(content: bytes, claimed_mime_type: Optional[str] = None) -> ImageInput:
    """Encode raw image bytes into an ImageInput.

    The sniffed type wins over the claimed one; a claim is only used when the
    bytes carry no recognisable signature.
    """
    if not content:
        raise ValidationError("Image is empty.")
    if len(content) > MAX_UPLOAD_SIZE_BYTES:
        raise ValidationError(
            f"Image exceeds {MAX_UPLOAD_SIZE_BYTES // (1024 * 1024)}MB."
        )
    mime = sniff_mime_type(content) or normalize_mime_type(claimed_mime_type)
    if mime not in ALLOWED_IMAGE_MIME_TYPES:
        raise ValidationError(f"Unsupported image type: {claimed_mime_type or 'unknown'}")
    return ImageInput(base64=base64.b64encode(content).decode("ascii"), mime_type=mime)


def encode_file(path: str | Path) -> ImageInput:
    p = Path(path)
    ext_mime = {
        ".png": "image/png",
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".webp": "image/webp",
        ".gif": "image/gif",
    }.get(p.suffix.lower())
    return encode_image(p.read_bytes(), ext_mime)


def decode_image(image: ImageInput) -> Tuple[bytes, str]:
    try:
        return base64.b64decode(image.base64, validate=True), image.mime_type
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"Image data is not valid base64: {exc}") from exc


def from_data_url(data_url: str) -> ImageInput:
    m = _DATA_URL_RE.match(data_url.strip())
    if not m:
        raise ValidationError("Not a base64 data URL.")
    mime = normalize_mime_type(m.group("mime")) or "image/jpeg"
    return ImageInput(base64=m.group("data"), mime_type=mime)


def fetch_image(url: str, timeout: int = 90) -> ImageInput:
    """Turn a generated image reference into an ImageInput for the text model.

    Data URLs are unpacked directly; http(s) URLs are downloaded.
    """
    if url.startswith("data:"):
        return from_data_url(url)
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as exc:
        log.warning("Image download failed: %s", exc)
        raise TransportError(f"Failed to fetch generated image: {exc}") from exc
    content = resp.content
    mime = sniff_mime_type(content) or normalize_mime_type(resp.headers.get("Content-Type")) or "image/jpeg"
    return ImageInput(base64=base64.b64encode(content).decode("ascii"), mime_type=mime)


def download_to(url: str, dest: Path, timeout: int = 90) -> Optional[str]:
    """Save an image URL locally; returns the path or None on failure."""
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        if url.startswith("data:"):
            content, _ = decode_image(from_data_url(url))
            dest.write_bytes(content)
            return str(dest)
        resp = requests.get(url, timeout=timeout, stream=True)
        resp.raise_for_status()
        with open(dest, "wb") as fh:
            for chunk in resp.iter_content(chunk_size=65536):
                fh.write(chunk)
        return str(dest)
    except (requests.RequestException, OSError, ValidationError) as exc:
        log.warning("Could not save %s: %s", dest.name, exc)
        return None
