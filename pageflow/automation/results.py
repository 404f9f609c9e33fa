from __future__ import annotations

import base64
import binascii
import io
import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote_to_bytes

import httpx
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

IMAGE_PREFIXES = ("data:image/", "http:", "https:")


@dataclass(slots=True)
class ResultCollector:
    """Extraction output in step order. Only handed out as a snapshot."""

    items: list[Any] = field(default_factory=list)

    def push(self, value: Any) -> None:
        self.items.append(value)

    def snapshot(self) -> list[Any]:
        return list(self.items)

    def __len__(self) -> int:
        return len(self.items)


def classify_result(value: Any, client: httpx.Client) -> Any:
    """Turn an extracted image address into an image; leave anything else as is."""
    if not isinstance(value, str) or not value.startswith(IMAGE_PREFIXES):
        return value
    try:
        data = fetch_bytes(value, client)
    except (httpx.HTTPError, httpx.InvalidURL, binascii.Error, ValueError) as exc:
        logger.debug("Could not fetch %s: %s", value[:80], exc)
        return value
    image = decode_image(data)
    return image if image is not None else value


def fetch_bytes(url: str, client: httpx.Client) -> bytes:
    if url.startswith("data:"):
        header, _, body = url.partition(",")
        if header.endswith(";base64"):
            return base64.b64decode(body)
        return unquote_to_bytes(body)
    response = client.get(url)
    response.raise_for_status()
    return response.content


def decode_image(data: bytes) -> Image.Image | None:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError):
        return None
    return image
