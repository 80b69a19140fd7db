# Image Vectorizer Service - image embedding service
# Copyright (C) 2024-2026 Image Vectorizer Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Deterministic image preprocessing.

Every input image, whatever its size or aspect ratio, is reduced to the
central 70% of its width and height and then resized to 224x224 RGB. The
result is kept as raw pixels; any re-encoding for out-of-process backends is
lossless (PNG) so the embedding never depends on a codec round trip.
"""

import base64
import ipaddress
import io
import math
import socket
from contextlib import closing
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urljoin, urlparse

import numpy as np
import requests
from PIL import Image

from .config import Settings
from .errors import DecodeError, FetchError, InvalidInputError
from .logging_config import get_logger
from .sources import ImageSource, InlineData, RemoteURL

logger = get_logger(__name__)

CROP_FRACTION = 0.70
TARGET_SIZE = 224
RESAMPLE = Image.Resampling.BICUBIC
MAX_REDIRECTS = 3


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class CropBox:
    left: int
    top: int
    width: int
    height: int

    def as_pil_box(self) -> Tuple[int, int, int, int]:
        return (self.left, self.top, self.left + self.width, self.top + self.height)


def center_crop_box(width: int, height: int, fraction: float = CROP_FRACTION) -> CropBox:
    if width <= 0 or height <= 0:
        raise DecodeError("Image has no pixels")
    crop_w = max(1, _round_half_up(fraction * width))
    crop_h = max(1, _round_half_up(fraction * height))
    left = _round_half_up((width - crop_w) / 2)
    top = _round_half_up((height - crop_h) / 2)
    return CropBox(left=left, top=top, width=crop_w, height=crop_h)


@dataclass(frozen=True)
class NormalizedImage:
    pixels: np.ndarray
    crop: CropBox
    source_size: Tuple[int, int]

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self.pixels.shape)

    def to_pil(self) -> Image.Image:
        return Image.fromarray(self.pixels)

    def to_png(self) -> bytes:
        buf = io.BytesIO()
        self.to_pil().save(buf, format="PNG")
        return buf.getvalue()

    def to_data_url(self) -> str:
        return "data:image/png;base64," + base64.b64encode(self.to_png()).decode("ascii")


def normalize_pil(image: Image.Image) -> NormalizedImage:
    rgb = image.convert("RGB")
    box = center_crop_box(*rgb.size)
    resized = rgb.crop(box.as_pil_box()).resize((TARGET_SIZE, TARGET_SIZE), RESAMPLE)
    pixels = np.asarray(resized, dtype=np.uint8)
    return NormalizedImage(pixels=pixels, crop=box, source_size=rgb.size)


def blank_image() -> NormalizedImage:
    """A mid-grey normalized image, used to probe model output shapes."""
    pixels = np.full((TARGET_SIZE, TARGET_SIZE, 3), 127, dtype=np.uint8)
    return NormalizedImage(
        pixels=pixels,
        crop=CropBox(left=0, top=0, width=TARGET_SIZE, height=TARGET_SIZE),
        source_size=(TARGET_SIZE, TARGET_SIZE),
    )


class ImageNormalizer:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()

    def normalize(self, source: ImageSource) -> NormalizedImage:
        data = self._read_source(source)
        image = self._decode(data)
        normalized = normalize_pil(image)
        logger.debug(
            f"Normalized {image.size[0]}x{image.size[1]} image "
            f"(crop {normalized.crop.width}x{normalized.crop.height} at "
            f"{normalized.crop.left},{normalized.crop.top})"
        )
        return normalized

    def _read_source(self, source: ImageSource) -> bytes:
        if isinstance(source, InlineData):
            return source.data
        if isinstance(source, RemoteURL):
            return self._fetch_image_bytes(source.url)
        raise InvalidInputError("image_url or image_base64 is required")

    def _decode(self, data: bytes) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except Exception as exc:
            raise DecodeError("Unable to decode image bytes") from exc
        return image

    def _is_public_ip(self, ip_str: str) -> bool:
        ip = ipaddress.ip_address(ip_str)
        return not (
            ip.is_private
            or ip.is_loopback
            or ip.is_link_local
            or ip.is_multicast
            or ip.is_reserved
            or ip.is_unspecified
        )

    def _validate_remote_url(self, image_url: str) -> None:
        parsed = urlparse(image_url)
        if parsed.scheme not in {"http", "https"}:
            raise InvalidInputError("Only http(s) image URLs are supported")
        if not parsed.hostname:
            raise InvalidInputError("Invalid image URL")

        host = parsed.hostname.lower()

        if self.settings.allowed_remote_hosts:
            allowed = {h.strip().lower() for h in self.settings.allowed_remote_hosts if h.strip()}
            if host not in allowed:
                raise InvalidInputError("Remote image host is not allowlisted")

        if not self.settings.block_private_hosts:
            return

        if host == "localhost":
            raise InvalidInputError("Remote image host resolves to a private address")

        try:
            ipaddress.ip_address(host)
        except ValueError:
            pass
        else:
            if not self._is_public_ip(host):
                raise InvalidInputError("Remote image host resolves to a private address")
            return

        try:
            infos = socket.getaddrinfo(host, parsed.port or 443, type=socket.SOCK_STREAM)
        except socket.gaierror as exc:
            raise FetchError("Unable to resolve remote image host") from exc

        for info in infos:
            ip_str = info[4][0]
            if not self._is_public_ip(str(ip_str)):
                raise InvalidInputError("Remote image host resolves to a private address")

    def _open_remote(self, image_url: str) -> requests.Response:
        # Redirects are followed by hand so every hop passes the URL policy.
        url = image_url
        for _ in range(MAX_REDIRECTS + 1):
            self._validate_remote_url(url)
            try:
                response = requests.get(
                    url,
                    timeout=self.settings.request_timeout_seconds,
                    stream=True,
                    allow_redirects=False,
                )
            except requests.RequestException as exc:
                raise FetchError(f"Unable to fetch image: {exc}") from exc

            if not response.is_redirect:
                return response

            location = response.headers.get("location")
            response.close()
            if not location:
                raise FetchError("Image URL redirect has no location")
            url = urljoin(url, location)
            logger.debug(f"Following image redirect to {url}")

        raise FetchError(f"Image URL exceeded {MAX_REDIRECTS} redirects")

    def _fetch_image_bytes(self, image_url: str) -> bytes:
        if not self.settings.allow_remote_urls:
            raise InvalidInputError("Remote image URLs are disabled")

        response = self._open_remote(image_url)

        with closing(response):
            try:
                response.raise_for_status()
            except requests.HTTPError as exc:
                raise FetchError(f"Image URL returned HTTP {response.status_code}") from exc

            content_length = response.headers.get("content-length")
            if content_length:
                try:
                    declared = int(content_length)
                except ValueError as exc:
                    raise FetchError(f"Image URL sent invalid Content-Length: {content_length!r}") from exc
                if declared > self.settings.max_image_bytes:
                    raise InvalidInputError("Image payload exceeds maximum size")

            buf = io.BytesIO()
            total = 0
            try:
                for chunk in response.iter_content(chunk_size=8192):
                    if not chunk:
                        continue
                    total += len(chunk)
                    if total > self.settings.max_image_bytes:
                        raise InvalidInputError("Image payload exceeds maximum size")
                    buf.write(chunk)
            except requests.RequestException as exc:
                raise FetchError(f"Unable to fetch image: {exc}") from exc

            return buf.getvalue()
