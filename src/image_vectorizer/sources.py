# Image Vectorizer Service - image embedding service
# Copyright (C) 2024-2026 Image Vectorizer Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from .errors import InvalidInputError

_DATA_URL_PREFIX = re.compile(r"^data:(?P<mime>[^;,]*)(?:;[^,]*)?;base64,", re.IGNORECASE)


@dataclass(frozen=True)
class RemoteURL:
    url: str


@dataclass(frozen=True)
class InlineData:
    data: bytes
    mime: Optional[str] = None


ImageSource = Union[RemoteURL, InlineData]


def split_data_url(image_base64: str) -> Tuple[Optional[str], str]:
    """Return (declared mime, payload); the prefix is optional."""
    text = image_base64.strip()
    match = _DATA_URL_PREFIX.match(text)
    if match is None:
        return None, text
    return (match.group("mime") or None), text[match.end():]


def decode_base64_image(image_base64: str, max_bytes: Optional[int] = None) -> InlineData:
    mime, payload = split_data_url(image_base64)
    # Clients commonly wrap long payloads; whitespace is never significant in base64.
    payload = "".join(payload.split())
    # Unpadded payloads are common; restore the padding b64decode requires.
    payload += "=" * (-len(payload) % 4)
    try:
        # validate=True rejects non-base64 characters instead of silently ignoring them.
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidInputError("Invalid base64 image payload") from exc

    if not data:
        raise InvalidInputError("Empty image payload")
    if max_bytes is not None and len(data) > max_bytes:
        raise InvalidInputError("Image payload exceeds maximum size")
    return InlineData(data=data, mime=mime)


def source_from_request(
    image_url: Optional[str],
    image_base64: Optional[str],
    max_bytes: Optional[int] = None,
) -> ImageSource:
    has_url = bool(image_url and image_url.strip())
    has_base64 = bool(image_base64 and image_base64.strip())

    if not has_url and not has_base64:
        raise InvalidInputError("image_url or image_base64 is required")
    if has_url and has_base64:
        raise InvalidInputError("Provide only one of image_url or image_base64")

    if has_base64:
        return decode_base64_image(image_base64, max_bytes=max_bytes)  # type: ignore[arg-type]
    return RemoteURL(url=image_url.strip())  # type: ignore[union-attr]
