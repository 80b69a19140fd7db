# Image Vectorizer Service - image embedding service
# Copyright (C) 2024-2026 Image Vectorizer Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

import uvicorn

from .config import Settings


def main() -> None:
    settings = Settings()
    # One worker process: the admission slot and the model are per process.
    uvicorn.run(
        "image_vectorizer.main:app",
        host=settings.host,
        port=settings.port,
        workers=1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
