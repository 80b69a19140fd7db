# Image Vectorizer Service - image embedding service
# Copyright (C) 2024-2026 Image Vectorizer Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

__version__ = "1.0.0"
