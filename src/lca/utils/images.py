# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/utils/images.py
from __future__ import annotations

from typing import Tuple


def split_registry(image: str) -> Tuple[str, str]:
    """
    'quay.io/org/app:1' -> ('quay.io', 'org/app:1'); 'busybox' -> ('', 'busybox')

    The first path component is a registry only when it looks like a host.
    """
    first, sep, rest = image.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first, rest
    return "", image


def replace_image_registry(image: str, target_registry: str, source_registry: str) -> str:
    """Point *image* at *target_registry* when it is hosted on *source_registry*."""
    if not image.strip():
        raise ValueError("empty image reference")
    registry, rest = split_registry(image.strip())
    if source_registry and registry == source_registry:
        return f"{target_registry.rstrip('/')}/{rest}"
    return image.strip()
