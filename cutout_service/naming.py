"""Suggested download names for cutouts."""

from __future__ import annotations

import re
from typing import Optional

DEFAULT_STEM = "bg-remover"

_EXTENSION_RE = re.compile(r"\.[^.]+$")
_WHITESPACE_RE = re.compile(r"\s+")


def download_file_name(file_name: Optional[str], extension: str = "png") -> str:
    """
    Derive `<base-name>-no-bg.<ext>` from an upload name.

    The base name is stripped of its extension, trimmed, lowercased and has
    whitespace runs collapsed into single hyphens. An empty base name
    falls back to `DEFAULT_STEM`.
    """
    stem = _EXTENSION_RE.sub("", file_name or "")
    stem = _WHITESPACE_RE.sub("-", stem.strip()).lower() or DEFAULT_STEM
    return f"{stem}-no-bg.{extension}"
