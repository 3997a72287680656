"""
Slug helper shared by tags and actions.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Optional

_SEPARATORS = re.compile(r"[\s_-]+")


def slugify(value: str, locale: Optional[str] = None) -> str:
    """Lower-case, strip accents, keep letters/numbers and collapse separators to '-'.

    ``locale`` is accepted for Turkish-style casing; only "tr"/"az" change
    behaviour (dotted/dotless i).
    """
    if locale and locale.split("-")[0].lower() in {"tr", "az"}:
        value = value.replace("I", "ı").replace("İ", "i")
    lowered = value.lower()
    decomposed = unicodedata.normalize("NFD", lowered)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    kept = "".join(
        ch for ch in stripped
        if ch.isalnum() or ch.isspace() or ch in {"-", "_"}
    )
    return _SEPARATORS.sub("-", kept).strip("-")
