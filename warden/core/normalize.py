import unicodedata
from typing import Optional


def normalize(text: Optional[str]) -> str:
    """Canonical comparison key: case-folded, NFC, single-spaced.

    casefold() rather than lower() so that "STRASSE" and "straße" collide.
    """
    folded = (text or "").casefold()
    composed = unicodedata.normalize("NFC", folded)
    return " ".join(composed.split())
