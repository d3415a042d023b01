"""Text helpers for matching catalog labels and clinical codes."""

import unicodedata
from typing import Optional


def normalize_label(value: Optional[str]) -> str:
    """Case- and accent-insensitive form of a label ("Cirugía" == "cirugia")."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.casefold().split())


def normalize_code(value: Optional[str]) -> str:
    """Uppercase code without dots or spaces (CIE-10 "k35.8" -> "K358")."""
    if not value:
        return ""
    return value.replace(".", "").replace(" ", "").upper()
