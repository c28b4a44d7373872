"""Text folding used for search, marker detection and display ordering."""
import unicodedata
from typing import Optional, Tuple


def fold(value: Optional[str]) -> str:
    """Lower-case and strip diacritics ("Atención" -> "atencion")."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold()


def collation_key(value: Optional[str]) -> Tuple[str, str]:
    """Sort key approximating locale-aware ordering.

    Accents and case are ignored on the first level; the raw string breaks
    ties so the order stays total.
    """
    return fold(value), value or ""
