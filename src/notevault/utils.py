"""Utility functions for Notevault."""
from typing import Iterable, List


def sanitize_filename(text: str, fallback: str = "untitled") -> str:
    """Turn a note title into a lower-case file name stem.

    Every character that is not an ASCII letter or digit becomes ``_``.

    Examples:
        "Groceries" -> "groceries"
        "Trip: Rome 2024" -> "trip__rome_2024"
        "" -> "untitled"
    """
    if not text:
        return fallback
    return "".join(c if c.isascii() and c.isalnum() else "_" for c in text.lower())


def unique_filenames(stems: Iterable[str], suffix: str = ".md") -> List[str]:
    """Append ``_2``, ``_3``... to repeated stems so every name is distinct.

    Example:
        ["a", "a", "b"] -> ["a.md", "a_2.md", "b.md"]
    """
    seen = set()
    names = []
    for stem in stems:
        candidate = f"{stem}{suffix}"
        counter = 2
        while candidate in seen:
            candidate = f"{stem}_{counter}{suffix}"
            counter += 1
        seen.add(candidate)
        names.append(candidate)
    return names
