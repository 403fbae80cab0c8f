from __future__ import annotations

import re


ABBREVIATIONS = {
    "hist": "history",
    "bio": "biology",
    "chem": "chemistry",
    "phys": "physics",
    "math": "mathematics",
    "eng": "english",
    "sci": "science",
    "comp": "computer",
    "cs": "computer science",
    "psych": "psychology",
    "econ": "economics",
    "phil": "philosophy",
    "geo": "geography",
    "soc": "sociology",
    "anthro": "anthropology",
    "calc": "calculus",
    "stats": "statistics",
    "comm": "communications",
}

NON_ALNUM_PATTERN = re.compile(r"[^a-z0-9]")


def normalize_title(title: str) -> str:
    """Canonical comparison key for a task title.

    "HIST 101" and "history 101" share a key, "HIST 111" does not. Course
    numbers pass through untouched. The key is never shown to users.
    """
    words: list[str] = []
    for token in str(title or "").lower().split():
        cleaned = NON_ALNUM_PATTERN.sub("", token)
        if not cleaned:
            continue
        words.append(ABBREVIATIONS.get(cleaned, cleaned))
    return " ".join(words)
