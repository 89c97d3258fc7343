"""Canonical keys for rule and pattern matching.

Bank descriptions carry noise that changes between otherwise identical
transactions: transfer-type prefixes (PIX, TED), document numbers, dates,
accents and punctuation. canonical_key() strips all of it so that
"PIX TRANSF 12/01 Padaria São João" and "pix padaria sao joao" collide.
"""

from __future__ import annotations

import re
import unicodedata

STOPWORDS = frozenset({
    # banking noise
    "pix", "ted", "doc", "tev", "transf", "deb", "cred", "pag", "rec",
    "ref", "nr", "num", "nf", "cp", "dp",
    # articles and prepositions
    "de", "para", "em", "do", "da", "dos", "das", "o", "a", "os", "as",
    "e", "ou", "que", "com", "por", "no", "na", "nos", "nas",
    "um", "uma", "uns", "umas",
})

_DIGITS = re.compile(r"\d+")
_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_SPACES = re.compile(r"\s+")


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def canonical_key(description: str | None) -> str:
    """Normalize a description: lower-case, no accents, digits, punctuation or stopwords."""
    if not description:
        return ""
    text = strip_accents(description.lower())
    text = _DIGITS.sub(" ", text)
    text = _NON_ALNUM.sub(" ", text)
    words = [w for w in _SPACES.split(text) if w and w not in STOPWORDS]
    return " ".join(words)
