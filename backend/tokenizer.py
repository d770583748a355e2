"""Text normalisation and the default word tokenizer."""

from __future__ import annotations

import re
import unicodedata
from typing import List

_WORD_RE = re.compile(r"[\w'-]+")
_WHITESPACE_RE = re.compile(r"[ \t\r\f\v]+")

MIN_TOKEN_LENGTH = 2


def normalize_text(text: str) -> str:
    """NFKC-normalise and collapse runs of horizontal whitespace."""
    if not text:
        return ""
    text = unicodedata.normalize("NFKC", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


class Tokenizer:
    """Lower-cased word tokens in reading order; tokens under two chars are dropped."""

    def __init__(self, min_length: int = MIN_TOKEN_LENGTH):
        self.min_length = min_length

    def tokenize(self, text: str) -> List[str]:
        if not text:
            return []
        words = _WORD_RE.findall(normalize_text(text).lower())
        return [w.strip("'-") for w in words if len(w.strip("'-")) >= self.min_length]

    __call__ = tokenize
