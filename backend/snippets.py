"""Search-result snippets with ``<mark>`` highlighting."""

from __future__ import annotations

import re
from typing import Callable, List, Optional

from tokenizer import Tokenizer, normalize_text

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[。！？\n])|(?=\n)")
_LAST_BREAK_RE = re.compile(r"[。！？\n][^。！？\n]*$")
_NEXT_BREAK_RE = re.compile(r"[。！？\n]")
_MARKED_RE = re.compile(r"(<mark>.*?</mark>)", re.DOTALL)

MAX_SENTENCE_LENGTH = 100
CONTEXT_BEFORE = 40
CONTEXT_AFTER = 60
BOUNDARY_SLACK = 20


def split_sentences(text: str) -> List[str]:
    parts = (part.strip() for part in _SENTENCE_SPLIT_RE.split(text or ""))
    return [part for part in parts if part]


class SnippetBuilder:
    def __init__(self, tokenize: Optional[Callable[[str], List[str]]] = None):
        self.tokenize = tokenize or Tokenizer()

    def _query_tokens(self, query: str) -> List[str]:
        return [t for t in self.tokenize(query.lower()) if len(t) >= 2]

    def highlight(self, text: str, query: str) -> str:
        """Wrap each query token in ``<mark>``, one token at a time, in query order.

        Text already wrapped by an earlier token is left alone, so a later token
        never matches inside inserted markup.
        """
        result = text
        for token in self._query_tokens(query):
            pattern = re.compile(f"({re.escape(token)})", re.IGNORECASE)
            result = "".join(
                part if _MARKED_RE.fullmatch(part) else pattern.sub(r"<mark>\1</mark>", part)
                for part in _MARKED_RE.split(result)
            )
        return result

    def sentence_snippet(self, content: str, query: str) -> Optional[str]:
        """The first sentence containing the query (or else a query token).

        Returns None when nothing matches or the matching sentence is too long,
        so the caller falls back to a character window.
        """
        sentences = split_sentences(content)
        q = query.lower()

        for sentence in sentences:
            if q in sentence.lower():
                return sentence if len(sentence) <= MAX_SENTENCE_LENGTH else None

        tokens = self._query_tokens(query)
        for sentence in sentences:
            lower = sentence.lower()
            if any(token in lower for token in tokens):
                return sentence if len(sentence) <= MAX_SENTENCE_LENGTH else None
        return None

    def char_snippet(self, content: str, query: str) -> str:
        text = normalize_text(content)
        lower = text.lower()
        q = query.lower()

        match = lower.find(q) if q else -1
        if match == -1:
            for token in self._query_tokens(query):
                match = lower.find(token)
                if match != -1:
                    break

        if match == -1:
            head = text[: CONTEXT_BEFORE + CONTEXT_AFTER]
            return head + ("..." if len(text) > len(head) else "")

        start = max(0, match - CONTEXT_BEFORE)
        end = min(len(text), match + len(query) + CONTEXT_AFTER)

        if start > 0:
            window_start = max(0, start - BOUNDARY_SLACK)
            found = _LAST_BREAK_RE.search(text[window_start:start])
            if found:
                start = window_start + found.start() + 1

        if end < len(text):
            found = _NEXT_BREAK_RE.search(text[end : min(len(text), end + BOUNDARY_SLACK)])
            if found:
                end = end + found.start() + 1

        prefix = "..." if start > 0 else ""
        suffix = "..." if end < len(text) else ""
        return prefix + text[start:end] + suffix

    def build(self, content: str, query: str) -> str:
        snippet = self.sentence_snippet(content, query)
        if snippet is None:
            snippet = self.char_snippet(content, query)
        return self.highlight(snippet, query)
