"""Hybrid keyword (TF-IDF) + semantic search over notes."""

from __future__ import annotations

import math
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import structlog

from embedder import Embedder
from models import NoteRecord, SearchHit
from snippets import SnippetBuilder
from storage import NoteStorage
from tokenizer import Tokenizer, normalize_text
from vector_index import VectorIndex

logger = structlog.get_logger(__name__)

SECONDS_PER_DAY = 86400.0

FIELD_WEIGHTS = {"content": 1.0, "title": 3.0, "headings": 2.0}
SCORE_WEIGHTS = {
    "tfidf": 2.0,
    "structure": 1.5,
    "recency": 0.5,
    "length": 0.3,
    "metadata": 1.0,
}
SEMANTIC_CANDIDATES = 20
DEFAULT_KEYWORD_WEIGHT = 0.6
DEFAULT_SEMANTIC_WEIGHT = 0.4

Tokenize = Callable[[str], List[str]]


def _query_tokens(tokenize: Tokenize, text: str) -> List[str]:
    return [t for t in tokenize(text.lower()) if len(t) >= 2]


# ---------------------------------------------------------------------------
# IDF cache
# ---------------------------------------------------------------------------


class IDFCache:
    """Lazily built ``token -> ln(N / df)`` over note content.

    Callers invalidate it on any content-affecting mutation; the next read
    rebuilds from scratch. Two threads racing on first use may both rebuild,
    which is harmless since the result is the same.
    """

    def __init__(self, storage: NoteStorage, tokenize: Optional[Tokenize] = None):
        self.storage = storage
        self.tokenize = tokenize or Tokenizer()
        self._idf: Optional[Dict[str, float]] = None
        self.total_docs = 0
        self.last_built: Optional[float] = None

    def _build(self) -> Dict[str, float]:
        notes = self.storage.get_all()
        doc_freq: Dict[str, int] = {}
        for note in notes:
            for token in set(_query_tokens(self.tokenize, normalize_text(note.content))):
                doc_freq[token] = doc_freq.get(token, 0) + 1
        total = len(notes)
        idf = {token: math.log(total / df) for token, df in doc_freq.items()}
        self.total_docs = total
        self.last_built = time.time()
        logger.debug("idf_cache_built", documents=total, tokens=len(idf))
        return idf

    def get(self) -> Dict[str, float]:
        idf = self._idf
        if idf is None:
            idf = self._build()
            self._idf = idf
        return idf

    def invalidate(self) -> None:
        self._idf = None


# ---------------------------------------------------------------------------
# Lexical candidates
# ---------------------------------------------------------------------------


def matches_filters(note: NoteRecord, category: Optional[str], tags: Optional[List[str]]) -> bool:
    """Category must match exactly; every filter tag must appear inside the note's tags."""
    if category and note.category != category:
        return False
    if tags:
        joined = " ".join(note.tags).lower()
        if not all(tag.lower() in joined for tag in tags):
            return False
    return True


class InvertedIndexCandidates:
    """In-memory token postings over title, content, headings and tags.

    Falls back to a case-insensitive substring scan of title and content when
    no token matches (e.g. partial words).
    """

    def __init__(self, storage: NoteStorage, tokenize: Optional[Tokenize] = None):
        self.storage = storage
        self.tokenize = tokenize or Tokenizer()
        self._postings: Optional[Dict[str, Set[str]]] = None

    def _document_text(self, note: NoteRecord) -> str:
        return " ".join([note.title, note.content, " ".join(note.headings), " ".join(note.tags)])

    def rebuild(self) -> int:
        postings: Dict[str, Set[str]] = {}
        notes = self.storage.get_all()
        for note in notes:
            for token in set(_query_tokens(self.tokenize, normalize_text(self._document_text(note)))):
                postings.setdefault(token, set()).add(note.id)
        self._postings = postings
        logger.info("lexical_index_rebuilt", documents=len(notes), tokens=len(postings))
        return len(notes)

    def invalidate(self) -> None:
        self._postings = None

    def candidates(
        self,
        query: str,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> List[NoteRecord]:
        q = query.strip()
        if not q:
            return []
        if self._postings is None:
            self.rebuild()
        postings = self._postings or {}

        hits: Dict[str, int] = {}
        for token in _query_tokens(self.tokenize, q):
            for note_id in postings.get(token, ()):
                hits[note_id] = hits.get(note_id, 0) + 1

        records = self.storage.list_records()
        if hits:
            notes = [records[nid] for nid in hits if nid in records]
            notes.sort(key=lambda n: hits[n.id], reverse=True)
        else:
            needle = q.lower()
            notes = [
                n for n in records.values()
                if needle in n.title.lower() or needle in n.content.lower()
            ]
            notes.sort(key=lambda n: n.updated_at, reverse=True)

        return [n for n in notes if matches_filters(n, category, tags)]


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def tfidf_score(note: NoteRecord, tokens: Iterable[str], idf: Dict[str, float]) -> float:
    fields = {
        "content": normalize_text(note.content).lower(),
        "title": note.title.lower(),
        "headings": " ".join(note.headings).lower(),
    }
    score = 0.0
    for token in tokens:
        if len(token) < 2:
            continue
        token_idf = idf.get(token, 0.0)
        for field_name, text in fields.items():
            count = text.count(token)
            if count > 0:
                score += (1 + math.log(count)) * token_idf * FIELD_WEIGHTS[field_name]
    return score


def structure_score(note: NoteRecord, query: str) -> float:
    q = query.lower()
    title = note.title.lower()
    score = 0.0
    if title == q:
        score += 5
    elif q in title:
        score += 3

    for heading in note.headings:
        h = heading.lower()
        if h == q:
            score += 3
            break
        if q in h:
            score += 1.5
    return score


def recency_score(note: NoteRecord, now: Optional[float] = None) -> float:
    now = time.time() if now is None else now
    days = (now - note.updated_at) / SECONDS_PER_DAY
    if days <= 7:
        return 1.0
    if days <= 30:
        return 0.5
    if days <= 90:
        return 0.2
    return 0.0


def length_score(note: NoteRecord) -> float:
    length = len(note.content)
    if length < 100:
        return -1.0
    if length < 300:
        return -0.5
    if length < 1000:
        return 0.0
    return 0.5


def metadata_score(
    note: NoteRecord,
    query: str,
    category: Optional[str] = None,
    tags: Optional[List[str]] = None,
) -> float:
    q = query.lower()
    score = 0.0
    if note.category and q in note.category.lower():
        score += 2
    if category and note.category == category:
        score += 1

    for tag in note.tags:
        t = tag.lower()
        if t == q:
            score += 3
        elif t in q or q in t:
            score += 1

    if tags:
        note_tags = {t.lower() for t in note.tags}
        for filter_tag in tags:
            if filter_tag.lower() in note_tags:
                score += 0.5
    return score


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class HybridSearchEngine:
    """Keyword, semantic and merged search over the note store."""

    def __init__(
        self,
        storage: NoteStorage,
        index: VectorIndex,
        embedder: Embedder,
        candidates: Optional[InvertedIndexCandidates] = None,
        idf: Optional[IDFCache] = None,
        tokenize: Optional[Tokenize] = None,
        keyword_weight: float = DEFAULT_KEYWORD_WEIGHT,
        semantic_weight: float = DEFAULT_SEMANTIC_WEIGHT,
    ):
        self.storage = storage
        self.index = index
        self.embedder = embedder
        self.tokenize = tokenize or Tokenizer()
        self.candidates = candidates or InvertedIndexCandidates(storage, self.tokenize)
        self.idf = idf or IDFCache(storage, self.tokenize)
        self.snippets = SnippetBuilder(self.tokenize)
        self.keyword_weight = keyword_weight
        self.semantic_weight = semantic_weight

    def invalidate(self) -> None:
        """Drop the IDF cache and lexical postings after a note mutation."""
        self.idf.invalidate()
        self.candidates.invalidate()

    def reindex(self) -> Dict[str, int]:
        self.idf.invalidate()
        documents = self.candidates.rebuild()
        self.idf.get()
        return {"documents": documents, "tokens": len(self.idf.get())}

    def keyword_search(
        self,
        query: str,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
        now: Optional[float] = None,
    ) -> List[SearchHit]:
        notes = self.candidates.candidates(query, category, tags)
        if not notes:
            return []
        idf = self.idf.get()
        tokens = _query_tokens(self.tokenize, query)
        now = time.time() if now is None else now

        hits = []
        for note in notes:
            parts = {
                "tfidf": tfidf_score(note, tokens, idf),
                "structure": structure_score(note, query),
                "recency": recency_score(note, now),
                "length": length_score(note),
                "metadata": metadata_score(note, query, category, tags),
            }
            total = sum(parts[name] * weight for name, weight in SCORE_WEIGHTS.items())
            hits.append(
                SearchHit(
                    note=note,
                    score=round(total, 2),
                    snippet=self.snippets.build(note.content, query),
                    debug={name: round(value, 2) for name, value in parts.items()},
                )
            )
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits

    def semantic_search(
        self,
        query: str,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
        limit: int = SEMANTIC_CANDIDATES,
    ) -> List[SearchHit]:
        if not query.strip():
            return []
        vector = self.embedder.embed(query)
        matches = self.index.search(vector, limit)

        hits = []
        for note_id, similarity in matches:
            note = self.storage.find(note_id)
            if note is None:
                continue
            hits.append(
                SearchHit(
                    note=note,
                    score=round(similarity * 100, 2),
                    snippet=self.snippets.build(note.content, query),
                    debug={"similarity": round(similarity, 4), "mode": "semantic"},
                )
            )

        if category:
            hits = [h for h in hits if h.note.category == category]
        if tags:
            hits = [
                h for h in hits
                if all(any(tag.lower() in t.lower() for t in h.note.tags) for tag in tags)
            ]
        return hits

    def hybrid_search(
        self,
        query: str,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
        keyword_weight: Optional[float] = None,
        semantic_weight: Optional[float] = None,
    ) -> List[SearchHit]:
        wk = self.keyword_weight if keyword_weight is None else keyword_weight
        ws = self.semantic_weight if semantic_weight is None else semantic_weight

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="hybrid-search") as pool:
            keyword_future = pool.submit(self.keyword_search, query, category, tags)
            semantic_future = pool.submit(self.semantic_search, query, category, tags)
            keyword_hits = keyword_future.result()
            semantic_hits = semantic_future.result()

        return merge_results(keyword_hits, semantic_hits, wk, ws)

    def search(self, query: str, mode: str = "hybrid", **options) -> List[SearchHit]:
        if mode == "keyword":
            return self.keyword_search(query, options.get("category"), options.get("tags"))
        if mode == "semantic":
            return self.semantic_search(query, options.get("category"), options.get("tags"))
        if mode == "hybrid":
            return self.hybrid_search(query, **options)
        raise ValueError(f"Unknown search mode: {mode}")


def merge_results(
    keyword_hits: List[SearchHit],
    semantic_hits: List[SearchHit],
    keyword_weight: float = DEFAULT_KEYWORD_WEIGHT,
    semantic_weight: float = DEFAULT_SEMANTIC_WEIGHT,
) -> List[SearchHit]:
    merged: Dict[str, Tuple[SearchHit, float, List[str]]] = {}

    for hit in keyword_hits:
        merged[hit.note_id] = (hit, hit.score * keyword_weight, ["keyword"])

    for hit in semantic_hits:
        existing = merged.get(hit.note_id)
        if existing:
            base, score, sources = existing
            merged[hit.note_id] = (base, score + hit.score * semantic_weight, sources + ["semantic"])
        else:
            merged[hit.note_id] = (hit, hit.score * semantic_weight, ["semantic"])

    ranked = sorted(merged.values(), key=lambda item: item[1], reverse=True)
    results = []
    for hit, score, sources in ranked:
        hit.hybrid_score = round(score, 2)
        hit.sources = sources
        results.append(hit)
    return results
