"""
INSIGHT PATH - lexical retrieval over stored documents

Documents are split into overlapping word windows (chunks) on ingest.
At question time all chunks are scored with BM25 and the best ones are
handed to the model as numbered excerpts.
"""

import math
import re
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core import models
from app.core.config import settings

STOPWORDS = {
    "a", "an", "and", "are", "as", "at", "be", "by", "do", "does", "for",
    "from", "how", "in", "is", "it", "of", "on", "or", "our", "that", "the",
    "this", "to", "was", "we", "what", "when", "where", "which", "who",
    "why", "will", "with", "you", "your",
}

_TERM = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> List[str]:
    """Lowercase alphanumeric terms without stopwords."""
    return [t for t in _TERM.findall((text or "").lower()) if t not in STOPWORDS]


def chunk_text(
    text: str, size: Optional[int] = None, overlap: Optional[int] = None
) -> List[str]:
    """
    Split text into windows of `size` words, consecutive windows sharing `overlap` words.

    Example:
        chunk_text("a b c d e", size=2, overlap=1) -> ["a b", "b c", "c d", "d e"]
    """
    size = size or settings.CHUNK_SIZE_WORDS
    overlap = settings.CHUNK_OVERLAP_WORDS if overlap is None else overlap
    if size <= 0:
        raise ValueError("chunk size must be positive")
    if not 0 <= overlap < size:
        raise ValueError("chunk overlap must be between 0 and size - 1")

    words = (text or "").split()
    if not words:
        return []

    chunks = []
    step = size - overlap
    for start in range(0, len(words), step):
        chunks.append(" ".join(words[start : start + size]))
        if start + size >= len(words):
            break
    return chunks


@dataclass
class ScoredChunk:
    chunk_id: int
    score: float


class BM25Index:
    """Okapi BM25 over an in-memory list of (chunk_id, text)."""

    def __init__(self, chunks: Sequence[tuple], k1: float = 1.5, b: float = 0.75):
        self.k1 = k1
        self.b = b
        self.ids = [chunk_id for chunk_id, _ in chunks]
        self.term_counts = [Counter(tokenize(text)) for _, text in chunks]
        self.lengths = [sum(c.values()) for c in self.term_counts]
        self.avg_length = (sum(self.lengths) / len(self.lengths)) if chunks else 0.0

        doc_freq: Dict[str, int] = Counter()
        for counts in self.term_counts:
            doc_freq.update(counts.keys())
        total = len(chunks)
        self.idf = {
            term: math.log(1 + (total - df + 0.5) / (df + 0.5))
            for term, df in doc_freq.items()
        }

    def search(self, query: str, top_k: int = 5) -> List[ScoredChunk]:
        terms = tokenize(query)
        if not terms or not self.ids:
            return []

        scored = []
        for idx, counts in enumerate(self.term_counts):
            score = 0.0
            norm = self.k1 * (
                1 - self.b + self.b * self.lengths[idx] / (self.avg_length or 1)
            )
            for term in terms:
                tf = counts.get(term, 0)
                if tf:
                    score += self.idf[term] * tf * (self.k1 + 1) / (tf + norm)
            if score > 0:
                scored.append(ScoredChunk(chunk_id=self.ids[idx], score=score))

        scored.sort(key=lambda s: (-s.score, s.chunk_id))
        return scored[:top_k]


# ============================================================================
# Database side
# ============================================================================


async def ingest_document(
    db: AsyncSession, title: str, content: str, source: Optional[str] = None
) -> models.Document:
    """Store a document and its chunks. Commits."""
    document = models.Document(title=title, source=source)
    for position, piece in enumerate(chunk_text(content)):
        document.chunks.append(
            models.DocumentChunk(
                position=position, text=piece, token_count=len(tokenize(piece))
            )
        )
    db.add(document)
    await db.commit()
    await db.refresh(document, attribute_names=["created_at", "chunks"])
    return document


@dataclass
class RetrievedChunk:
    chunk: models.DocumentChunk
    document: models.Document
    score: float


async def search_documents(
    db: AsyncSession, query: str, top_k: Optional[int] = None
) -> List[RetrievedChunk]:
    """Rank every stored chunk against the query."""
    top_k = top_k or settings.RETRIEVAL_TOP_K
    result = await db.execute(
        select(models.DocumentChunk).options(
            selectinload(models.DocumentChunk.document)
        )
    )
    chunks = result.scalars().all()
    by_id = {chunk.id: chunk for chunk in chunks}

    index = BM25Index([(chunk.id, chunk.text) for chunk in chunks])
    return [
        RetrievedChunk(
            chunk=by_id[hit.chunk_id],
            document=by_id[hit.chunk_id].document,
            score=round(hit.score, 4),
        )
        for hit in index.search(query, top_k)
    ]
