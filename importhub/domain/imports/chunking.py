"""
Character-window text chunking and chunk vector storage.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from langchain_core.embeddings import Embeddings
from sqlalchemy.orm import Session

from importhub.db.models import VectorChunk


@dataclass
class TextChunk:
    index: int
    content: str
    start: int
    end: int


def chunk_text(text: str, chunk_size: int = 1000, overlap: int = 200) -> List[TextChunk]:
    """
    Split ``text`` into windows of at most ``chunk_size`` characters that
    overlap by ``overlap`` characters. A window is shortened to the last
    paragraph, line or sentence break in its second half so chunks tend to end
    on natural boundaries.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    overlap = max(0, min(overlap, chunk_size - 1))

    text = (text or "").strip()
    chunks: List[TextChunk] = []
    if not text:
        return chunks

    start = 0
    length = len(text)
    while start < length:
        end = min(start + chunk_size, length)
        if end < length:
            window = text[start:end]
            for separator in ("\n\n", "\n", ". "):
                cut = window.rfind(separator)
                if cut >= chunk_size // 2:
                    end = start + cut + len(separator)
                    break
        content = text[start:end].strip()
        if content:
            chunks.append(TextChunk(index=len(chunks), content=content, start=start, end=end))
        if end >= length:
            break
        start = max(end - overlap, start + 1)
    return chunks


def embed_chunks(
    embeddings: Embeddings,
    text: str,
    *,
    chunk_size: int = 1000,
    overlap: int = 200,
) -> List[Tuple[TextChunk, List[float]]]:
    """Chunk ``text`` and embed every chunk. No database work happens here."""
    chunks = chunk_text(text, chunk_size, overlap)
    if not chunks:
        return []
    vectors = embeddings.embed_documents([chunk.content for chunk in chunks])
    if len(vectors) != len(chunks):
        raise ValueError(f"Embedding provider returned {len(vectors)} vectors for {len(chunks)} chunks")
    return [(chunk, [float(value) for value in vector]) for chunk, vector in zip(chunks, vectors)]


def replace_chunk_vectors(
    session: Session,
    owner_type: str,
    owner_id: str,
    embedded: List[Tuple[TextChunk, List[float]]],
    metadata: Optional[Dict[str, Any]] = None,
) -> int:
    """Replace the stored chunks of one owner. The caller owns the transaction."""
    session.query(VectorChunk).filter(
        VectorChunk.owner_type == owner_type,
        VectorChunk.owner_id == owner_id,
    ).delete(synchronize_session=False)
    for chunk, vector in embedded:
        session.add(VectorChunk(
            owner_type=owner_type,
            owner_id=owner_id,
            chunk_index=chunk.index,
            content=chunk.content,
            embedding=vector,
            extra_metadata={**(metadata or {}), "start": chunk.start, "end": chunk.end},
        ))
    return len(embedded)
