"""Deterministic document chunking with content-derived chunk ids."""

from __future__ import annotations

from dataclasses import dataclass

from kbsync.core.hashing import hash_string, make_chunk_id

# Chunking parameters
CHUNK_SIZE = 1200  # characters (~300 tokens)
CHUNK_OVERLAP = 300  # 25% overlap
SEPARATORS = ("\n\n", "\n", ". ", "! ", "? ", " ", "")


@dataclass(frozen=True)
class Chunk:
    """A document chunk with its content-derived identity."""

    index: int
    text: str
    text_hash: str
    chunk_id: str

    @property
    def token_count(self) -> int:
        return estimate_tokens(self.text)

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "chunk_index": self.index,
            "chunk_text": self.text,
            "text_hash": self.text_hash,
            "token_count": self.token_count,
        }


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token."""
    return len(text) // 4


def _split_keep_separator(text: str, separator: str) -> list[str]:
    """Split text on separator, keeping the separator at the start of each following piece."""
    if separator == "":
        return list(text)
    parts = text.split(separator)
    pieces = [parts[0]] + [separator + p for p in parts[1:]]
    return [p for p in pieces if p]


def _merge_pieces(pieces: list[str], chunk_size: int, chunk_overlap: int) -> list[str]:
    """Greedily merge pieces into chunks of at most chunk_size characters.

    When a chunk is emitted, trailing pieces totalling at most chunk_overlap
    characters are carried into the next one.
    """
    chunks: list[str] = []
    current: list[str] = []
    total = 0

    for piece in pieces:
        if current and total + len(piece) > chunk_size:
            text = "".join(current).strip()
            if text:
                chunks.append(text)
            # Drop from the front until the carry-over fits the overlap and the new piece fits
            while current and (total > chunk_overlap or total + len(piece) > chunk_size):
                total -= len(current[0])
                current.pop(0)
        current.append(piece)
        total += len(piece)

    text = "".join(current).strip()
    if text:
        chunks.append(text)
    return chunks


def split_text(
    text: str,
    chunk_size: int = CHUNK_SIZE,
    chunk_overlap: int = CHUNK_OVERLAP,
    separators: tuple[str, ...] = SEPARATORS,
) -> list[str]:
    """Split text recursively into chunks of at most chunk_size characters.

    Uses the first separator that occurs in the text, merges the resulting
    pieces greedily, and recurses into any piece still longer than
    chunk_size with the remaining separators. The result is a pure function
    of its arguments: identical input always gives identical boundaries,
    and an edit near the end of a document leaves earlier chunks untouched.

    Args:
        text: The text to split
        chunk_size: Maximum chunk size in characters
        chunk_overlap: Characters carried over between neighbouring chunks
        separators: Separators to try, coarsest first

    Returns:
        Ordered list of chunk texts
    """
    if not text or not text.strip():
        return []

    separator = separators[-1]
    remaining: tuple[str, ...] = ()
    for i, sep in enumerate(separators):
        if sep == "" or sep in text:
            separator = sep
            remaining = separators[i + 1 :]
            break

    results: list[str] = []
    pending: list[str] = []
    for piece in _split_keep_separator(text, separator):
        if len(piece) <= chunk_size:
            pending.append(piece)
            continue
        if pending:
            results.extend(_merge_pieces(pending, chunk_size, chunk_overlap))
            pending = []
        if remaining:
            results.extend(split_text(piece, chunk_size, chunk_overlap, remaining))
        else:
            results.extend(_merge_pieces(list(piece), chunk_size, chunk_overlap))
    if pending:
        results.extend(_merge_pieces(pending, chunk_size, chunk_overlap))
    return results


def make_chunks(
    url: str,
    text: str,
    chunk_size: int = CHUNK_SIZE,
    chunk_overlap: int = CHUNK_OVERLAP,
) -> list[Chunk]:
    """Split a document and assign content-derived ids to the chunks."""
    chunks = []
    for index, chunk_text in enumerate(split_text(text, chunk_size, chunk_overlap)):
        text_hash = hash_string(chunk_text)
        chunks.append(
            Chunk(
                index=index,
                text=chunk_text,
                text_hash=text_hash,
                chunk_id=make_chunk_id(url, index, text_hash),
            )
        )
    return chunks


def get_chunking_info(chunk_size: int = CHUNK_SIZE, chunk_overlap: int = CHUNK_OVERLAP) -> dict:
    """Describe the chunking parameters (for run reports)."""
    return {
        "chunk_size": chunk_size,
        "chunk_size_tokens": estimate_tokens("x" * chunk_size),
        "chunk_overlap": chunk_overlap,
        "chunk_overlap_percent": round(chunk_overlap / chunk_size * 100),
        "separators": list(SEPARATORS),
    }
