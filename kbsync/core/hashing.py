"""Content hashing, chunk ids and compact vector encoding."""

from __future__ import annotations

import base64
import hashlib
import struct
import unicodedata


def hash_string(text: str | None) -> str:
    """Full sha256 hex digest of UTF-8 text (None hashes like '')."""
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


def stable_hash(text: str) -> str:
    """Short (32 hex chars) sha256 digest used for cache keys and item ids."""
    return hash_string(text)[:32]


def make_chunk_id(url: str, index: int, text_hash: str) -> str:
    """Content-derived chunk id: <url hash>:<zero padded index>:<text hash>.

    Same text at the same position gives the same id across runs, so upserts
    are idempotent. Any text change at that position gives a new id.
    """
    return f"{hash_string(url)[:12]}:{index:04d}:{(text_hash or '')[:10]}"


def count_words(text: str | None) -> int:
    return len((text or "").split())


def normalize_query(text: str) -> str:
    """Normalize a question for exact-match caching.

    - Unicode NFKC normalization
    - Case folding
    - Punctuation removed
    - Whitespace collapsed and trimmed
    """
    text = unicodedata.normalize("NFKC", text or "").casefold()
    text = "".join(
        ch for ch in text if not unicodedata.category(ch).startswith("P")
    )
    return " ".join(text.split())


def serialize_f32(vector: list[float]) -> bytes:
    """Serialize a list of floats into packed float32 bytes."""
    return struct.pack(f"{len(vector)}f", *vector)


def deserialize_f32(data: bytes) -> list[float]:
    return list(struct.unpack(f"{len(data) // 4}f", data[: len(data) // 4 * 4]))


def vector_to_b64(vector: list[float]) -> str:
    """Compact base64 encoding of a float32 vector."""
    return base64.b64encode(serialize_f32(vector)).decode("ascii")


def b64_to_vector(encoded: str) -> list[float]:
    return deserialize_f32(base64.b64decode(encoded))


def truncate_utf8(text: str, max_bytes: int) -> str:
    """Cut text to at most max_bytes of UTF-8 without splitting a character."""
    raw = text.encode("utf-8")
    if len(raw) <= max_bytes:
        return text
    return raw[:max_bytes].decode("utf-8", errors="ignore")
