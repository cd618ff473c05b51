"""Vector and token helpers used by indexing and search."""

from __future__ import annotations

import math
import struct
from dataclasses import dataclass
from typing import Sequence

CHARS_PER_TOKEN = 4
# Only back up to a word boundary if it lies in the last 20% of the cut
WORD_BOUNDARY_RATIO = 0.8


class DimensionMismatchError(ValueError):
    """Vectors of different lengths were compared."""

    def __init__(self, len_a: int, len_b: int):
        super().__init__(f"Vectors must have the same length ({len_a} != {len_b})")
        self.len_a = len_a
        self.len_b = len_b


@dataclass(frozen=True)
class TruncationResult:
    text: str
    is_truncated: bool
    token_count: int


def serialize_f32(vector: Sequence[float]) -> bytes:
    """Serialize a list of floats into bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


def deserialize_f32(blob: bytes) -> list[float]:
    """Inverse of serialize_f32."""
    return list(struct.unpack(f"{len(blob) // 4}f", blob))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors.

    Returns 0.0 when either vector has zero magnitude.

    Raises:
        DimensionMismatchError: If the lengths differ.
    """
    if len(a) != len(b):
        raise DimensionMismatchError(len(a), len(b))

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    magnitude = math.sqrt(norm_a) * math.sqrt(norm_b)
    if magnitude == 0:
        return 0.0
    return dot / magnitude


def normalize_vector(vector: Sequence[float]) -> list[float]:
    """L2-normalize a vector. Zero vectors are returned unchanged."""
    magnitude = math.sqrt(sum(x * x for x in vector))
    if magnitude == 0:
        return list(vector)
    return [x / magnitude for x in vector]


def estimate_token_count(text: str) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_to_token_limit(text: str, max_tokens: int) -> TruncationResult:
    """Cut text down to fit an estimated token budget.

    The cut happens at max_tokens * 4 characters and moves back to the last
    space only when that space is close to the cut, so text without nearby
    whitespace is not over-truncated.
    """
    estimated = estimate_token_count(text)
    if estimated <= max_tokens:
        return TruncationResult(text=text, is_truncated=False, token_count=estimated)

    max_chars = max_tokens * CHARS_PER_TOKEN
    truncated = text[:max_chars]
    last_space = truncated.rfind(" ")
    if last_space > max_chars * WORD_BOUNDARY_RATIO:
        truncated = truncated[:last_space]

    return TruncationResult(
        text=truncated,
        is_truncated=True,
        token_count=estimate_token_count(truncated),
    )
