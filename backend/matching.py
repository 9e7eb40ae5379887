"""
Embedding matching for RecallAR.

Holds the session-scoped embedding snapshot and the nearest-neighbour
decision used by the AR view to answer "who is this".
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

# 0.4 similarity is a Euclidean distance of 0.6
MATCH_THRESHOLD = 0.4


class DimensionMismatch(ValueError):
    """Raised when two embeddings of different lengths are compared."""


@dataclass(frozen=True)
class Identity:
    """A registered person that has a stored face embedding."""
    id: int
    name: str
    relation: str
    embedding: np.ndarray


@dataclass(frozen=True)
class EmbeddingEntry:
    identity_id: int
    embedding: np.ndarray


@dataclass(frozen=True)
class MatchResult:
    identity_id: int
    similarity: float


def as_embedding(values) -> np.ndarray:
    """Coerce a list/array of floats into a flat float64 vector."""
    return np.asarray(values, dtype=np.float64).reshape(-1)


class EmbeddingSet:
    """
    Ordered, read-only snapshot of (identity_id, embedding) pairs.

    Built once when an AR session starts; people added afterwards are
    picked up by the next session only.
    """

    def __init__(self, entries: Iterable[EmbeddingEntry] = ()):
        self._entries = tuple(entries)

    @classmethod
    def from_identities(cls, identities: Iterable[Identity]) -> "EmbeddingSet":
        entries = []
        for identity in identities:
            if identity.embedding is None:
                continue
            embedding = np.array(identity.embedding, dtype=np.float64).reshape(-1)
            embedding.setflags(write=False)
            entries.append(EmbeddingEntry(identity.id, embedding))
        return cls(entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[EmbeddingEntry]:
        return iter(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)


def compare_faces(embedding1, embedding2) -> float:
    """
    Similarity between two embeddings in [0, 1].

    This is 1 - Euclidean distance floored at 0, not a calibrated
    probability: every distance above 1.0 maps to 0.
    """
    a = as_embedding(embedding1)
    b = as_embedding(embedding2)
    if a.shape != b.shape:
        raise DimensionMismatch(
            f"embedding lengths differ: {a.shape[0]} != {b.shape[0]}"
        )
    distance = float(np.linalg.norm(a - b))
    return max(0.0, 1.0 - distance)


def best_match(
    query,
    candidates: Sequence[EmbeddingEntry],
    threshold: float = MATCH_THRESHOLD,
) -> Optional[MatchResult]:
    """
    Find the closest stored embedding to ``query``.

    Full linear scan over the candidates, which is fine for the tens of
    people a caregiver registers but does not scale to large galleries.
    Ties keep the first candidate seen. Returns None when nothing reaches
    ``threshold``.
    """
    if len(candidates) == 0:
        return None

    query = as_embedding(query)
    best: Optional[MatchResult] = None

    for candidate in candidates:
        try:
            similarity = compare_faces(query, candidate.embedding)
        except DimensionMismatch as e:
            logger.warning("Skipping identity %s: %s", candidate.identity_id, e)
            continue

        if not np.all(np.isfinite(candidate.embedding)):
            logger.warning("Skipping identity %s: embedding is not finite", candidate.identity_id)
            continue

        logger.debug(
            "Comparing with identity %s: similarity %.2f",
            candidate.identity_id,
            similarity,
        )
        if best is None or similarity > best.similarity:
            best = MatchResult(candidate.identity_id, similarity)

    if best is not None and best.similarity >= threshold:
        return best
    return None
