"""Cosine similarity matcher over enrolled embeddings."""

from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from landface.types import EnrollmentRecord, MatchResult, VerificationResult

LOGGER = logging.getLogger("landface.recognition.matcher")

OwnerFilter = Union[str, Callable[[EnrollmentRecord], bool]]


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """dot(a, b) / (|a| * |b|), or 0.0 when either vector has zero norm."""
    a64 = np.asarray(a, dtype=np.float64).reshape(-1)
    b64 = np.asarray(b, dtype=np.float64).reshape(-1)
    if a64.shape != b64.shape:
        raise ValueError("Embedding shapes do not match")
    denom = float(np.linalg.norm(a64) * np.linalg.norm(b64))
    if denom == 0.0:
        return 0.0
    return float(np.dot(a64, b64) / denom)


def owner_matches(record: EnrollmentRecord, owner_filter: Optional[OwnerFilter]) -> bool:
    """Case-insensitive substring over owner name/id, or a caller predicate."""
    if owner_filter is None:
        return True
    if callable(owner_filter):
        return bool(owner_filter(record))
    needle = str(owner_filter).strip().lower()
    if not needle:
        return True
    haystacks = [record.owner_id, record.owner_name or ""]
    return any(needle in str(value).lower() for value in haystacks)


def confidence_tier(similarity: float, high_threshold: float = 0.9) -> str:
    return "high" if similarity >= high_threshold else "medium"


class SimilarityMatcher:
    """Linear-scan matcher; every call scores the full candidate set it is given."""

    def __init__(self, top_k: int = 3, diagnostic_k: int = 5, high_confidence: float = 0.9) -> None:
        self.top_k = top_k
        self.diagnostic_k = diagnostic_k
        self.high_confidence = high_confidence

    def rank(self, query: np.ndarray, candidates: Iterable[EnrollmentRecord]) -> List[Tuple[EnrollmentRecord, float]]:
        """Score candidates and sort by similarity, keeping input order on ties."""
        records = list(candidates)
        if not records:
            return []
        query64 = np.asarray(query, dtype=np.float64).reshape(-1)
        matrix = np.stack([np.asarray(r.embedding, dtype=np.float64).reshape(-1) for r in records], axis=0)
        if matrix.shape[1] != query64.shape[0]:
            raise ValueError("Embedding shapes do not match")
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query64)
        dots = matrix @ query64
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = np.where(norms > 0.0, dots / np.where(norms > 0.0, norms, 1.0), 0.0)
        order = np.argsort(-sims, kind="stable")
        return [(records[int(i)], float(sims[int(i)])) for i in order]

    def verify(
        self,
        query: np.ndarray,
        candidates: Iterable[EnrollmentRecord],
        threshold: float,
        owner_filter: Optional[OwnerFilter] = None,
    ) -> VerificationResult:
        # Filter before scoring so diagnostics describe the filtered set
        filtered = [rec for rec in candidates if owner_matches(rec, owner_filter)]
        ranked = self.rank(query, filtered)
        results = [self._to_result(rec, sim, idx + 1) for idx, (rec, sim) in enumerate(ranked)]
        matches = [res for res in results if res.similarity >= threshold]
        if matches:
            best = matches[0]
            LOGGER.info(
                "Verification matched owner=%s similarity=%.4f threshold=%.3f candidates=%d",
                best.owner_id,
                best.similarity,
                threshold,
                len(filtered),
            )
            return VerificationResult(
                matched=True,
                best=best,
                top_matches=matches[: self.top_k],
                status="matched",
                message="Face verified successfully",
            )
        LOGGER.info(
            "Verification found no match threshold=%.3f candidates=%d top=%s",
            threshold,
            len(filtered),
            f"{results[0].similarity:.4f}" if results else "n/a",
        )
        return VerificationResult(
            matched=False,
            best=None,
            diagnostics=results[: self.diagnostic_k],
            status="no_match",
            message="No matching face found" if filtered else "No enrolled faces to compare against",
        )

    def find_similar(
        self,
        query: np.ndarray,
        candidates: Iterable[EnrollmentRecord],
        threshold: float,
        exclude_owner_id: Optional[str] = None,
    ) -> List[MatchResult]:
        """Every candidate at or above ``threshold``, tagged with a confidence tier."""
        pool = [rec for rec in candidates if exclude_owner_id is None or rec.owner_id != exclude_owner_id]
        ranked = self.rank(query, pool)
        similar: List[MatchResult] = []
        for idx, (rec, sim) in enumerate(ranked):
            if sim < threshold:
                break
            result = self._to_result(rec, sim, idx + 1)
            result.confidence = confidence_tier(sim, self.high_confidence)
            similar.append(result)
        LOGGER.debug("find_similar threshold=%.3f pool=%d hits=%d", threshold, len(pool), len(similar))
        return similar

    @staticmethod
    def _to_result(record: EnrollmentRecord, similarity: float, rank: int) -> MatchResult:
        return MatchResult(
            owner_id=record.owner_id,
            similarity=similarity,
            rank=rank,
            embedding_id=record.embedding_id,
            owner_name=record.owner_name,
        )


def top_similarities(results: Sequence[MatchResult], k: int = 3) -> List[Tuple[str, float]]:
    """Compact (owner, similarity) view for logs and CLI output."""
    return [(res.owner_id, round(res.similarity, 4)) for res in list(results)[:k]]
