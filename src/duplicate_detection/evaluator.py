"""Pairwise similarity evaluation of an anchor against its candidates.

Each pair is scored on three independent fields (description, issue category,
system category). A pair is a duplicate only when every field meets the
threshold. Oracle failures are fail-safe: the affected field scores 0.0, so a
broken oracle can never manufacture a duplicate.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, Tuple
import logging

from src.common.config import DEFAULT_DUPLICATE_SIMILARITY_THRESHOLD, DEFAULT_MAX_CONCURRENCY
from src.duplicate_detection.models import (
    Classification,
    ComparisonField,
    IncidentRecord,
    PairEvaluation,
    PairSimilarity,
)
from src.duplicate_detection.oracle import SimilarityOracle, SimilarityOracleError
from src.duplicate_detection.similarity import clamp_score

logger = logging.getLogger(__name__)


class PairwiseSimilarityEvaluator:
    """Scores and classifies (anchor, candidate) pairs against a similarity oracle.

    Usage:
        evaluator = PairwiseSimilarityEvaluator(oracle, threshold=0.70)
        evaluations = evaluator.evaluate_candidates(anchor, candidates)
        duplicates = [e for e in evaluations if e.is_duplicate]
    """

    def __init__(
        self,
        oracle: SimilarityOracle,
        threshold: float = DEFAULT_DUPLICATE_SIMILARITY_THRESHOLD,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ):
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1]: {threshold}")
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1: {max_concurrency}")
        self.oracle = oracle
        self.threshold = threshold
        self.max_concurrency = max_concurrency

    def field_score(
        self,
        field: ComparisonField,
        anchor_text: str,
        candidate_text: str,
        context: Optional[dict] = None,
    ) -> Tuple[float, bool]:
        """Score one field of a pair.

        Identical strings score 1.0 and blank strings score 0.0 without
        calling the oracle.

        Returns:
            Tuple of (score in [0, 1], degraded) where degraded is True when an
            oracle failure forced the score to 0.0.
        """
        if not anchor_text.strip() or not candidate_text.strip():
            return 0.0, False
        if anchor_text == candidate_text:
            return 1.0, False

        try:
            return clamp_score(self.oracle.score(anchor_text, candidate_text)), False
        except (SimilarityOracleError, ValueError) as e:
            logger.warning(
                "oracle_call_failed",
                extra={
                    "event": "oracle_call_failed",
                    "field": field.value,
                    "error_type": type(e).__name__,
                    "error": str(e),
                    **(context or {}),
                },
            )
            return 0.0, True

    def evaluate(self, anchor: IncidentRecord, candidate: IncidentRecord) -> PairSimilarity:
        """Score a pair on all three comparison fields."""
        context = {"anchor_id": anchor.incident_id, "candidate_id": candidate.incident_id}
        scores = {}
        degraded: List[ComparisonField] = []

        for field in ComparisonField:
            score, failed = self.field_score(
                field,
                anchor.field_text(field),
                candidate.field_text(field),
                context=context,
            )
            scores[field] = score
            if failed:
                degraded.append(field)

        return PairSimilarity(
            description_score=scores[ComparisonField.DESCRIPTION],
            issue_score=scores[ComparisonField.ISSUE],
            system_score=scores[ComparisonField.SYSTEM],
            degraded_fields=degraded,
        )

    def classify(self, similarity: PairSimilarity) -> Classification:
        """Duplicate only if every field score meets the threshold."""
        if all(score >= self.threshold for score in similarity.scores().values()):
            return Classification.DUPLICATE
        return Classification.NOT_DUPLICATE

    def _evaluate_one(
        self,
        anchor: IncidentRecord,
        candidate: IncidentRecord,
        on_duplicate: Optional[Callable[[PairEvaluation], None]],
    ) -> PairEvaluation:
        similarity = self.evaluate(anchor, candidate)
        evaluation = PairEvaluation(
            anchor_id=anchor.incident_id,
            candidate_id=candidate.incident_id,
            candidate_number=candidate.incident_number,
            similarity=similarity,
            classification=self.classify(similarity),
        )

        logger.debug(
            "pair_evaluated",
            extra={
                "event": "pair_evaluated",
                "anchor_id": anchor.incident_id,
                "candidate_id": candidate.incident_id,
                "description_score": round(similarity.description_score, 4),
                "issue_score": round(similarity.issue_score, 4),
                "system_score": round(similarity.system_score, 4),
                "classification": evaluation.classification.value,
            },
        )

        if on_duplicate is not None and evaluation.is_duplicate:
            on_duplicate(evaluation)
        return evaluation

    def evaluate_candidates(
        self,
        anchor: IncidentRecord,
        candidates: Sequence[IncidentRecord],
        on_duplicate: Optional[Callable[[PairEvaluation], None]] = None,
    ) -> List[PairEvaluation]:
        """Score every candidate of an anchor concurrently.

        Returns once every candidate has been scored (fan-in). Results follow
        the order of ``candidates``.

        Args:
            anchor: Incident being evaluated.
            candidates: Candidates admitted by the time window.
            on_duplicate: Called from the worker thread for each duplicate pair;
                must be thread-safe.
        """
        if not candidates:
            return []

        workers = min(self.max_concurrency, len(candidates))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pair-eval") as pool:
            futures = [
                pool.submit(self._evaluate_one, anchor, candidate, on_duplicate)
                for candidate in candidates
            ]
            return [future.result() for future in futures]
