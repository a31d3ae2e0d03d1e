"""Duplicate detection pass driver.

Implements one batch pass over the incident pool:
1. Verify the similarity oracle is reachable (abort untouched otherwise)
2. Read the incident pool and seed groups persisted by earlier passes
3. For each unresolved anchor, in (incident_number, incident_id) order:
   select candidates by time window, score them in parallel, resolve the anchor
4. Materialize connected components into canonical labels
5. Persist changed labels in one atomic batch and record a run summary

A second pass over unchanged data evaluates no grouped anchors and writes
nothing, so an interrupted pass can simply be re-run.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
import logging
import time
import uuid

from src.common.config import (
    ORACLE_EMBEDDING,
    ORACLE_GEMINI,
    DuplicateDetectionSettings,
    load_duplicate_detection_settings,
)
from src.common.logging import log_decision, log_error
from src.duplicate_detection.consolidator import DuplicatePass, GroupConsolidator
from src.duplicate_detection.evaluator import PairwiseSimilarityEvaluator
from src.duplicate_detection.firestore_repository import (
    IncidentRepository,
    IncidentRepositoryError,
    create_incident_repository,
)
from src.duplicate_detection.models import (
    DuplicateGroup,
    DuplicatePassSummary,
    IncidentRecord,
    PassStatus,
    TriggeredBy,
)
from src.duplicate_detection.oracle import SimilarityOracle
from src.duplicate_detection.persister import PersistenceError, ResultPersister
from src.duplicate_detection.window import select_candidates

logger = logging.getLogger(__name__)

# Oracle worker threads per evaluator worker; timed-out calls hold a thread
ORACLE_WORKER_HEADROOM = 2


class DuplicateDetectionError(Exception):
    """Base exception for duplicate detection service errors."""

    pass


def create_similarity_oracle(settings: DuplicateDetectionSettings) -> SimilarityOracle:
    """Build the oracle named by ``settings.similarity_oracle``.

    Raises:
        DuplicateDetectionError: If the oracle name is not supported.
    """
    oracle_workers = settings.max_concurrency * ORACLE_WORKER_HEADROOM
    if settings.similarity_oracle == ORACLE_GEMINI:
        from src.duplicate_detection.gemini_oracle import GeminiSimilarityOracle

        oracle = GeminiSimilarityOracle(
            config=settings.gemini,
            request_timeout_sec=settings.oracle_timeout_sec,
            max_workers=oracle_workers,
        )
    elif settings.similarity_oracle == ORACLE_EMBEDDING:
        from src.duplicate_detection.embedding_oracle import EmbeddingSimilarityOracle

        oracle = EmbeddingSimilarityOracle(
            config=settings.embedding,
            request_timeout_sec=settings.oracle_timeout_sec,
            max_workers=oracle_workers,
        )
    else:
        raise DuplicateDetectionError(f"Unsupported similarity oracle: {settings.similarity_oracle}")

    logger.info(
        "similarity_oracle_configured",
        extra={"event": "similarity_oracle_configured", **oracle.get_model_info()},
    )
    return oracle


def _sort_key(record: IncidentRecord):
    return (record.incident_number, record.incident_id)


def in_scope(record: IncidentRecord, year: Optional[int], month: Optional[int]) -> bool:
    """True if the record was opened in the requested year (and month)."""
    if year is None:
        return True
    opened = record.opened_at.astimezone(timezone.utc)
    if opened.year != year:
        return False
    return month is None or opened.month == month


@dataclass
class _PassCounters:
    anchors_considered: int = 0
    anchors_evaluated: int = 0
    anchors_skipped: int = 0
    comparisons: int = 0
    oracle_failures: int = 0


class DuplicateDetectionService:
    """Service running duplicate detection passes over the incident pool.

    Usage:
        service = DuplicateDetectionService()
        summary = service.run_pass(year=2025, month=3)
    """

    def __init__(
        self,
        settings: Optional[DuplicateDetectionSettings] = None,
        oracle: Optional[SimilarityOracle] = None,
        repository: Optional[IncidentRepository] = None,
    ):
        """Initialize the duplicate detection service.

        Args:
            settings: Optional DuplicateDetectionSettings. Loads from env if not provided.
            oracle: Optional similarity oracle. Built from settings if not provided.
            repository: Optional IncidentRepository. Creates one if not provided.
        """
        self.settings = settings or load_duplicate_detection_settings()
        self.oracle = oracle or create_similarity_oracle(self.settings)
        self.repository = repository or create_incident_repository(self.settings.firestore)

        self.evaluator = PairwiseSimilarityEvaluator(
            self.oracle,
            threshold=self.settings.similarity_threshold,
            max_concurrency=self.settings.max_concurrency,
        )
        self.consolidator = GroupConsolidator()
        self.persister = ResultPersister(self.repository)

    def _build_pool(self, records: List[IncidentRecord], run_id: str) -> List[IncidentRecord]:
        """Records that can be anchors or candidates.

        Records with blank comparison text or missing timestamps are left out.
        """
        pool = []
        for record in records:
            if record.is_comparable():
                pool.append(record)
            else:
                logger.warning(
                    "incident_excluded",
                    extra={
                        "event": "incident_excluded",
                        "run_id": run_id,
                        "incident_id": record.incident_id,
                        "reason": (
                            "missing_timestamps" if record.has_comparison_text() else "missing_comparison_text"
                        ),
                    },
                )
        return pool

    def _evaluate_anchor(
        self,
        pass_state: DuplicatePass,
        anchor: IncidentRecord,
        pool: List[IncidentRecord],
        counters: _PassCounters,
    ) -> None:
        candidates = select_candidates(
            anchor,
            pool,
            days_before=self.settings.window_days_before,
            days_after=self.settings.window_days_after,
        )
        evaluations = self.evaluator.evaluate_candidates(
            anchor,
            candidates,
            on_duplicate=lambda e: pass_state.add_pair(e.anchor_id, e.candidate_id),
        )
        duplicate_ids = [e.candidate_id for e in evaluations if e.is_duplicate]
        self.consolidator.resolve_anchor(pass_state, anchor, duplicate_ids)

        counters.anchors_evaluated += 1
        counters.comparisons += len(evaluations)
        counters.oracle_failures += sum(len(e.similarity.degraded_fields) for e in evaluations)

        log_decision(
            logger,
            run_id=pass_state.run_id,
            incident_id=anchor.incident_id,
            action="evaluate",
            outcome="duplicate" if duplicate_ids else "no_duplicate",
            incident_number=anchor.incident_number,
            candidates=len(candidates),
            duplicates=len(duplicate_ids),
        )

    def run_pass(
        self,
        year: Optional[int] = None,
        month: Optional[int] = None,
        triggered_by: TriggeredBy = TriggeredBy.MANUAL,
        dry_run: bool = False,
    ) -> DuplicatePassSummary:
        """Run one duplicate detection pass.

        Args:
            year: Only anchor incidents opened in this year (UTC).
            month: Only anchor incidents opened in this month; requires year.
            triggered_by: Whether the pass was scheduled or manual.
            dry_run: Compute labels without persisting them.

        Returns:
            DuplicatePassSummary. Oracle unavailability and persistence
            failures are reported through ``status``, not raised.

        Raises:
            ValueError: If month is given without year.
            DuplicateDetectionError: If the incident pool cannot be read.
        """
        if month is not None and year is None:
            raise ValueError("month scoping requires year")

        start_time = time.time()
        run_id = f"run_{uuid.uuid4().hex[:12]}"
        started_at = datetime.now(timezone.utc)
        counters = _PassCounters()

        logger.info(
            "duplicate_pass_started",
            extra={
                "event": "duplicate_pass_started",
                "run_id": run_id,
                "triggered_by": triggered_by.value,
                "scope_year": year,
                "scope_month": month,
                "dry_run": dry_run,
            },
        )

        summary_fields = dict(
            run_id=run_id,
            started_at=started_at,
            triggered_by=triggered_by,
            scope_year=year,
            scope_month=month,
            dry_run=dry_run,
            start_time=start_time,
        )

        if not self.oracle.is_available():
            logger.warning(
                "duplicate_pass_aborted",
                extra={"event": "duplicate_pass_aborted", "run_id": run_id, "reason": "oracle_unavailable"},
            )
            return self._finish(
                status=PassStatus.ORACLE_UNAVAILABLE,
                counters=counters,
                error_reason="Similarity oracle is unavailable",
                **summary_fields,
            )

        try:
            records = self.repository.get_all_incidents()
        except IncidentRepositoryError as e:
            log_error(logger, "Failed to read incident pool", run_id=run_id, error=e)
            raise DuplicateDetectionError(f"Failed to read incident pool: {e}") from e

        pool = self._build_pool(records, run_id)
        # Excluded records still belong to their persisted groups
        pass_state = DuplicatePass(run_id, records)
        prior_groups = pass_state.seed_prior_groups()

        anchors = sorted(
            (r for r in pool if not r.is_resolved() and in_scope(r, year, month)),
            key=_sort_key,
        )
        counters.anchors_considered = len(anchors)

        logger.info(
            "duplicate_pool_loaded",
            extra={
                "event": "duplicate_pool_loaded",
                "run_id": run_id,
                "pool_size": len(pool),
                "excluded": len(records) - len(pool),
                "prior_groups": prior_groups,
                "anchors": len(anchors),
            },
        )

        for anchor in anchors:
            if pass_state.is_resolved(anchor.incident_id):
                counters.anchors_skipped += 1
                log_decision(
                    logger,
                    run_id=run_id,
                    incident_id=anchor.incident_id,
                    action="skip",
                    outcome="already_grouped",
                )
                continue
            self._evaluate_anchor(pass_state, anchor, pool, counters)

        groups = self.consolidator.groups(pass_state)
        labels = self.consolidator.materialize(pass_state)
        for group in groups:
            logger.info(
                "duplicate_group_formed",
                extra={
                    "event": "duplicate_group_formed",
                    "run_id": run_id,
                    "label": group.label,
                    "size": len(group.incident_ids),
                },
            )

        status = PassStatus.COMPLETED
        error_reason = None
        records_updated = 0
        if not dry_run:
            try:
                records_updated = self.persister.persist(labels)
            except PersistenceError as e:
                log_error(logger, "Failed to persist duplicate labels", run_id=run_id, error=e)
                status = PassStatus.PERSISTENCE_FAILED
                error_reason = str(e)

        return self._finish(
            status=status,
            counters=counters,
            groups_formed=len(groups),
            records_labelled=len(labels),
            records_updated=records_updated,
            error_reason=error_reason,
            **summary_fields,
        )

    def _finish(
        self,
        *,
        run_id: str,
        started_at: datetime,
        triggered_by: TriggeredBy,
        scope_year: Optional[int],
        scope_month: Optional[int],
        dry_run: bool,
        start_time: float,
        status: PassStatus,
        counters: _PassCounters,
        groups_formed: int = 0,
        records_labelled: int = 0,
        records_updated: int = 0,
        error_reason: Optional[str] = None,
    ) -> DuplicatePassSummary:
        """Build, log and store the run summary."""
        summary = DuplicatePassSummary(
            run_id=run_id,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            triggered_by=triggered_by,
            status=status,
            scope_year=scope_year,
            scope_month=scope_month,
            anchors_considered=counters.anchors_considered,
            anchors_evaluated=counters.anchors_evaluated,
            anchors_skipped=counters.anchors_skipped,
            comparisons=counters.comparisons,
            oracle_failures=counters.oracle_failures,
            groups_formed=groups_formed,
            records_labelled=records_labelled,
            records_updated=records_updated,
            dry_run=dry_run,
            processing_duration_ms=int((time.time() - start_time) * 1000),
            error_reason=error_reason,
        )

        logger.info(
            "Duplicate detection pass complete",
            extra={
                "run_id": run_id,
                "status": status.value,
                "anchors_evaluated": summary.anchors_evaluated,
                "comparisons": summary.comparisons,
                "oracle_failures": summary.oracle_failures,
                "groups_formed": summary.groups_formed,
                "records_updated": summary.records_updated,
                "processing_duration_ms": summary.processing_duration_ms,
            },
        )

        try:
            self.repository.save_pass_summary(summary)
        except IncidentRepositoryError as e:
            # Labels are already committed; a lost run record is not a failed pass
            logger.warning(
                "Failed to save run summary",
                extra={"run_id": run_id, "error": str(e)},
            )

        return summary

    def list_groups(self) -> List[DuplicateGroup]:
        """Return the duplicate groups currently persisted in the record store."""
        return self.repository.list_duplicate_groups()
