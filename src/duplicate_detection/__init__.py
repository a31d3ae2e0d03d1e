"""Incident duplicate detection service.

This package contains the Cloud Run service that reads incident records from
Firestore, compares each unresolved incident with the incidents opened inside
its time window using a pluggable similarity oracle (Gemini or Vertex AI
embeddings), consolidates duplicate pairs into connected groups and persists a
canonical group label (or NO_DUPLICATE) on every record it touches.

Shared Utilities (from src/common/):
    - config: load_duplicate_detection_settings(), DuplicateDetectionSettings
    - firestore: get_firestore_client(), activities_collection()
    - logging: Structured decision and error logging

Modules:
    models: Pydantic models for incidents, pair scores, groups and pass summaries
    window: Candidate window selection
    oracle: Similarity oracle protocol, response contract and error taxonomy
    gemini_oracle: Gemini-backed oracle with timeout and retry
    embedding_oracle: Vertex AI embedding oracle with caching and retry
    evaluator: Three-field pairwise scoring and AND classification
    consolidator: Per-pass arena, union-find graph, canonical labels
    persister: Atomic label persistence
    firestore_repository: Incident and run summary data access
    duplicate_service: Pass driver
    main: FastAPI app with /health, /duplicates/run-once and /duplicates/groups
"""

from src.duplicate_detection.models import (
    NO_DUPLICATE,
    Classification,
    ComparisonField,
    DuplicateGroup,
    DuplicatePassRequest,
    DuplicatePassSummary,
    IncidentRecord,
    PairEvaluation,
    PairSimilarity,
    PassStatus,
    TriggeredBy,
    build_canonical_label,
    parse_group_label,
)

__all__ = [
    "NO_DUPLICATE",
    "Classification",
    "ComparisonField",
    "DuplicateGroup",
    "DuplicatePassRequest",
    "DuplicatePassSummary",
    "IncidentRecord",
    "PairEvaluation",
    "PairSimilarity",
    "PassStatus",
    "TriggeredBy",
    "build_canonical_label",
    "parse_group_label",
]
