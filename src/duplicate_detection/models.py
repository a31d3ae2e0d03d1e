"""Pydantic models for the duplicate detection service.

Covers the incident record as read from the record store, per-pair similarity
scores, duplicate groups and their canonical labels, and the request/response
shapes of the HTTP surface (camelCase aliases, snake_case attributes).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


NO_DUPLICATE = "NO_DUPLICATE"

_LABEL_SEPARATOR = ", "


# ============================================================================
# Enums
# ============================================================================


class ComparisonField(str, Enum):
    """Incident text fields compared by the similarity oracle."""

    DESCRIPTION = "description"
    ISSUE = "issue_category"
    SYSTEM = "system_category"


class Classification(str, Enum):
    """Outcome of classifying one (anchor, candidate) pair."""

    DUPLICATE = "duplicate"
    NOT_DUPLICATE = "not_duplicate"


class PassStatus(str, Enum):
    """Machine-checkable status of a duplicate detection pass."""

    COMPLETED = "completed"
    ORACLE_UNAVAILABLE = "oracle_unavailable"
    PERSISTENCE_FAILED = "persistence_failed"


class TriggeredBy(str, Enum):
    """How the duplicate detection pass was initiated."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"


# ============================================================================
# Canonical labels
# ============================================================================


def build_canonical_label(incident_numbers: Iterable[str]) -> str:
    """Build the canonical group label for a set of incident numbers.

    Numbers are de-duplicated and sorted lexicographically. A set with fewer
    than two members is not a group and degrades to ``NO_DUPLICATE``.

    Example:
        >>> build_canonical_label(["IN100", "IN050"])
        '[IN050, IN100]'
    """
    members = sorted(set(incident_numbers))
    if len(members) < 2:
        return NO_DUPLICATE
    return "[" + _LABEL_SEPARATOR.join(members) + "]"


def parse_group_label(label: Optional[str]) -> Optional[List[str]]:
    """Return the member incident numbers of a well-formed group label.

    A label is well-formed only if it is exactly what ``build_canonical_label``
    produces for its own members. ``NO_DUPLICATE``, empty values, error
    strings left by older runs and singleton lists all return None.
    """
    if not label or not label.startswith("[") or not label.endswith("]"):
        return None
    members = [part.strip() for part in label[1:-1].split(",")]
    if any(not member for member in members):
        return None
    if build_canonical_label(members) != label:
        return None
    return members


# ============================================================================
# Incident records
# ============================================================================


class IncidentRecord(BaseModel):
    """An incident (activity) as seen by the duplicate detection engine.

    Owned by the record store; the engine reads the comparison fields and
    timestamps and only ever writes ``duplicate_label``.
    """

    incident_id: str = Field(..., min_length=1, description="Record store document ID.")
    incident_number: str = Field(..., min_length=1, description="Human-readable incident number.")
    description: str = Field("", description="Free-text long description.")
    issue_category: str = Field("", description="Short-form AI issue category.")
    system_category: str = Field("", description="Short-form AI system category.")
    opened_at: Optional[datetime] = Field(None, description="When the incident was opened (UTC).")
    last_updated_at: Optional[datetime] = Field(None, description="When the incident was last updated (UTC).")
    duplicate_label: Optional[str] = Field(None, description="Persisted duplicate label.")

    @field_validator("opened_at", "last_updated_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def field_text(self, field: ComparisonField) -> str:
        """Return the text of one comparison field."""
        return getattr(self, field.value) or ""

    def has_comparison_text(self) -> bool:
        """True when every comparison field carries non-blank text."""
        return all(self.field_text(field).strip() for field in ComparisonField)

    def has_timestamps(self) -> bool:
        return self.opened_at is not None and self.last_updated_at is not None

    def is_comparable(self) -> bool:
        """True when the record can be an anchor or a candidate."""
        return self.has_comparison_text() and self.has_timestamps()

    def is_resolved(self) -> bool:
        """True when a prior pass already placed this record in a valid group."""
        members = parse_group_label(self.duplicate_label)
        return members is not None and self.incident_number in members


# ============================================================================
# Pairwise similarity
# ============================================================================


class PairSimilarity(BaseModel):
    """Independent similarity scores of one (anchor, candidate) pair."""

    description_score: float = Field(..., ge=0.0, le=1.0)
    issue_score: float = Field(..., ge=0.0, le=1.0)
    system_score: float = Field(..., ge=0.0, le=1.0)
    degraded_fields: List[ComparisonField] = Field(
        default_factory=list,
        description="Fields forced to 0.0 by an oracle failure.",
    )

    def scores(self) -> Dict[ComparisonField, float]:
        return {
            ComparisonField.DESCRIPTION: self.description_score,
            ComparisonField.ISSUE: self.issue_score,
            ComparisonField.SYSTEM: self.system_score,
        }


class PairEvaluation(BaseModel):
    """A scored and classified candidate of one anchor."""

    anchor_id: str
    candidate_id: str
    candidate_number: str
    similarity: PairSimilarity
    classification: Classification

    @property
    def is_duplicate(self) -> bool:
        return self.classification == Classification.DUPLICATE


class DuplicateGroup(BaseModel):
    """A connected component of the duplicate graph with two or more members."""

    label: str
    incident_ids: List[str] = Field(..., min_length=2)
    incident_numbers: List[str] = Field(..., min_length=2)


# ============================================================================
# Request Models
# ============================================================================


class DuplicatePassRequest(BaseModel):
    """Request body for POST /duplicates/run-once.

    ``year``/``month`` narrow which anchors are evaluated; candidates are
    always drawn from the full record pool.
    """

    year: Optional[int] = Field(None, ge=1970, le=9999, description="Only anchor incidents opened in this year.")
    month: Optional[int] = Field(None, ge=1, le=12, description="Only anchor incidents opened in this month.")
    dry_run: Optional[bool] = Field(
        None,
        alias="dryRun",
        description="If true, compute labels but don't persist them.",
    )
    triggered_by: Optional[TriggeredBy] = Field(
        None,
        alias="triggeredBy",
        description="Indicates whether the run was scheduled or manually triggered.",
    )

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def _month_requires_year(self) -> "DuplicatePassRequest":
        if self.month is not None and self.year is None:
            raise ValueError("month scoping requires year")
        return self


# ============================================================================
# Response Models
# ============================================================================


class DuplicatePassSummary(BaseModel):
    """Per-pass summary returned to callers and persisted as a run record."""

    run_id: str = Field(..., alias="runId")
    started_at: datetime = Field(..., alias="startedAt")
    finished_at: datetime = Field(..., alias="finishedAt", description="Pass completion timestamp (UTC).")
    triggered_by: TriggeredBy = Field(..., alias="triggeredBy")
    status: PassStatus
    scope_year: Optional[int] = Field(None, alias="scopeYear")
    scope_month: Optional[int] = Field(None, alias="scopeMonth")
    anchors_considered: int = Field(0, alias="anchorsConsidered", description="Unresolved anchors in scope.")
    anchors_evaluated: int = Field(0, alias="anchorsEvaluated")
    anchors_skipped: int = Field(0, alias="anchorsSkipped", description="Anchors already grouped earlier in the pass.")
    comparisons: int = Field(0, description="Candidate pairs scored.")
    oracle_failures: int = Field(0, alias="oracleFailures", description="Field scores degraded to 0.0.")
    groups_formed: int = Field(0, alias="groupsFormed")
    records_labelled: int = Field(0, alias="recordsLabelled")
    records_updated: int = Field(0, alias="recordsUpdated")
    dry_run: bool = Field(False, alias="dryRun")
    processing_duration_ms: int = Field(0, alias="processingDurationMs")
    error_reason: Optional[str] = Field(None, alias="errorReason")

    model_config = {"populate_by_name": True}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to Firestore-friendly dict for run record persistence."""
        result = {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "triggered_by": self.triggered_by.value,
            "status": self.status.value,
            "anchors_considered": self.anchors_considered,
            "anchors_evaluated": self.anchors_evaluated,
            "anchors_skipped": self.anchors_skipped,
            "comparisons": self.comparisons,
            "oracle_failures": self.oracle_failures,
            "groups_formed": self.groups_formed,
            "records_labelled": self.records_labelled,
            "records_updated": self.records_updated,
            "dry_run": self.dry_run,
            "processing_duration_ms": self.processing_duration_ms,
        }
        if self.scope_year is not None:
            result["scope_year"] = self.scope_year
        if self.scope_month is not None:
            result["scope_month"] = self.scope_month
        if self.error_reason:
            result["error_reason"] = self.error_reason
        return result


class DuplicateGroupResponse(BaseModel):
    """API response format for one persisted duplicate group."""

    label: str
    incident_numbers: List[str] = Field(..., alias="incidentNumbers")
    incident_ids: List[str] = Field(..., alias="incidentIds")

    model_config = {"populate_by_name": True}


class DuplicateGroupListResponse(BaseModel):
    """API response for GET /duplicates/groups."""

    groups: List[DuplicateGroupResponse]
    total: int


class HealthResponse(BaseModel):
    """Response for GET /health endpoint."""

    status: str = Field(..., description="Service health status.")
    version: str = Field(..., description="Service version.")
    similarity_oracle: str = Field(..., alias="similarityOracle", description="Configured oracle backend.")
    oracle_status: str = Field(..., alias="oracleStatus", description="Oracle availability.")

    model_config = {"populate_by_name": True}


class ErrorResponse(BaseModel):
    """Standard error response format."""

    error: str = Field(..., description="Error type/code.")
    message: str = Field(..., description="Human-readable error message.")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details.")
