"""Firestore repository for incident records and duplicate pass runs.

Provides data access for the duplicate detection service:
- Bulk read of the incident pool (projected to the comparison fields)
- Read of current duplicate labels by document id
- Atomic bulk label update (single WriteBatch)
- Run summary persistence
- Listing of persisted duplicate groups

Collections:
- {prefix}activities: incident records, document ID = incident id
- {prefix}duplicate_runs: pass summaries, document ID = run_id
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, TYPE_CHECKING
import logging

from google.cloud.firestore_v1.base_query import FieldFilter

from src.common.config import FirestoreConfig, load_firestore_config
from src.common.firestore import (
    activities_collection,
    duplicate_runs_collection,
    get_firestore_client,
)
from src.duplicate_detection.models import (
    DuplicateGroup,
    DuplicatePassSummary,
    IncidentRecord,
    parse_group_label,
)

if TYPE_CHECKING:
    from google.cloud.firestore import Client as FirestoreClient

logger = logging.getLogger(__name__)

# Firestore document field names
FIELD_INCIDENT_NUMBER = "incident_number"
FIELD_DESCRIPTION = "long_description"
FIELD_ISSUE = "issue_ai"
FIELD_SYSTEM = "system_ai"
FIELD_OPEN_DATE = "open_date"
FIELD_UPDATED_DATE = "updated_date"
FIELD_DUPLICATE = "duplicate_ai"

POOL_FIELDS = [
    FIELD_INCIDENT_NUMBER,
    FIELD_DESCRIPTION,
    FIELD_ISSUE,
    FIELD_SYSTEM,
    FIELD_OPEN_DATE,
    FIELD_UPDATED_DATE,
    FIELD_DUPLICATE,
]


class IncidentRepositoryError(Exception):
    """Base exception for incident repository errors."""

    pass


def _parse_timestamp(value: Any, field: str) -> datetime:
    """Accept Firestore timestamps (datetime subclasses) or ISO-8601 strings."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise ValueError(f"Invalid {field}: {value!r}") from e
    else:
        raise ValueError(f"Missing {field}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _optional_timestamp(doc_id: str, data: Dict[str, Any], field: str) -> Optional[datetime]:
    try:
        return _parse_timestamp(data.get(field), field)
    except ValueError as e:
        logger.warning(
            "incident_timestamp_invalid",
            extra={"event": "incident_timestamp_invalid", "incident_id": doc_id, "error": str(e)},
        )
        return None


def doc_to_incident(doc_id: str, data: Dict[str, Any]) -> IncidentRecord:
    """Convert a Firestore activity document to an IncidentRecord.

    Missing or unparsable timestamps are read as None; such records keep their
    persisted label but cannot be anchors or candidates.

    Raises:
        ValueError: If the incident number is missing.
    """
    number = data.get(FIELD_INCIDENT_NUMBER)
    if number is None or not str(number).strip():
        raise ValueError(f"Missing {FIELD_INCIDENT_NUMBER}")

    label = data.get(FIELD_DUPLICATE)
    return IncidentRecord(
        incident_id=doc_id,
        incident_number=str(number).strip(),
        description=_text(data.get(FIELD_DESCRIPTION)),
        issue_category=_text(data.get(FIELD_ISSUE)),
        system_category=_text(data.get(FIELD_SYSTEM)),
        opened_at=_optional_timestamp(doc_id, data, FIELD_OPEN_DATE),
        last_updated_at=_optional_timestamp(doc_id, data, FIELD_UPDATED_DATE),
        duplicate_label=label if isinstance(label, str) else None,
    )


class IncidentRepository:
    """Repository for incident records and duplicate pass run summaries."""

    def __init__(
        self,
        client: Optional["FirestoreClient"] = None,
        config: Optional[FirestoreConfig] = None,
    ):
        """Initialize the repository.

        Args:
            client: Optional Firestore client. If not provided, creates one lazily.
            config: Optional FirestoreConfig. If not provided, loads from environment.
        """
        self.config = config or load_firestore_config()
        self._client = client

    @property
    def client(self) -> "FirestoreClient":
        """Get or create Firestore client."""
        if self._client is None:
            self._client = get_firestore_client(self.config)
        return self._client

    @property
    def activities_ref(self):
        return self.client.collection(activities_collection(self.config.collection_prefix))

    @property
    def runs_ref(self):
        return self.client.collection(duplicate_runs_collection(self.config.collection_prefix))

    # =========================================================================
    # Pool reads
    # =========================================================================

    def get_all_incidents(self) -> List[IncidentRecord]:
        """Read every incident record, projected to the fields the engine uses.

        Documents without an incident number are skipped with a warning.

        Raises:
            IncidentRepositoryError: If the read fails.
        """
        incidents = []
        skipped = 0
        try:
            for doc in self.activities_ref.select(POOL_FIELDS).stream():
                try:
                    incidents.append(doc_to_incident(doc.id, doc.to_dict() or {}))
                except ValueError as e:
                    skipped += 1
                    logger.warning(
                        "incident_skipped",
                        extra={"event": "incident_skipped", "incident_id": doc.id, "error": str(e)},
                    )
        except Exception as e:
            raise IncidentRepositoryError(f"Failed to read incidents: {e}") from e

        logger.info(
            "Fetched incident pool",
            extra={"count": len(incidents), "skipped": skipped},
        )
        return incidents

    def get_current_labels(self, incident_ids: Iterable[str]) -> Dict[str, Optional[str]]:
        """Read the stored duplicate label of the given records.

        Ids with no document are omitted from the result.

        Raises:
            IncidentRepositoryError: If the read fails.
        """
        incident_ids = list(incident_ids)
        if not incident_ids:
            return {}

        labels: Dict[str, Optional[str]] = {}
        try:
            refs = [self.activities_ref.document(incident_id) for incident_id in incident_ids]
            for snapshot in self.client.get_all(refs, field_paths=[FIELD_DUPLICATE]):
                if not snapshot.exists:
                    continue
                value = (snapshot.to_dict() or {}).get(FIELD_DUPLICATE)
                labels[snapshot.id] = value if isinstance(value, str) else None
        except Exception as e:
            raise IncidentRepositoryError(f"Failed to read current labels: {e}") from e
        return labels

    # =========================================================================
    # Writes
    # =========================================================================

    def write_duplicate_labels(self, changes: Mapping[str, str]) -> None:
        """Write duplicate labels in a single atomic batch.

        Args:
            changes: Mapping of incident id to its new label.

        Raises:
            IncidentRepositoryError: If the commit fails; nothing is written.
        """
        if not changes:
            return

        try:
            batch = self.client.batch()
            for incident_id, label in sorted(changes.items()):
                batch.update(self.activities_ref.document(incident_id), {FIELD_DUPLICATE: label})
            batch.commit()
        except Exception as e:
            raise IncidentRepositoryError(f"Failed to write duplicate labels: {e}") from e

        logger.info(
            "duplicate_labels_written",
            extra={"event": "duplicate_labels_written", "count": len(changes)},
        )

    def save_pass_summary(self, summary: DuplicatePassSummary) -> None:
        """Persist a duplicate pass summary.

        Raises:
            IncidentRepositoryError: If the write fails.
        """
        try:
            self.runs_ref.document(summary.run_id).set(summary.to_dict())
        except Exception as e:
            raise IncidentRepositoryError(f"Failed to save pass summary: {e}") from e

        logger.info(
            "run_summary_saved",
            extra={
                "event": "run_summary_saved",
                "run_id": summary.run_id,
                "status": summary.status.value,
            },
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def list_duplicate_groups(self) -> List[DuplicateGroup]:
        """List persisted duplicate groups, ordered by label.

        Members within a group are ordered by incident number. Records whose
        label is NO_DUPLICATE or malformed are not listed.

        Raises:
            IncidentRepositoryError: If the read fails.
        """
        members: Dict[str, List[tuple]] = {}
        try:
            # Group labels all start with "["; "\\" is the next character
            query = (
                self.activities_ref.where(filter=FieldFilter(FIELD_DUPLICATE, ">=", "["))
                .where(filter=FieldFilter(FIELD_DUPLICATE, "<", "\\"))
                .select([FIELD_INCIDENT_NUMBER, FIELD_DUPLICATE])
            )
            for doc in query.stream():
                data = doc.to_dict() or {}
                label = data.get(FIELD_DUPLICATE)
                number = data.get(FIELD_INCIDENT_NUMBER)
                if number is None or parse_group_label(label) is None:
                    continue
                members.setdefault(label, []).append((str(number), doc.id))
        except Exception as e:
            raise IncidentRepositoryError(f"Failed to list duplicate groups: {e}") from e

        groups = []
        for label in sorted(members):
            entries = sorted(members[label])
            if len(entries) < 2:
                continue
            groups.append(
                DuplicateGroup(
                    label=label,
                    incident_numbers=[number for number, _ in entries],
                    incident_ids=[doc_id for _, doc_id in entries],
                )
            )
        return groups


def create_incident_repository(config: FirestoreConfig) -> IncidentRepository:
    """Factory function to create an IncidentRepository.

    Args:
        config: Firestore configuration.

    Returns:
        Configured IncidentRepository instance.
    """
    return IncidentRepository(config=config)
