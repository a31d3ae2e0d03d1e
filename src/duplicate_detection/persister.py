"""Atomic persistence of duplicate labels."""

from typing import Dict, Mapping
import logging

from src.duplicate_detection.firestore_repository import IncidentRepository, IncidentRepositoryError

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when labels could not be persisted; nothing from the pass was written."""

    pass


class ResultPersister:
    """Writes the labels computed by a pass back to the record store."""

    def __init__(self, repository: IncidentRepository):
        self.repository = repository

    def pending_changes(self, labels: Mapping[str, str]) -> Dict[str, str]:
        """Return the subset of ``labels`` that differs from what is stored.

        Records deleted since the pool was read are dropped silently.
        """
        try:
            current = self.repository.get_current_labels(labels.keys())
        except IncidentRepositoryError as e:
            raise PersistenceError(str(e)) from e

        missing = [incident_id for incident_id in labels if incident_id not in current]
        if missing:
            logger.info(
                "Skipping labels for deleted incidents",
                extra={"count": len(missing), "incident_ids": missing[:20]},
            )

        return {
            incident_id: label
            for incident_id, label in labels.items()
            if incident_id in current and current[incident_id] != label
        }

    def persist(self, labels: Mapping[str, str]) -> int:
        """Persist labels in one atomic batch.

        Args:
            labels: Mapping of incident id to canonical label or NO_DUPLICATE.

        Returns:
            Number of records whose label changed.

        Raises:
            PersistenceError: If reading or committing fails.
        """
        if not labels:
            return 0

        changes = self.pending_changes(labels)
        if not changes:
            return 0

        try:
            self.repository.write_duplicate_labels(changes)
        except IncidentRepositoryError as e:
            raise PersistenceError(str(e)) from e
        return len(changes)
