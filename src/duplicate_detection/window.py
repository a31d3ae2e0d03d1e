"""Candidate window selection for duplicate detection.

An anchor incident is only compared against incidents opened close to its own
lifetime: from ``days_before`` days before it was opened up to ``days_after``
days after its last update, both ends inclusive.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List
import logging

from src.common.config import DEFAULT_WINDOW_DAYS_AFTER, DEFAULT_WINDOW_DAYS_BEFORE
from src.duplicate_detection.models import IncidentRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CandidateWindow:
    """Closed time interval bounding the candidate search of one anchor."""

    start: datetime
    end: datetime

    @property
    def is_inverted(self) -> bool:
        return self.end < self.start

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


def candidate_window(
    anchor: IncidentRecord,
    days_before: int = DEFAULT_WINDOW_DAYS_BEFORE,
    days_after: int = DEFAULT_WINDOW_DAYS_AFTER,
) -> CandidateWindow:
    """Compute the candidate window of an anchor.

    Args:
        anchor: Incident whose window is computed.
        days_before: Days admitted before the anchor's open date.
        days_after: Days admitted after the anchor's last update.

    Returns:
        CandidateWindow, possibly inverted when the anchor's last update
        precedes its open date by more than the window padding.
    """
    return CandidateWindow(
        start=anchor.opened_at - timedelta(days=days_before),
        end=anchor.last_updated_at + timedelta(days=days_after),
    )


def select_candidates(
    anchor: IncidentRecord,
    all_records: Iterable[IncidentRecord],
    days_before: int = DEFAULT_WINDOW_DAYS_BEFORE,
    days_after: int = DEFAULT_WINDOW_DAYS_AFTER,
) -> List[IncidentRecord]:
    """Select every other incident opened inside the anchor's window.

    Args:
        anchor: Incident being evaluated.
        all_records: Full record pool (the anchor itself may be included).
        days_before: Days admitted before the anchor's open date.
        days_after: Days admitted after the anchor's last update.

    Returns:
        Candidates in pool order. An inverted window yields no candidates.
    """
    window = candidate_window(anchor, days_before=days_before, days_after=days_after)

    if window.is_inverted:
        logger.debug(
            "Inverted candidate window, no candidates selected",
            extra={
                "incident_id": anchor.incident_id,
                "window_start": window.start.isoformat(),
                "window_end": window.end.isoformat(),
            },
        )
        return []

    return [
        record
        for record in all_records
        if record.incident_id != anchor.incident_id and window.contains(record.opened_at)
    ]
