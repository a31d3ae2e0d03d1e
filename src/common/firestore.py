"""Shared Firestore utilities for the incident services.

Usage:
    from src.common.firestore import get_firestore_client, activities_collection

    client = get_firestore_client()
    collection = client.collection(activities_collection("incidentops_"))
"""

from __future__ import annotations

from typing import Any, Dict, Optional, TYPE_CHECKING

from src.common.config import FirestoreConfig, load_firestore_config

if TYPE_CHECKING:
    from google.cloud.firestore import Client as FirestoreClient


class FirestoreError(Exception):
    """Base exception for Firestore-related errors."""

    pass


def get_firestore_client(
    config: Optional[FirestoreConfig] = None,
) -> "FirestoreClient":
    """Get a configured Firestore client.

    Handles the lazy import of google-cloud-firestore and the project and
    database selection from explicit config or the environment.

    Args:
        config: Optional FirestoreConfig. If not provided, loads from environment.

    Returns:
        Configured Firestore client.

    Raises:
        FirestoreError: If google-cloud-firestore is not installed or
            client initialization fails.
    """
    try:
        from google.cloud import firestore
    except ImportError as e:
        raise FirestoreError(
            "google-cloud-firestore not installed. Run: pip install google-cloud-firestore"
        ) from e

    if config is None:
        config = load_firestore_config()

    kwargs: Dict[str, Any] = {}
    if config.project_id:
        kwargs["project"] = config.project_id
    if config.database_id:
        kwargs["database"] = config.database_id

    try:
        return firestore.Client(**kwargs)
    except Exception as e:
        raise FirestoreError(f"Failed to initialize Firestore client: {e}") from e


def get_collection_prefix(config: Optional[FirestoreConfig] = None) -> str:
    """Get the collection prefix from config or environment."""
    if config is None:
        config = load_firestore_config()
    return config.collection_prefix


# Standard collection names
def activities_collection(prefix: Optional[str] = None) -> str:
    """Get the incident (activity) records collection name."""
    prefix = prefix or get_collection_prefix()
    return f"{prefix}activities"


def duplicate_runs_collection(prefix: Optional[str] = None) -> str:
    """Get the duplicate detection run summaries collection name."""
    prefix = prefix or get_collection_prefix()
    return f"{prefix}duplicate_runs"
