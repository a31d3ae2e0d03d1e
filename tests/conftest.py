"""Pytest configuration and shared fixtures.

Automatically loads .env file for all tests, ensuring environment variables
are available for both unit tests (with fakes) and integration tests (with
real credentials).

Shared fakes:
    - FakeFirestoreClient: in-memory Firestore supporting collection/document,
      where/select/stream, get_all and batch writes
    - StubOracle: similarity oracle answering from a table keyed by text pair
"""

from datetime import datetime, timedelta, timezone
import threading

import pytest

# Load .env file before any tests run
# This makes environment variables available to all tests
from src.common.env import load_env
from src.duplicate_detection.oracle import parse_similarity_payload

load_env(verbose=False)


BASE_TIME = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


# ============================================================================
# Fake Firestore
# ============================================================================


class FakeFirestoreDocument:
    """Fake Firestore document snapshot for testing."""

    def __init__(self, doc_id: str, data, exists: bool = True):
        self.id = doc_id
        self._data = data
        self.exists = exists

    def to_dict(self):
        if not self.exists:
            return None
        return dict(self._data)


class FakeFirestoreDocRef:
    """Fake Firestore document reference for testing."""

    def __init__(self, collection: "FakeFirestoreCollection", doc_id: str):
        self.collection = collection
        self.id = doc_id

    def get(self):
        data = self.collection.docs.get(self.id)
        return FakeFirestoreDocument(self.id, data or {}, exists=data is not None)

    def set(self, data: dict):
        self.collection.docs[self.id] = dict(data)

    def update(self, data: dict):
        if self.id not in self.collection.docs:
            raise KeyError(f"No document to update: {self.id}")
        self.collection.docs[self.id].update(data)


def _matches(data: dict, field: str, op: str, value) -> bool:
    if field not in data:
        return False
    actual = data[field]
    try:
        if op == "==":
            return actual == value
        if op == ">=":
            return actual >= value
        if op == ">":
            return actual > value
        if op == "<=":
            return actual <= value
        if op == "<":
            return actual < value
    except TypeError:
        return False
    raise ValueError(f"Unsupported operator in fake: {op}")


class FakeQuery:
    """Fake Firestore query with chained where/select/order_by/limit."""

    def __init__(self, collection: "FakeFirestoreCollection", filters=None, fields=None):
        self.collection = collection
        self.filters = list(filters or [])
        self.fields = fields

    def where(self, field_path=None, op_string=None, value=None, *, filter=None):
        if filter is not None:
            field_path, op_string, value = filter.field_path, filter.op_string, filter.value
        return FakeQuery(self.collection, self.filters + [(field_path, op_string, value)], self.fields)

    def select(self, field_paths):
        return FakeQuery(self.collection, self.filters, list(field_paths))

    def order_by(self, field_path, direction="ASCENDING"):
        return self

    def limit(self, count):
        return self

    def stream(self):
        client = self.collection.client
        if client.fail_reads:
            raise RuntimeError("Simulated Firestore read failure")
        for doc_id, data in list(self.collection.docs.items()):
            if all(_matches(data, *f) for f in self.filters):
                if self.fields is not None:
                    data = {k: v for k, v in data.items() if k in self.fields}
                yield FakeFirestoreDocument(doc_id, data)


class FakeFirestoreCollection:
    """Fake Firestore collection for testing."""

    def __init__(self, client: "FakeFirestoreClient", name: str):
        self.client = client
        self.name = name
        self.docs = {}

    def document(self, doc_id: str):
        return FakeFirestoreDocRef(self, doc_id)

    def where(self, *args, **kwargs):
        return FakeQuery(self).where(*args, **kwargs)

    def select(self, field_paths):
        return FakeQuery(self).select(field_paths)

    def stream(self):
        return FakeQuery(self).stream()


class FakeWriteBatch:
    """Fake WriteBatch: all updates are applied on commit, or none are."""

    def __init__(self, client: "FakeFirestoreClient"):
        self.client = client
        self._writes = []

    def update(self, ref: FakeFirestoreDocRef, data: dict):
        self._writes.append((ref, dict(data)))

    def commit(self):
        if self.client.fail_commit:
            raise RuntimeError("Simulated Firestore commit failure")
        for ref, _ in self._writes:
            if ref.id not in ref.collection.docs:
                raise KeyError(f"No document to update: {ref.id}")
        for ref, data in self._writes:
            ref.update(data)
        self.client.commits.append([ref.id for ref, _ in self._writes])
        return []


class FakeFirestoreClient:
    """Fake Firestore client for testing."""

    def __init__(self):
        self.collections = {}
        self.commits = []
        self.fail_reads = False
        self.fail_commit = False

    def collection(self, name: str):
        if name not in self.collections:
            self.collections[name] = FakeFirestoreCollection(self, name)
        return self.collections[name]

    def batch(self):
        return FakeWriteBatch(self)

    def get_all(self, references, field_paths=None):
        if self.fail_reads:
            raise RuntimeError("Simulated Firestore read failure")
        for ref in references:
            data = ref.collection.docs.get(ref.id)
            if data is None:
                yield FakeFirestoreDocument(ref.id, {}, exists=False)
                continue
            if field_paths is not None:
                data = {k: v for k, v in data.items() if k in field_paths}
            yield FakeFirestoreDocument(ref.id, data)


@pytest.fixture
def fake_firestore():
    return FakeFirestoreClient()


@pytest.fixture
def activities(fake_firestore):
    """The activities collection under the default test prefix."""
    return fake_firestore.collection("test_activities")


@pytest.fixture
def add_incident(activities):
    """Insert an incident document; returns its document id.

    Days are offsets from BASE_TIME; ``updated_day`` defaults to ``opened_day``.
    """

    def _add(
        number,
        description,
        issue="Login failure",
        system="JupyterHub",
        opened_day=0,
        updated_day=None,
        label=None,
        doc_id=None,
    ):
        doc_id = doc_id or f"doc-{number}"
        opened = BASE_TIME + timedelta(days=opened_day)
        updated = BASE_TIME + timedelta(days=opened_day if updated_day is None else updated_day)
        activities.docs[doc_id] = {
            "incident_number": number,
            "long_description": description,
            "issue_ai": issue,
            "system_ai": system,
            "open_date": opened,
            "updated_date": updated,
            "duplicate_ai": label,
        }
        return doc_id

    return _add


# ============================================================================
# Stub similarity oracle
# ============================================================================


class StubOracle:
    """Similarity oracle answering from a table keyed by unordered text pair.

    Table values may be a float, a raw response body (str, parsed with the
    oracle response contract) or an exception instance to raise.
    """

    def __init__(self, default=0.0, available=True):
        self.default = default
        self.available = available
        self.table = {}
        self.calls = []
        self._lock = threading.Lock()

    def set(self, text_a, text_b, value):
        self.table[frozenset((text_a, text_b))] = value

    def score(self, text_a, text_b):
        with self._lock:
            self.calls.append((text_a, text_b))
        value = self.table.get(frozenset((text_a, text_b)), self.default)
        if isinstance(value, Exception):
            raise value
        if isinstance(value, str):
            return parse_similarity_payload(value)
        return value

    def is_available(self):
        return self.available


@pytest.fixture
def stub_oracle():
    return StubOracle()


@pytest.fixture
def unavailable_oracle():
    return StubOracle(available=False)
