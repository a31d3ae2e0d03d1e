"""Unit tests for the duplicate detection pass driver.

Runs full passes against the in-memory Firestore fake and a stub oracle.
"""

import pytest

from src.common.config import (
    DuplicateDetectionSettings,
    EmbeddingConfig,
    FirestoreConfig,
    GeminiConfig,
)
from src.duplicate_detection import duplicate_service, gemini_oracle
from src.duplicate_detection.duplicate_service import (
    ORACLE_WORKER_HEADROOM,
    DuplicateDetectionError,
    DuplicateDetectionService,
    create_similarity_oracle,
)
from src.duplicate_detection.firestore_repository import IncidentRepository
from src.duplicate_detection.models import NO_DUPLICATE, PassStatus, TriggeredBy, parse_group_label
from src.duplicate_detection.oracle import OracleTimeoutError


@pytest.fixture
def settings():
    return DuplicateDetectionSettings(
        firestore=FirestoreConfig(collection_prefix="test_"),
        gemini=GeminiConfig(model="gemini-2.5-flash", temperature=0.0, max_output_tokens=64, location="us-central1"),
        embedding=EmbeddingConfig(model="text-embedding-004", project="test", location="us-central1"),
        similarity_oracle="gemini",
        similarity_threshold=0.70,
        window_days_before=10,
        window_days_after=10,
        oracle_timeout_sec=5.0,
        max_concurrency=4,
    )


@pytest.fixture
def make_service(settings, fake_firestore, stub_oracle):
    def _make(oracle=None):
        return DuplicateDetectionService(
            settings=settings,
            oracle=oracle or stub_oracle,
            repository=IncidentRepository(client=fake_firestore, config=settings.firestore),
        )

    return _make


def labels_of(activities):
    return {doc_id: data.get("duplicate_ai") for doc_id, data in activities.docs.items()}


def test_jupyterhub_scenario_groups_both_records(make_service, stub_oracle, activities, add_incident):
    add_incident("IN100", "JupyterHub login fails", opened_day=0)
    add_incident("IN050", "Cannot log in to JupyterHub", opened_day=3)
    stub_oracle.set("JupyterHub login fails", "Cannot log in to JupyterHub", 0.86)

    summary = make_service().run_pass()

    assert summary.status == PassStatus.COMPLETED
    assert labels_of(activities) == {
        "doc-IN100": "[IN050, IN100]",
        "doc-IN050": "[IN050, IN100]",
    }
    assert summary.groups_formed == 1
    assert summary.records_updated == 2
    # IN050 is the first anchor; IN100 is resolved as its duplicate
    assert summary.anchors_considered == 2
    assert summary.anchors_evaluated == 1
    assert summary.anchors_skipped == 1


def test_day_fifteen_candidate_is_never_evaluated(make_service, stub_oracle, activities, add_incident):
    add_incident("IN100", "JupyterHub login fails", opened_day=0)
    add_incident("IN300", "Cannot log in to JupyterHub", opened_day=15)
    stub_oracle.default = 1.0

    summary = make_service().run_pass()

    assert stub_oracle.calls == []
    assert summary.comparisons == 0
    assert labels_of(activities) == {"doc-IN100": NO_DUPLICATE, "doc-IN300": NO_DUPLICATE}


def test_unparsable_oracle_body_keeps_pair_apart(make_service, stub_oracle, activities, add_incident):
    add_incident("IN100", "JupyterHub login fails", issue="Login failure", opened_day=0)
    add_incident("IN050", "JupyterHub login fails", issue="Authentication error", opened_day=2)
    stub_oracle.set("Login failure", "Authentication error", "They describe the same problem")

    summary = make_service().run_pass()

    assert summary.oracle_failures == 2  # once per anchor
    assert summary.groups_formed == 0
    assert set(labels_of(activities).values()) == {NO_DUPLICATE}


def test_oracle_timeouts_never_abort_the_pass(make_service, stub_oracle, activities, add_incident):
    add_incident("IN001", "Notebook kernel dies", opened_day=0)
    add_incident("IN002", "Kernel restarts every minute", opened_day=1)
    stub_oracle.set("Notebook kernel dies", "Kernel restarts every minute", OracleTimeoutError("timed out"))

    summary = make_service().run_pass()

    assert summary.status == PassStatus.COMPLETED
    assert summary.oracle_failures > 0
    assert set(labels_of(activities).values()) == {NO_DUPLICATE}


def test_second_pass_updates_nothing(make_service, stub_oracle, activities, add_incident):
    add_incident("IN100", "JupyterHub login fails", opened_day=0)
    add_incident("IN050", "Cannot log in to JupyterHub", opened_day=3)
    add_incident("IN700", "VPN drops every hour", system="VPN", opened_day=1)
    stub_oracle.set("JupyterHub login fails", "Cannot log in to JupyterHub", 0.9)
    service = make_service()

    first = service.run_pass()
    labels_after_first = labels_of(activities)
    second = service.run_pass()

    assert first.records_updated == 3
    assert second.records_updated == 0
    assert second.anchors_considered == 1  # only the NO_DUPLICATE record is re-anchored
    assert labels_of(activities) == labels_after_first


def test_new_record_joins_existing_group(make_service, stub_oracle, activities, add_incident):
    add_incident("IN100", "JupyterHub login fails", opened_day=0, label="[IN050, IN100]")
    add_incident("IN050", "Cannot log in to JupyterHub", opened_day=3, label="[IN050, IN100]")
    add_incident("IN120", "JupyterHub says login failed", opened_day=5)
    stub_oracle.set("JupyterHub says login failed", "JupyterHub login fails", 0.92)

    summary = make_service().run_pass()

    expected = "[IN050, IN100, IN120]"
    assert labels_of(activities) == {"doc-IN100": expected, "doc-IN050": expected, "doc-IN120": expected}
    assert summary.anchors_considered == 1
    assert summary.records_updated == 3


def test_consistency_across_chained_anchors(make_service, stub_oracle, activities, add_incident):
    # IN001~IN002 and IN003~IN002: IN002 must not end up in two groups
    add_incident("IN001", "alpha", opened_day=0)
    add_incident("IN002", "beta", opened_day=1)
    add_incident("IN003", "gamma", opened_day=2)
    stub_oracle.set("alpha", "beta", 0.9)
    stub_oracle.set("gamma", "beta", 0.9)
    stub_oracle.set("alpha", "gamma", 0.1)

    make_service().run_pass()

    labels = labels_of(activities)
    for doc_id, label in labels.items():
        members = parse_group_label(label)
        if members is None:
            assert label == NO_DUPLICATE
            continue
        for member in members:
            assert labels[f"doc-{member}"] == label


def test_oracle_unavailable_touches_nothing(make_service, unavailable_oracle, activities, fake_firestore, add_incident):
    add_incident("IN100", "JupyterHub login fails", opened_day=0)
    add_incident("IN050", "Cannot log in to JupyterHub", opened_day=3)

    summary = make_service(unavailable_oracle).run_pass()

    assert summary.status == PassStatus.ORACLE_UNAVAILABLE
    assert summary.records_updated == 0
    assert summary.anchors_evaluated == 0
    assert unavailable_oracle.calls == []
    assert fake_firestore.commits == []
    assert set(labels_of(activities).values()) == {None}


def test_persistence_failure_reports_status(make_service, stub_oracle, activities, fake_firestore, add_incident):
    add_incident("IN100", "JupyterHub login fails", opened_day=0)
    add_incident("IN050", "Cannot log in to JupyterHub", opened_day=3)
    stub_oracle.set("JupyterHub login fails", "Cannot log in to JupyterHub", 0.9)
    fake_firestore.fail_commit = True

    summary = make_service().run_pass()

    assert summary.status == PassStatus.PERSISTENCE_FAILED
    assert summary.records_updated == 0
    assert summary.error_reason
    assert set(labels_of(activities).values()) == {None}

    # Retry after the store recovers
    fake_firestore.fail_commit = False
    retry = make_service().run_pass()
    assert retry.status == PassStatus.COMPLETED
    assert retry.records_updated == 2


def test_dry_run_persists_no_labels(make_service, stub_oracle, activities, fake_firestore, add_incident):
    add_incident("IN100", "JupyterHub login fails", opened_day=0)
    add_incident("IN050", "Cannot log in to JupyterHub", opened_day=3)
    stub_oracle.set("JupyterHub login fails", "Cannot log in to JupyterHub", 0.9)

    summary = make_service().run_pass(dry_run=True)

    assert summary.dry_run is True
    assert summary.groups_formed == 1
    assert summary.records_labelled == 2
    assert summary.records_updated == 0
    assert fake_firestore.commits == []


def test_scope_narrows_anchors_but_not_candidates(make_service, stub_oracle, activities, add_incident):
    # Anchor opened 2025-03-30; candidate opened 2025-04-05 is outside the scope month
    add_incident("IN200", "JupyterHub login fails", opened_day=29)
    add_incident("IN210", "Cannot log in to JupyterHub", opened_day=35)
    add_incident("IN900", "Printer offline", system="Printers", opened_day=60)
    stub_oracle.set("JupyterHub login fails", "Cannot log in to JupyterHub", 0.9)

    summary = make_service().run_pass(year=2025, month=3)

    assert summary.anchors_considered == 1
    assert summary.scope_year == 2025 and summary.scope_month == 3
    labels = labels_of(activities)
    assert labels["doc-IN200"] == "[IN200, IN210]"
    assert labels["doc-IN210"] == "[IN200, IN210]"
    assert labels["doc-IN900"] is None


def test_month_without_year_is_rejected(make_service):
    with pytest.raises(ValueError):
        make_service().run_pass(month=3)


def test_records_without_comparison_text_are_excluded(make_service, stub_oracle, activities, add_incident):
    add_incident("IN100", "JupyterHub login fails", opened_day=0)
    add_incident("IN101", "JupyterHub login fails", system="", opened_day=1)
    stub_oracle.default = 1.0

    summary = make_service().run_pass()

    assert summary.anchors_considered == 1
    assert labels_of(activities) == {"doc-IN100": NO_DUPLICATE, "doc-IN101": None}


@pytest.mark.parametrize(
    "anomaly",
    [{"system_ai": ""}, {"open_date": "not a date"}],
    ids=["blank_system", "bad_open_date"],
)
def test_excluded_member_of_prior_group_follows_its_group(make_service, stub_oracle, activities, add_incident, anomaly):
    add_incident("IN010", "JupyterHub login fails", opened_day=0, label="[IN010, IN020]")
    add_incident("IN020", "Cannot log in to JupyterHub", opened_day=1, label="[IN010, IN020]")
    add_incident("IN030", "JupyterHub says login failed", opened_day=2)
    activities.docs["doc-IN020"].update(anomaly)
    stub_oracle.set("JupyterHub says login failed", "JupyterHub login fails", 0.92)

    summary = make_service().run_pass()

    expected = "[IN010, IN020, IN030]"
    assert labels_of(activities) == {"doc-IN010": expected, "doc-IN020": expected, "doc-IN030": expected}
    assert summary.anchors_considered == 1
    assert summary.records_updated == 3


def test_run_summary_is_saved(make_service, fake_firestore, add_incident):
    add_incident("IN100", "JupyterHub login fails")

    summary = make_service().run_pass(triggered_by=TriggeredBy.SCHEDULED)

    stored = fake_firestore.collection("test_duplicate_runs").docs[summary.run_id]
    assert stored["triggered_by"] == "scheduled"
    assert stored["status"] == "completed"
    assert summary.run_id.startswith("run_")


def test_pool_read_failure_raises(make_service, fake_firestore, add_incident):
    add_incident("IN100", "JupyterHub login fails")
    fake_firestore.fail_reads = True

    with pytest.raises(DuplicateDetectionError):
        make_service().run_pass()


def test_service_builds_repository_from_settings(settings, stub_oracle, monkeypatch):
    built = []

    def fake_factory(config):
        built.append(config)
        return IncidentRepository(client=None, config=config)

    monkeypatch.setattr(duplicate_service, "create_incident_repository", fake_factory)

    service = DuplicateDetectionService(settings=settings, oracle=stub_oracle)

    assert built == [settings.firestore]
    assert service.repository.config is settings.firestore


def test_oracle_workers_exceed_evaluator_fan_out(settings, monkeypatch):
    created = {}

    class FakeGeminiOracle:
        def __init__(self, config, request_timeout_sec, max_workers):
            created.update(config=config, timeout=request_timeout_sec, max_workers=max_workers)

        def get_model_info(self):
            return {"oracle": "gemini"}

    monkeypatch.setattr(gemini_oracle, "GeminiSimilarityOracle", FakeGeminiOracle)

    oracle = create_similarity_oracle(settings)

    assert isinstance(oracle, FakeGeminiOracle)
    assert created["max_workers"] == settings.max_concurrency * ORACLE_WORKER_HEADROOM
    assert created["max_workers"] > settings.max_concurrency
    assert created["timeout"] == settings.oracle_timeout_sec
