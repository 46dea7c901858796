"""Shared fixtures for build failure monitor tests."""

import os
import tempfile
from datetime import datetime
from unittest.mock import MagicMock

import pytest

# Set test environment variables before importing modules
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="bfm-test-"))
os.environ.setdefault("GITHUB_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("FETCH_JOB_DETAILS", "false")

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from build_failure_monitor.classifier import FailureClassifier, load_rule_table
from build_failure_monitor.installation import InstallationManager
from build_failure_monitor.locking import RepositoryLocks
from build_failure_monitor.medallion.bronze import BronzeArchive
from build_failure_monitor.medallion.gold import MetricsAggregator
from build_failure_monitor.medallion.silver import SilverStore
from build_failure_monitor.pipeline import IngestionPipeline
from build_failure_monitor.state import AppState

from tests.factories import NOW, WEBHOOK_SECRET


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    store = SilverStore(engine)
    store.initialize()
    return store


@pytest.fixture
def classifier():
    return FailureClassifier(load_rule_table())


@pytest.fixture
def archive(tmp_path):
    return BronzeArchive(directory=tmp_path / "bronze")


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def pipeline(store, classifier, archive, sleeps):
    return IngestionPipeline(
        store,
        classifier=classifier,
        archive=archive,
        locks=RepositoryLocks(),
        webhook_secret=WEBHOOK_SECRET,
        retry_attempts=3,
        retry_base_delay=0.1,
        now=lambda: NOW,
        sleep=sleeps.append,
    )


@pytest.fixture
def github_client():
    client = MagicMock()
    client.configured = True
    client.request_installation_token.return_value = ("ghs_test", datetime(2030, 1, 1))
    client.list_installations.return_value = []
    client.list_installation_repositories.return_value = []
    client.list_workflow_runs.return_value = []
    client.fetch_failed_steps.return_value = ""
    return client


@pytest.fixture
def installations(store, github_client, pipeline):
    manager = InstallationManager(store, github_client, pipeline=pipeline, now=lambda: NOW)
    pipeline.installation_handler = manager.apply_change
    return manager


@pytest.fixture
def app_state(store, pipeline, installations):
    return AppState(
        store=store,
        pipeline=pipeline,
        metrics=MetricsAggregator(store, cache_ttl_seconds=0),
        installations=installations,
    )


@pytest.fixture
def client(app_state):
    """Create test client over the injected state."""
    from fastapi.testclient import TestClient

    from main import create_app

    app = create_app(state=app_state, start_sync=False, replay=False)
    with TestClient(app) as c:
        yield c
