"""
Application state: the wired-together store, pipeline, aggregator and installation
manager that the API and the background sync loop share.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from build_failure_monitor import config
from build_failure_monitor.classifier import FailureClassifier, load_rule_table
from build_failure_monitor.database import get_engine
from build_failure_monitor.errors import ClassificationError
from build_failure_monitor.github_app import GitHubAppClient
from build_failure_monitor.installation import InstallationManager
from build_failure_monitor.locking import RepositoryLocks
from build_failure_monitor.medallion.bronze import BronzeArchive
from build_failure_monitor.medallion.gold import MetricsAggregator
from build_failure_monitor.medallion.silver import SilverStore
from build_failure_monitor.pipeline import IngestionPipeline

logger = logging.getLogger(__name__)


@dataclass
class AppState:
    store: SilverStore
    pipeline: IngestionPipeline
    metrics: MetricsAggregator
    installations: InstallationManager


def load_classifier(path=None) -> Optional[FailureClassifier]:
    """Load the failure rule table; None means classification runs degraded."""
    try:
        return FailureClassifier(load_rule_table(path))
    except ClassificationError as e:
        logger.error(f"Failure rule table unusable, classification degraded: {e}")
        return None


def build_app_state(
    engine=None,
    classifier: Optional[FailureClassifier] = None,
    archive: Optional[BronzeArchive] = None,
    client: Optional[GitHubAppClient] = None,
    webhook_secret: Optional[str] = None,
    **pipeline_options,
) -> AppState:
    engine = engine if engine is not None else get_engine(config.DATABASE_URL)
    store = SilverStore(engine)
    store.initialize()

    if classifier is None:
        classifier = load_classifier()
    if archive is None:
        archive = BronzeArchive(enabled=config.ARCHIVE_DELIVERIES)

    pipeline = IngestionPipeline(
        store,
        classifier=classifier,
        archive=archive,
        locks=RepositoryLocks(),
        webhook_secret=webhook_secret,
        **pipeline_options,
    )
    installations = InstallationManager(store, client or GitHubAppClient(), pipeline=pipeline)
    pipeline.installation_handler = installations.apply_change
    pipeline.detail_fetcher = installations.fetch_failure_details
    installations.load()

    if not pipeline.webhook_secret:
        logger.warning(
            "GITHUB_WEBHOOK_SECRET is not set; every webhook delivery will be rejected."
        )
    return AppState(
        store=store,
        pipeline=pipeline,
        metrics=MetricsAggregator(store),
        installations=installations,
    )
