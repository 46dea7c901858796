"""
Ingestion Pipeline Module

Orchestrates one webhook delivery through the medallion layers:

    Received -> Verified -> Normalized -> Classified (failed runs) -> Persisted -> Acked
                    \\-> Rejected (bad signature / malformed payload)

Persistence is an upsert keyed by (repository, external run id), so GitHub
redeliveries and archive replays never create duplicate builds or inflate
failure counts.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from build_failure_monitor import config
from build_failure_monitor.classifier import (
    canonicalize,
    error_signature,
    extract_error_messages,
)
from build_failure_monitor.errors import (
    ClassificationError,
    GitHubAPIError,
    GitHubConfigurationError,
    MalformedPayload,
    TransientStoreError,
)
from build_failure_monitor.locking import RepositoryLocks
from build_failure_monitor.models import BuildStatus, FailureType
from build_failure_monitor.normalizer import (
    is_conclusion_summary,
    is_success,
    normalize,
    status_for,
)
from build_failure_monitor.schemas import (
    BuildEvent,
    Envelope,
    Ignored,
    InstallationChange,
    RepositoryTouch,
)
from build_failure_monitor.utils import to_naive_utc, utcnow
from build_failure_monitor.webhook import parse_event, verify

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    status: str  # persisted | ignored | repository | installation
    event_type: Optional[str] = None
    delivery_id: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self):
        return {
            "status": self.status,
            "event": self.event_type,
            "delivery": self.delivery_id,
            **self.detail,
        }


@dataclass
class ClassifiedFailure:
    message: str
    signature: str
    failure_type: str
    degraded: bool
    rule_version: Optional[str]


class IngestionPipeline:
    """
    Verifies, normalizes, classifies and persists GitHub build events.
    """

    def __init__(
        self,
        store,
        classifier=None,
        archive=None,
        locks: Optional[RepositoryLocks] = None,
        webhook_secret: Optional[str] = None,
        retry_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        flaky_lookback: Optional[int] = None,
        max_failures_per_build: Optional[int] = None,
        lock_timeout: Optional[float] = None,
        now: Callable = utcnow,
        sleep: Callable = time.sleep,
    ):
        self.store = store
        self.classifier = classifier
        self.archive = archive
        self.locks = locks or RepositoryLocks()
        self.webhook_secret = config.GITHUB_WEBHOOK_SECRET if webhook_secret is None else webhook_secret
        self.retry_attempts = retry_attempts or config.STORE_RETRY_ATTEMPTS
        self.retry_base_delay = (
            config.STORE_RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay
        )
        self.flaky_lookback = flaky_lookback or config.FLAKY_LOOKBACK_RUNS
        self.max_failures_per_build = max_failures_per_build or config.MAX_FAILURES_PER_BUILD
        self.lock_timeout = config.WEBHOOK_TIMEOUT_SECONDS if lock_timeout is None else lock_timeout
        self.now = now
        self.sleep = sleep
        # Wired by the application state once the installation manager exists
        self.installation_handler: Optional[Callable[[InstallationChange], Dict[str, Any]]] = None
        self.detail_fetcher: Optional[Callable[[BuildEvent], str]] = None

    # ---- Entry points ----

    def handle_delivery(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        event_type: str,
        delivery_id: Optional[str] = None,
    ) -> DeliveryResult:
        """
        Process one webhook delivery end to end.

        Raises:
            VerificationError: the delivery is rejected (sender error, no retry)
            TransientStoreError: persistence failed after all retries
        """
        logger.info(f"Received GitHub webhook: event={event_type}, delivery={delivery_id}")
        envelope = verify(raw_body, signature_header, self.webhook_secret, event_type, delivery_id)
        logger.debug(f"Verified delivery {delivery_id}")

        if self.archive is not None:
            self.archive.store_delivery(event_type, delivery_id, envelope.payload)

        result = self.process_envelope(envelope)
        logger.info(f"Acked delivery {delivery_id}: {result.status}")
        return result

    def process_envelope(self, envelope: Envelope) -> DeliveryResult:
        normalized = normalize(envelope)
        event_type, delivery_id = envelope.event_type, envelope.delivery_id

        if isinstance(normalized, Ignored):
            logger.info(f"Ignoring {event_type} delivery {delivery_id}: {normalized.reason}")
            return DeliveryResult("ignored", event_type, delivery_id, {"reason": normalized.reason})

        if isinstance(normalized, RepositoryTouch):
            repo, created = self._with_retries(
                self.store.register_repository,
                normalized.repo_full_name,
                default_branch=normalized.default_branch,
                description=normalized.description,
                html_url=normalized.html_url,
                installation_id=normalized.installation_id,
                activate=False,
            )
            return DeliveryResult(
                "repository", event_type, delivery_id,
                {"repository": repo.full_name, "created": created},
            )

        if isinstance(normalized, InstallationChange):
            if self.installation_handler is None:
                return DeliveryResult(
                    "ignored", event_type, delivery_id, {"reason": "no installation handler"}
                )
            detail = self.installation_handler(normalized)
            return DeliveryResult("installation", event_type, delivery_id, detail)

        result = self.ingest_build_event(normalized)
        result.event_type, result.delivery_id = event_type, delivery_id
        return result

    def ingest_build_event(self, event: BuildEvent) -> DeliveryResult:
        """
        Persist one completed run and, for failures, its classified error signatures.

        Shared by webhooks, manual ingest and the Actions backfill.
        """
        now = self.now()
        started_at = to_naive_utc(event.started_at) or to_naive_utc(event.completed_at) or now
        triggered_at = min(started_at, now)
        completed_at = to_naive_utc(event.completed_at)
        duration = 0
        if completed_at is not None:
            duration = max(0, int((completed_at - started_at).total_seconds()))

        failed_candidate = (
            event.status_override in (BuildStatus.FAILED, BuildStatus.FLAKY)
            if event.status_override
            else not is_success(event.conclusion)
        )
        classified = self._classify(event) if failed_candidate else []

        with self.locks.hold(event.repo_full_name, timeout=self.lock_timeout):
            if event.status_override:
                status = event.status_override
            else:
                prior = self._with_retries(
                    self.store.recent_statuses,
                    event.repo_full_name,
                    event.branch,
                    event.workflow_name,
                    triggered_at,
                    exclude_run_id=event.external_run_id,
                    limit=self.flaky_lookback,
                )
                status = status_for(event.conclusion, prior)

            build, created = self._with_retries(
                self.store.upsert_build,
                event.repo_full_name,
                event.external_run_id,
                workflow_name=event.workflow_name,
                branch=event.branch,
                commit_hash=event.commit_hash,
                status=status,
                conclusion=event.conclusion,
                run_attempt=event.run_attempt,
                duration_seconds=duration,
                triggered_at=triggered_at,
                completed_at=completed_at,
                default_branch=event.default_branch,
                installation_id=event.installation_id,
            )
            stale = (build.run_attempt or 1) > (event.run_attempt or 1)

            counted = 0
            if status != BuildStatus.SUCCESS and not stale:
                seen_at = completed_at or triggered_at
                for failure in classified:
                    _, was_counted = self._with_retries(
                        self.store.upsert_failure,
                        build.repository_id,
                        build.id,
                        failure.signature,
                        failure.message,
                        failure.failure_type,
                        seen_at,
                        classification_degraded=failure.degraded,
                        rule_version=failure.rule_version,
                    )
                    counted += int(was_counted)

        logger.info(
            f"Persisted build {event.repo_full_name}#{event.external_run_id}: status={build.status}, "
            f"duration={build.duration_seconds}s, created={created}, failures={counted}"
        )
        return DeliveryResult(
            "persisted",
            detail={
                "buildId": build.id,
                "buildStatus": build.status,
                "created": created,
                "failuresRecorded": counted,
            },
        )

    def replay_archive(self, file_paths=None) -> Dict[str, int]:
        """Reprocess archived deliveries. They were verified on arrival, so no signature check."""
        if self.archive is None:
            return {"replayed": 0, "skipped": 0}
        replayed = skipped = 0
        for record in self.archive.iter_deliveries(file_paths):
            event_type = record.get("event_type") or "unknown"
            try:
                envelope = Envelope(
                    event_type=event_type,
                    delivery_id=record.get("delivery_id"),
                    event=parse_event(event_type, record["payload"]),
                    payload=record["payload"],
                )
            except MalformedPayload as e:
                logger.warning(f"Skipping archived delivery {record.get('delivery_id')}: {e}")
                skipped += 1
                continue
            self.process_envelope(envelope)
            replayed += 1
        logger.info(f"Replayed {replayed} archived deliveries ({skipped} skipped)")
        return {"replayed": replayed, "skipped": skipped}

    def reclassify_failures(self) -> Dict[str, Any]:
        """Re-run the current rule table over every stored failure."""
        if self.classifier is None:
            raise ClassificationError("No failure rule table is loaded")
        rule_version = self.classifier.rule_version
        examined = changed = 0
        for failure in self._with_retries(self.store.list_all_failures):
            if is_conclusion_summary(failure.error_message) and not failure.classification_degraded:
                # classified from run text that is not stored
                continue
            examined += 1
            failure_type = self.classifier.classify(failure.error_message)
            if (
                failure_type != failure.failure_type
                or failure.rule_version != rule_version
                or failure.classification_degraded
            ):
                if failure_type != failure.failure_type:
                    changed += 1
                self._with_retries(
                    self.store.update_failure_classification, failure.id, failure_type, rule_version
                )
        logger.info(f"Reclassified {examined} failures with rules {rule_version}: {changed} changed")
        return {"ruleVersion": rule_version, "examined": examined, "changed": changed}

    # ---- Internals ----

    def _classify(self, event: BuildEvent) -> List[ClassifiedFailure]:
        text = event.logs_or_summary or ""
        if self.detail_fetcher is not None:
            try:
                details = self.detail_fetcher(event)
            except (GitHubAPIError, GitHubConfigurationError) as e:
                logger.warning(f"Could not fetch job details for {event.repo_full_name}#{event.external_run_id}: {e}")
                details = ""
            if details:
                text = f"{details}\n{text}"

        keep = self.classifier.matches_rule if self.classifier is not None else None
        messages = extract_error_messages(text, self.max_failures_per_build, keep=keep)
        specific = [m for m in messages if not is_conclusion_summary(m)]
        if not specific:
            # only the generic conclusion line is left to record
            specific = messages[:1] or [f"Workflow '{event.workflow_name or 'build'}' failed"]

        degraded = False
        rule_version = None
        try:
            if event.failure_type_override:
                typed = [(m, event.failure_type_override) for m in specific]
            elif self.classifier is None:
                raise ClassificationError("No failure rule table is loaded")
            else:
                typed = self._type_messages(specific, text)
                rule_version = self.classifier.rule_version
        except ClassificationError as e:
            logger.warning(
                f"Classification degraded for {event.repo_full_name}#{event.external_run_id}: {e}"
            )
            typed = [(m, FailureType.INFRA) for m in specific]
            degraded = True

        return [
            ClassifiedFailure(
                message=canonicalize(message),
                signature=error_signature(message),
                failure_type=failure_type,
                degraded=degraded,
                rule_version=rule_version,
            )
            for message, failure_type in typed
        ]

    def _type_messages(self, messages: List[str], text: str) -> List[Tuple[str, str]]:
        """
        Pair error lines with failure types.

        The whole run text decides the build's failure type. When a rule matched,
        only the lines carrying the evidence are recorded; a generic line such as
        "Process completed with exit code 1" would otherwise be stored as a test
        failure next to the real cause.
        """
        overall = self.classifier.classify(text)
        typed = [(m, self.classifier.classify(m)) for m in messages]
        if overall == self.classifier.default:
            return typed
        evidence = [(m, t) for m, t in typed if t != self.classifier.default]
        return evidence or [(m, overall) for m in messages]

    def _with_retries(self, operation, *args, **kwargs):
        """Run a store operation, retrying TransientStoreError with exponential backoff."""
        name = getattr(operation, "__name__", repr(operation))

        def log_retry(retry_state):
            logger.warning(
                f"Store operation {name} failed (attempt {retry_state.attempt_number}), "
                f"retrying in {retry_state.next_action.sleep:.2f}s: {retry_state.outcome.exception()}"
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_base_delay, min=0),
            retry=retry_if_exception_type(TransientStoreError),
            sleep=self.sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        try:
            return retrying(operation, *args, **kwargs)
        except TransientStoreError as e:
            logger.error(f"Store operation {name} failed after {self.retry_attempts} attempts: {e}")
            raise
