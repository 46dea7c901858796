"""
Silver Layer Module

Durable, normalized state: tracked repositories, builds, deduplicated failures
and the GitHub App installation record.

Every public write runs in its own transaction, so an upsert is either fully
visible or not at all. Database errors surface as TransientStoreError and are
retried by the pipeline.
"""
import logging
from contextlib import contextmanager
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import joinedload

from build_failure_monitor.database import get_sync_session
from build_failure_monitor.errors import TransientStoreError
from build_failure_monitor.models import (
    Base,
    Build,
    Failure,
    FailureOccurrence,
    Installation,
    Repository,
)
from build_failure_monitor.utils import Window, utcnow

logger = logging.getLogger(__name__)


def repository_key(full_name: str) -> str:
    return (full_name or "").strip().lower()


def _apply_window(query, column, window: Optional[Window]):
    if window is None:
        return query
    if window.start is not None:
        query = query.where(column >= window.start)
    if window.end is not None:
        query = query.where(column < window.end)
    return query


class SilverStore:
    """
    SQLAlchemy-backed store for the silver layer.
    """

    def __init__(self, engine):
        self.engine = engine

    def initialize(self):
        with self.engine.begin() as conn:
            Base.metadata.create_all(bind=conn)
        logger.info(f"Silver layer database initialized at {self.engine.url}")

    @contextmanager
    def _session(self):
        with get_sync_session(self.engine) as session:
            try:
                yield session
            except DBAPIError as e:
                session.rollback()
                raise TransientStoreError(f"Silver store operation failed: {e}") from e

    # ---- Repositories ----

    def _find_repository(self, session, full_name):
        return session.execute(
            select(Repository).where(Repository.full_name_key == repository_key(full_name))
        ).scalar_one_or_none()

    def _get_or_create_repository(self, session, full_name, **fields):
        repo = self._find_repository(session, full_name)
        if repo is None:
            owner, _, name = full_name.strip().partition("/")
            repo = Repository(
                owner=owner,
                name=name,
                full_name_key=repository_key(full_name),
                default_branch=fields.get("default_branch") or "main",
                description=fields.get("description"),
                html_url=fields.get("html_url"),
                installation_id=fields.get("installation_id"),
                active=True,
            )
            session.add(repo)
            session.flush()
            logger.info(f"Registered repository {full_name}")
            return repo, True

        for key in ("default_branch", "description", "html_url", "installation_id"):
            value = fields.get(key)
            if value is not None:
                setattr(repo, key, value)
        return repo, False

    def register_repository(
        self,
        full_name: str,
        default_branch: Optional[str] = None,
        description: Optional[str] = None,
        html_url: Optional[str] = None,
        installation_id: Optional[str] = None,
        activate: bool = True,
    ) -> Tuple[Repository, bool]:
        """
        Create or refresh a tracked repository.

        Returns:
            (repository, created)
        """
        with self._session() as session:
            repo, created = self._get_or_create_repository(
                session,
                full_name,
                default_branch=default_branch,
                description=description,
                html_url=html_url,
                installation_id=installation_id,
            )
            if activate and not repo.active:
                repo.active = True
                logger.info(f"Reactivated repository {full_name}")
            session.commit()
            return repo, created

    def get_repository(self, full_name: str) -> Optional[Repository]:
        with self._session() as session:
            return self._find_repository(session, full_name)

    def list_repositories(self, include_inactive: bool = True) -> List[Repository]:
        with self._session() as session:
            query = select(Repository).order_by(Repository.created_at)
            if not include_inactive:
                query = query.where(Repository.active.is_(True))
            return list(session.execute(query).scalars().all())

    def set_repository_active(self, full_name: str, active: bool) -> bool:
        with self._session() as session:
            repo = self._find_repository(session, full_name)
            if repo is None:
                return False
            repo.active = active
            session.commit()
            logger.info(f"Repository {full_name} marked {'active' if active else 'inactive'}")
            return True

    # ---- Builds ----

    def recent_statuses(
        self,
        full_name: str,
        branch: str,
        workflow_name: Optional[str],
        before,
        exclude_run_id: Optional[str] = None,
        limit: int = 5,
    ) -> List[str]:
        """Statuses of the latest runs of one branch+workflow triggered at or before ``before``, newest first."""
        with self._session() as session:
            repo = self._find_repository(session, full_name)
            if repo is None:
                return []
            query = (
                select(Build.status)
                .where(
                    Build.repository_id == repo.id,
                    Build.branch == branch,
                    Build.workflow_name == workflow_name,
                    Build.triggered_at <= before,
                )
                .order_by(Build.triggered_at.desc())
                .limit(limit)
            )
            if exclude_run_id is not None:
                query = query.where(Build.external_run_id != exclude_run_id)
            return [row[0] for row in session.execute(query).all()]

    def upsert_build(self, repo_full_name: str, external_run_id: str, **fields) -> Tuple[Build, bool]:
        """
        Insert or reconcile the build for (repository, external_run_id).

        The repository is synthesized when the run is the first thing ever seen for it.

        Returns:
            (build, created)
        """
        with self._session() as session:
            repo, _ = self._get_or_create_repository(
                session,
                repo_full_name,
                default_branch=fields.pop("default_branch", None),
                installation_id=fields.pop("installation_id", None),
            )
            build = session.execute(
                select(Build).where(
                    Build.repository_id == repo.id,
                    Build.external_run_id == external_run_id,
                )
            ).scalar_one_or_none()

            created = build is None
            if created:
                build = Build(repository_id=repo.id, external_run_id=external_run_id)
                session.add(build)
            elif (build.run_attempt or 1) > (fields.get("run_attempt") or 1):
                logger.info(
                    f"Ignoring stale attempt {fields.get('run_attempt')} of run {external_run_id} "
                    f"(stored attempt {build.run_attempt})"
                )
                session.commit()
                build.repository
                return build, False
            for key, value in fields.items():
                setattr(build, key, value)
            session.commit()
            # loaded while the session is open so callers can read it detached
            build.repository
            return build, created

    def list_builds(self, window: Optional[Window] = None, repo_filter: Optional[str] = None) -> List[Build]:
        with self._session() as session:
            query = select(Build).options(joinedload(Build.repository))
            query = _apply_window(query, Build.triggered_at, window)
            if repo_filter:
                query = query.join(Repository).where(
                    Repository.full_name_key == repository_key(repo_filter)
                )
            query = query.order_by(Build.triggered_at.desc())
            return list(session.execute(query).scalars().unique().all())

    def build_status_summary(self, window: Optional[Window] = None) -> Dict[str, Tuple[int, int]]:
        """{status: (build count, summed duration seconds)} for builds triggered in the window."""
        with self._session() as session:
            query = select(
                Build.status,
                func.count(Build.id),
                func.coalesce(func.sum(Build.duration_seconds), 0),
            ).group_by(Build.status)
            query = _apply_window(query, Build.triggered_at, window)
            return {status: (count, total) for status, count, total in session.execute(query).all()}

    # ---- Failures ----

    def upsert_failure(
        self,
        repository_id: str,
        build_id: str,
        signature: str,
        error_message: str,
        failure_type: str,
        seen_at,
        classification_degraded: bool = False,
        rule_version: Optional[str] = None,
    ) -> Tuple[Failure, bool]:
        """
        Record one occurrence of an error signature.

        The first occurrence per (repository, signature) creates the failure; later
        ones from other builds increment frequency_count and widen the seen range.
        An occurrence from a build already counted is a replay and changes nothing.

        Returns:
            (failure, counted) where counted is False for a replay
        """
        with self._session() as session:
            failure = session.execute(
                select(Failure).where(
                    Failure.repository_id == repository_id,
                    Failure.signature == signature,
                )
            ).scalar_one_or_none()

            if failure is None:
                failure = Failure(
                    repository_id=repository_id,
                    build_id=build_id,
                    signature=signature,
                    error_message=error_message,
                    failure_type=failure_type,
                    frequency_count=1,
                    first_seen_at=seen_at,
                    last_seen_at=seen_at,
                    classification_degraded=classification_degraded,
                    rule_version=rule_version,
                )
                session.add(failure)
                session.flush()
                session.add(FailureOccurrence(failure_id=failure.id, build_id=build_id, seen_at=seen_at))
                session.commit()
                return failure, True

            already_counted = session.execute(
                select(FailureOccurrence.id).where(
                    FailureOccurrence.failure_id == failure.id,
                    FailureOccurrence.build_id == build_id,
                )
            ).first()
            if already_counted:
                return failure, False

            failure.frequency_count += 1
            if seen_at >= failure.last_seen_at:
                failure.last_seen_at = seen_at
                failure.build_id = build_id
            if seen_at < failure.first_seen_at:
                failure.first_seen_at = seen_at
            if failure.classification_degraded and not classification_degraded:
                failure.failure_type = failure_type
                failure.classification_degraded = False
                failure.rule_version = rule_version
            session.add(FailureOccurrence(failure_id=failure.id, build_id=build_id, seen_at=seen_at))
            session.commit()
            return failure, True

    def list_failures(
        self,
        window: Optional[Window] = None,
        repo_filter: Optional[str] = None,
        type_filter: Optional[str] = None,
    ) -> List[Failure]:
        """Failures seen within the window, most frequent first."""
        with self._session() as session:
            query = select(Failure).options(joinedload(Failure.repository))
            query = _apply_window(query, Failure.last_seen_at, window)
            if repo_filter:
                query = query.join(Repository).where(
                    Repository.full_name_key == repository_key(repo_filter)
                )
            if type_filter:
                query = query.where(Failure.failure_type == type_filter)
            query = query.order_by(Failure.frequency_count.desc(), Failure.last_seen_at.desc())
            return list(session.execute(query).scalars().unique().all())

    def list_all_failures(self) -> List[Failure]:
        with self._session() as session:
            return list(session.execute(select(Failure).order_by(Failure.first_seen_at)).scalars().all())

    def failure_type_counts(self, window: Optional[Window] = None) -> Dict[str, int]:
        with self._session() as session:
            query = select(Failure.failure_type, func.count(Failure.id)).group_by(Failure.failure_type)
            query = _apply_window(query, Failure.last_seen_at, window)
            return {failure_type: count for failure_type, count in session.execute(query).all()}

    def update_failure_classification(
        self, failure_id: str, failure_type: str, rule_version: str, classification_degraded: bool = False
    ) -> None:
        with self._session() as session:
            failure = session.get(Failure, failure_id)
            if failure is None:
                return
            failure.failure_type = failure_type
            failure.rule_version = rule_version
            failure.classification_degraded = classification_degraded
            session.commit()

    # ---- Installations ----

    def save_installation(
        self,
        installation_id: str,
        account_login: Optional[str] = None,
        status: Optional[str] = None,
        repositories: Optional[List[dict]] = None,
        synced: bool = False,
    ) -> Installation:
        with self._session() as session:
            installation = session.get(Installation, installation_id)
            if installation is None:
                installation = Installation(installation_id=installation_id, repositories=[])
                session.add(installation)
            if account_login is not None:
                installation.account_login = account_login
            if status is not None:
                installation.status = status
            if repositories is not None:
                installation.repositories = repositories
            if synced:
                installation.last_synced_at = utcnow()
            installation.updated_at = utcnow()
            session.commit()
            return installation

    def load_installation(self) -> Optional[Installation]:
        """The most recently updated installation that has not been uninstalled."""
        with self._session() as session:
            return session.execute(
                select(Installation)
                .where(Installation.status != "deleted")
                .order_by(Installation.updated_at.desc())
                .limit(1)
            ).scalar_one_or_none()

    def repositories_for_installation(self, installation_id: str) -> List[Repository]:
        with self._session() as session:
            return list(
                session.execute(
                    select(Repository).where(Repository.installation_id == installation_id)
                ).scalars().all()
            )
