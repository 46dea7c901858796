"""
Installation Manager

Keeps the GitHub App installation, its access token and the tracked repository
set in step with what GitHub reports. Repositories are never deleted: ones that
lose access are marked inactive and their history stays queryable.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from build_failure_monitor import config
from build_failure_monitor.errors import GitHubAPIError, GitHubConfigurationError
from build_failure_monitor.normalizer import build_event_from_run, conclusion_summary, is_success
from build_failure_monitor.schemas import BuildEvent, InstallationChange, WorkflowRun
from build_failure_monitor.utils import utcnow

logger = logging.getLogger(__name__)

# Refresh installation tokens this long before GitHub expires them
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)


@dataclass
class InstallationState:
    installation_id: Optional[str] = None
    account_login: Optional[str] = None
    access_token: Optional[str] = None
    token_expires_at: Optional[Any] = None
    repositories: List[Dict[str, Any]] = field(default_factory=list)
    last_error: Optional[str] = None

    @property
    def has_installation(self) -> bool:
        return bool(self.installation_id)

    def token_valid(self, now) -> bool:
        return bool(
            self.access_token
            and self.token_expires_at
            and self.token_expires_at - TOKEN_REFRESH_MARGIN > now
        )

    def reset(self, installation_id=None, account_login=None):
        self.installation_id = installation_id
        self.account_login = account_login
        self.access_token = None
        self.token_expires_at = None
        self.repositories = []


def repository_info(repo: Dict[str, Any]) -> Dict[str, Any]:
    """GitHub REST repository object -> dashboard GitHubRepository shape."""
    owner = (repo.get("owner") or {}).get("login") or repo["full_name"].split("/", 1)[0]
    return {
        "fullName": repo["full_name"],
        "owner": owner,
        "repoName": repo.get("name") or repo["full_name"].split("/", 1)[-1],
        "defaultBranch": repo.get("default_branch") or "main",
        "description": repo.get("description"),
        "htmlUrl": repo.get("html_url"),
    }


class InstallationManager:
    """
    Connect flow, installation webhooks, repository sync and Actions backfill.
    """

    def __init__(self, store, client, pipeline=None, state: Optional[InstallationState] = None, now=utcnow):
        self.store = store
        self.client = client
        self.pipeline = pipeline
        self.state = state or InstallationState()
        self.now = now
        self._lock = threading.RLock()

    # ---- State ----

    def load(self):
        """Restore the persisted installation at startup."""
        installation = self.store.load_installation()
        if installation is None:
            logger.info("No persisted GitHub App installation")
            return
        with self._lock:
            self.state.reset(installation.installation_id, installation.account_login)
            self.state.repositories = list(installation.repositories or [])
        logger.info(f"Loaded GitHub App installation {installation.installation_id}")

    def ensure_installation(self) -> bool:
        """Discover an installation through the App JWT when none is known yet."""
        if self.state.has_installation:
            return True
        if not self.client.configured:
            return False
        try:
            installations = self.client.list_installations()
        except (GitHubAPIError, GitHubConfigurationError) as e:
            self.state.last_error = str(e)
            logger.warning(f"GitHub installation discovery failed: {e}")
            return False
        if not installations:
            logger.info("GitHub App has no installations yet")
            return False

        found = installations[0]
        self._remember(found["installation_id"], found.get("account_login"))
        logger.info(f"Discovered GitHub App installation {found['installation_id']}")
        return True

    def _remember(self, installation_id: str, account_login: Optional[str] = None, status: str = "active"):
        self.store.save_installation(installation_id, account_login=account_login, status=status)
        with self._lock:
            if self.state.installation_id != installation_id:
                self.state.reset(installation_id, account_login)
            elif account_login:
                self.state.account_login = account_login
            self.state.last_error = None

    def _require_installation(self) -> str:
        if not self.ensure_installation():
            raise GitHubConfigurationError("No GitHub App installation found. Please connect GitHub first.")
        return self.state.installation_id

    def installation_token(self) -> str:
        installation_id = self._require_installation()
        with self._lock:
            if self.state.token_valid(self.now()):
                return self.state.access_token
            token, expires_at = self.client.request_installation_token(installation_id)
            self.state.access_token = token
            self.state.token_expires_at = expires_at
            return token

    # ---- Operations ----

    def connect(self) -> str:
        """URL that starts the GitHub App installation flow."""
        return f"{config.GITHUB_APP_INSTALL_BASE_URL.rstrip('/')}/{config.GITHUB_APP_SLUG}/installations/new"

    def status(self) -> Dict[str, Any]:
        has_installation = self.ensure_installation()
        return {
            "connected": has_installation,
            "webhookEndpoint": config.WEBHOOK_ENDPOINT,
            "hasInstallation": has_installation,
        }

    def list_repos(self) -> List[Dict[str, Any]]:
        token = self.installation_token()
        repos = [repository_info(r) for r in self.client.list_installation_repositories(token)]
        with self._lock:
            self.state.repositories = repos
        return repos

    def sync(self):
        """
        Reconcile tracked repositories with the installation's accessible set.

        New repositories are registered, returning ones reactivated and ones
        that lost access marked inactive. Nothing is deleted.
        """
        installation_id = self._require_installation()
        repos = self.list_repos()

        synced = []
        accessible = set()
        for info in repos:
            repo, created = self.store.register_repository(
                info["fullName"],
                default_branch=info["defaultBranch"],
                description=info["description"],
                html_url=info["htmlUrl"],
                installation_id=installation_id,
                activate=True,
            )
            accessible.add(repo.full_name_key)
            synced.append(repo)
            if created:
                logger.info(f"Registered repository {repo.full_name} from installation {installation_id}")

        deactivated = 0
        for repo in self.store.repositories_for_installation(installation_id):
            if repo.active and repo.full_name_key not in accessible:
                self.store.set_repository_active(repo.full_name, False)
                deactivated += 1

        self.store.save_installation(installation_id, repositories=repos, synced=True)
        logger.info(
            f"Synced installation {installation_id}: {len(synced)} accessible, {deactivated} deactivated"
        )
        return synced

    def handle_callback(self, installation_id: str, setup_action: Optional[str] = None):
        """GitHub redirected back after an install; remember it and sync repositories."""
        logger.info(f"GitHub App installation callback: installation_id={installation_id}, action={setup_action}")
        self._remember(str(installation_id))
        return self.sync()

    def apply_change(self, change: InstallationChange) -> Dict[str, Any]:
        """Apply an installation / installation_repositories webhook."""
        installation_id = change.installation_id
        activated = deactivated = 0

        if change.action in ("created", "unsuspend", "new_permissions_accepted"):
            self._remember(installation_id, change.account_login)
            if change.action == "unsuspend":
                for repo in self.store.repositories_for_installation(installation_id):
                    activated += int(self.store.set_repository_active(repo.full_name, True))

        elif change.action in ("deleted", "suspend"):
            status = "deleted" if change.action == "deleted" else "suspended"
            self.store.save_installation(installation_id, account_login=change.account_login, status=status)
            for repo in self.store.repositories_for_installation(installation_id):
                if repo.active:
                    deactivated += int(self.store.set_repository_active(repo.full_name, False))
            with self._lock:
                if self.state.installation_id == installation_id:
                    self.state.reset()

        elif change.action not in ("repositories_added", "repositories_removed"):
            logger.info(f"Ignoring installation action {change.action}")
            return {"action": change.action, "installationId": installation_id}

        for full_name in change.repositories_added:
            self.store.register_repository(full_name, installation_id=installation_id, activate=True)
            activated += 1
        for full_name in change.repositories_removed:
            deactivated += int(self.store.set_repository_active(full_name, False))

        logger.info(
            f"Installation {installation_id} {change.action}: "
            f"{activated} repositories activated, {deactivated} deactivated"
        )
        return {
            "action": change.action,
            "installationId": installation_id,
            "repositoriesActivated": activated,
            "repositoriesDeactivated": deactivated,
        }

    def fetch_failure_details(self, event: BuildEvent) -> str:
        """Failed job/step lines for a workflow run, used to enrich classification."""
        if not config.FETCH_JOB_DETAILS or not self.client.configured:
            return ""
        if not event.external_run_id.isdigit():
            # check runs and manual ingests have no Actions jobs
            return ""
        if event.installation_id and not self.state.has_installation:
            # a known installation is never replaced from a build event
            self._remember(event.installation_id)
        if not self.state.has_installation:
            return ""
        token = self.installation_token()
        return self.client.fetch_failed_steps(token, event.owner, event.repo_name, event.external_run_id)

    def _recent_runs(self, owner: str, repo: str, per_page: int) -> List[WorkflowRun]:
        token = self.installation_token()
        runs = []
        for item in self.client.list_workflow_runs(token, owner, repo, per_page):
            try:
                runs.append(WorkflowRun.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping malformed workflow run in {owner}/{repo}: {e}")
        return runs

    def backfill_actions(self, owner: str, repo: str, per_page: int = 20) -> Dict[str, Any]:
        """Pull recent completed workflow runs and ingest them like webhook deliveries."""
        if self.pipeline is None:
            raise GitHubConfigurationError("No ingestion pipeline attached")
        full_name = f"{owner}/{repo}"
        runs = self._recent_runs(owner, repo, per_page)

        ingested = failed = skipped = 0
        for run in runs:
            if run.status not in (None, "completed") or not run.conclusion:
                skipped += 1
                continue
            event = build_event_from_run(run, full_name, installation_id=self.state.installation_id)
            result = self.pipeline.ingest_build_event(event)
            ingested += 1
            if result.detail.get("buildStatus") != "success":
                failed += 1

        logger.info(f"Backfilled {full_name}: {ingested} runs ingested ({failed} failing), {skipped} skipped")
        return {
            "owner": owner,
            "repo": repo,
            "requested": per_page,
            "fetched": len(runs),
            "ingested": ingested,
            "failed": failed,
            "skipped": skipped,
        }

    def failure_reasons(self, owner: str, repo: str, per_page: int = 20) -> Dict[str, Any]:
        """Latest failing runs with the job/step that failed, without persisting anything."""
        token = self.installation_token()
        classifier = self.pipeline.classifier if self.pipeline is not None else None

        failed_runs = []
        reasons: Dict[str, int] = {}
        for run in self._recent_runs(owner, repo, per_page):
            if not run.conclusion or is_success(run.conclusion):
                continue
            reason = self.client.fetch_failed_steps(token, owner, repo, str(run.id))
            if not reason:
                reason = conclusion_summary("Workflow", run.name, run.conclusion)
            failure_type = classifier.classify(reason) if classifier is not None else None
            if failure_type:
                reasons[failure_type] = reasons.get(failure_type, 0) + 1
            failed_runs.append(
                {
                    "runId": str(run.id),
                    "workflowName": run.name,
                    "conclusion": run.conclusion,
                    "htmlUrl": run.html_url,
                    "headBranch": run.head_branch,
                    "headSha": run.head_sha,
                    "createdAt": run.created_at,
                    "reason": reason,
                    "failureType": failure_type,
                }
            )
        return {
            "owner": owner,
            "repo": repo,
            "requested": per_page,
            "failedRuns": failed_runs,
            "reasons": reasons,
            "count": len(failed_runs),
        }
