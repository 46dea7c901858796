"""
Event Normalizer

Maps GitHub webhook variants onto the canonical records the pipeline consumes.
"""
import logging
import re
from typing import List, Optional

from build_failure_monitor.models import BuildStatus
from build_failure_monitor.schemas import (
    BuildEvent,
    CheckRunEvent,
    Envelope,
    Ignored,
    InstallationChange,
    InstallationEvent,
    InstallationRepositoriesEvent,
    PingEvent,
    PushEvent,
    RepositoryTouch,
    UnknownEvent,
    WorkflowRun,
    WorkflowRunEvent,
)
from build_failure_monitor.utils import parse_github_timestamp

logger = logging.getLogger(__name__)

SUCCESS_CONCLUSIONS = {"success", "neutral", "skipped"}
ACTIONS_APP_SLUG = "github-actions"
CONCLUSION_SUMMARY = re.compile(r"^(Workflow|Check) '.*' concluded [a-z_]+$", re.IGNORECASE)


def conclusion_summary(kind: str, name, conclusion: Optional[str]) -> str:
    return f"{kind} '{name}' concluded {conclusion or 'unknown'}"


def is_conclusion_summary(line: str) -> bool:
    """True for the generic line above, which says nothing about why a run failed."""
    return bool(CONCLUSION_SUMMARY.match(line or ""))


def is_success(conclusion: Optional[str]) -> bool:
    return (conclusion or "").lower() in SUCCESS_CONCLUSIONS


def status_for(conclusion: Optional[str], prior_statuses: List[str]) -> str:
    """
    Decide the stored status of a completed run.

    ``prior_statuses`` are the statuses of the preceding runs of the same
    repository, branch and workflow inside the lookback window, newest first.
    A failure is flaky when that window also holds a passing run, i.e. the
    branch alternates between pass and fail instead of failing deterministically.
    """
    if is_success(conclusion):
        return BuildStatus.SUCCESS
    if any(status == BuildStatus.SUCCESS for status in prior_statuses):
        return BuildStatus.FLAKY
    return BuildStatus.FAILED


def _installation_id(event) -> Optional[str]:
    installation = getattr(event, "installation", None)
    return str(installation.id) if installation else None


def build_event_from_run(
    run: WorkflowRun,
    repo_full_name: str,
    default_branch: Optional[str] = None,
    installation_id: Optional[str] = None,
) -> BuildEvent:
    """Map a completed workflow run (webhook or REST listing) onto a BuildEvent."""
    summary_parts = [
        conclusion_summary("Workflow", run.name or run.workflow_id, run.conclusion)
    ]
    if run.display_title:
        summary_parts.append(run.display_title)

    return BuildEvent(
        external_run_id=str(run.id),
        repo_full_name=repo_full_name,
        branch=run.head_branch or default_branch or "main",
        commit_hash=run.head_sha,
        workflow_name=run.name or (str(run.workflow_id) if run.workflow_id else None),
        conclusion=run.conclusion,
        started_at=parse_github_timestamp(run.run_started_at or run.created_at),
        completed_at=parse_github_timestamp(run.updated_at),
        run_attempt=run.run_attempt or 1,
        logs_or_summary="\n".join(summary_parts),
        default_branch=default_branch,
        installation_id=installation_id,
    )


def _normalize_workflow_run(event: WorkflowRunEvent):
    run = event.workflow_run
    if event.action != "completed" or run.status not in (None, "completed"):
        return Ignored(reason=f"workflow_run {event.action} is not terminal")
    return build_event_from_run(
        run,
        event.repository.full_name,
        default_branch=event.repository.default_branch,
        installation_id=_installation_id(event),
    )


def _normalize_check_run(event: CheckRunEvent):
    check = event.check_run
    if event.action != "completed" or check.status not in (None, "completed"):
        return Ignored(reason=f"check_run {event.action} is not terminal")
    if check.app and check.app.slug == ACTIONS_APP_SLUG:
        return Ignored(reason="check_run from GitHub Actions is covered by workflow_run")

    text = ""
    if check.output:
        text = "\n".join(
            part for part in (check.output.title, check.output.summary, check.output.text) if part
        )
    if not text:
        text = conclusion_summary("Check", check.name, check.conclusion)

    branch = (check.check_suite.head_branch if check.check_suite else None) or (
        event.repository.default_branch or "main"
    )
    return BuildEvent(
        external_run_id=f"check_run:{check.id}",
        repo_full_name=event.repository.full_name,
        branch=branch,
        commit_hash=check.head_sha,
        workflow_name=check.name,
        conclusion=check.conclusion,
        started_at=parse_github_timestamp(check.started_at),
        completed_at=parse_github_timestamp(check.completed_at),
        logs_or_summary=text,
        default_branch=event.repository.default_branch,
        installation_id=_installation_id(event),
    )


def normalize(envelope: Envelope):
    """Turn a verified envelope into a BuildEvent, RepositoryTouch, InstallationChange or Ignored."""
    event = envelope.event

    if isinstance(event, WorkflowRunEvent):
        return _normalize_workflow_run(event)

    if isinstance(event, CheckRunEvent):
        return _normalize_check_run(event)

    if isinstance(event, PushEvent):
        repo = event.repository
        return RepositoryTouch(
            repo_full_name=repo.full_name,
            default_branch=repo.default_branch,
            description=repo.description,
            html_url=repo.html_url,
            installation_id=_installation_id(event),
        )

    if isinstance(event, InstallationEvent):
        account = event.installation.account
        return InstallationChange(
            action=event.action,
            installation_id=str(event.installation.id),
            account_login=account.login if account else None,
            repositories_added=[r.full_name for r in event.repositories]
            if event.action == "created"
            else [],
        )

    if isinstance(event, InstallationRepositoriesEvent):
        account = event.installation.account
        return InstallationChange(
            action=f"repositories_{event.action}",
            installation_id=str(event.installation.id),
            account_login=account.login if account else None,
            repositories_added=[r.full_name for r in event.repositories_added],
            repositories_removed=[r.full_name for r in event.repositories_removed],
        )

    if isinstance(event, PingEvent):
        return Ignored(reason="ping")

    if isinstance(event, UnknownEvent):
        logger.debug(f"Ignoring unsupported event type '{event.event_type}'")
        return Ignored(reason=f"unsupported event type: {event.event_type}")

    return Ignored(reason=f"unhandled event: {envelope.event_type}")
