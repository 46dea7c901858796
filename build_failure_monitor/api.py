"""
API Module

Read-only query endpoints over the silver and gold layers, the GitHub App
connect/sync surface and the webhook receiver. JSON follows the dashboard's
camelCase shapes.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from build_failure_monitor import config
from build_failure_monitor.errors import (
    ClassificationError,
    GitHubAPIError,
    GitHubConfigurationError,
    InvalidSignature,
    MalformedPayload,
    TransientStoreError,
)
from build_failure_monitor.models import BuildStatus, FailureType, new_id
from build_failure_monitor.schemas import BuildEvent
from build_failure_monitor.utils import Window, format_timestamp, parse_github_timestamp, utcnow

logger = logging.getLogger(__name__)
router = APIRouter()


def get_state(request: Request):
    return request.app.state.monitor


# ---- Serializers ----

def build_to_dict(build):
    return {
        "id": build.id,
        "repositoryName": build.repository.full_name if build.repository else None,
        "branch": build.branch,
        "status": build.status,
        "durationSeconds": build.duration_seconds,
        "triggeredAt": format_timestamp(build.triggered_at),
        "commitHash": build.commit_hash,
        "workflowName": build.workflow_name,
    }


def failure_to_dict(failure):
    return {
        "id": failure.id,
        "buildId": failure.build_id,
        "repositoryName": failure.repository.full_name if failure.repository else None,
        "failureType": failure.failure_type,
        "errorMessage": failure.error_message,
        "frequencyCount": failure.frequency_count,
        "firstSeenAt": format_timestamp(failure.first_seen_at),
        "lastSeenAt": format_timestamp(failure.last_seen_at),
    }


def repository_to_dict(repo):
    return {
        "id": repo.id,
        "owner": repo.owner,
        "repoName": repo.name,
        "defaultBranch": repo.default_branch,
        "active": repo.active,
        "createdAt": format_timestamp(repo.created_at),
    }


def _window(days: Optional[int], default_days: int) -> Window:
    days = default_days if days is None else days
    if days <= 0:
        return Window.current_month()
    return Window.last_days(days)


async def _bounded_read(func, empty, *args, **kwargs):
    """Run a blocking read in the threadpool; on timeout or store failure answer with ``empty``."""
    try:
        return await asyncio.wait_for(
            run_in_threadpool(func, *args, **kwargs), timeout=config.QUERY_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.warning(f"Query {func.__name__} exceeded {config.QUERY_TIMEOUT_SECONDS}s, returning empty result")
    except TransientStoreError as e:
        logger.error(f"Query {func.__name__} failed: {e}")
    return empty


def _github_error(e: Exception) -> HTTPException:
    if isinstance(e, GitHubConfigurationError):
        return HTTPException(status_code=401, detail=str(e))
    logger.error(f"GitHub API call failed: {e}")
    return HTTPException(status_code=502, detail=str(e))


# ---- Builds, failures, metrics ----

@router.get("/builds")
async def get_builds(
    days: Optional[int] = Query(None, description="Window in days; 0 means the current month"),
    repo: Optional[str] = Query(None, description="Filter by owner/name"),
    state=Depends(get_state),
):
    """
    Builds in the window, newest first.
    """
    def query():
        builds = state.store.list_builds(_window(days, config.BUILDS_WINDOW_DAYS), repo)
        return [build_to_dict(b) for b in builds]

    return await _bounded_read(query, [])


@router.get("/failures")
async def get_failures(
    days: Optional[int] = Query(None, description="Window in days; 0 means the current month"),
    repo: Optional[str] = Query(None, description="Filter by owner/name"),
    type: Optional[str] = Query(None, description="test | dependency | docker | infra"),
    state=Depends(get_state),
):
    """
    Distinct failures last seen in the window, most frequent first.
    """
    if type is not None and type.lower() not in FailureType.ALL:
        raise HTTPException(status_code=400, detail=f"Unknown failure type: {type}")

    def query():
        failures = state.store.list_failures(
            _window(days, config.BUILDS_WINDOW_DAYS), repo, type.lower() if type else None
        )
        return [failure_to_dict(f) for f in failures]

    return await _bounded_read(query, [])


@router.get("/failures/distribution")
async def get_failure_distribution(
    days: Optional[int] = Query(None, description="Window in days; 0 means the current month"),
    state=Depends(get_state),
):
    empty = {failure_type: 0 for failure_type in FailureType.ALL}
    return await _bounded_read(
        state.metrics.failure_distribution, empty, _window(days, config.BUILDS_WINDOW_DAYS)
    )


@router.get("/failures/recurring")
async def get_recurring_failures(
    min_frequency: int = Query(2, alias="minFrequency", ge=1),
    limit: int = Query(10, ge=1, le=100),
    state=Depends(get_state),
):
    def query():
        failures = state.metrics.recurring_failures(min_frequency=min_frequency, limit=limit)
        return [failure_to_dict(f) for f in failures]

    return await _bounded_read(query, [])


@router.post("/failures/reclassify")
def reclassify_failures(state=Depends(get_state)):
    try:
        result = state.pipeline.reclassify_failures()
    except ClassificationError as e:
        raise HTTPException(status_code=503, detail=str(e))
    state.metrics.invalidate()
    return result


@router.get("/metrics")
async def get_metrics(
    days: Optional[int] = Query(None, description="Window in days; 0 means the current month"),
    state=Depends(get_state),
):
    """
    Metrics snapshot: totalBuilds, failureRate (%), avgBuildTime (s), flakyTestCount.
    """
    def query():
        metrics = state.metrics.compute_metrics(_window(days, config.METRICS_WINDOW_DAYS))
        return {
            "totalBuilds": metrics.total_builds,
            "failureRate": metrics.failure_rate,
            "avgBuildTime": metrics.avg_build_time,
            "flakyTestCount": metrics.flaky_test_count,
        }

    empty = {"totalBuilds": 0, "failureRate": 0.0, "avgBuildTime": 0, "flakyTestCount": 0}
    return await _bounded_read(query, empty)


# ---- Tracked repositories and manual ingest ----

class RegisterRepositoryRequest(BaseModel):
    owner: str
    repoName: str
    defaultBranch: Optional[str] = None


class IngestRequest(BaseModel):
    repositoryName: str
    branch: str = "main"
    status: str
    durationSeconds: int = 0
    failureType: Optional[str] = None
    commitHash: Optional[str] = None
    triggeredAt: Optional[str] = None
    errorMessage: Optional[str] = None
    externalRunId: Optional[str] = None
    workflowName: Optional[str] = None


@router.get("/repos")
async def get_repositories(state=Depends(get_state)):
    def query():
        return [repository_to_dict(r) for r in state.store.list_repositories()]

    return await _bounded_read(query, [])


@router.post("/repos")
def register_repository(request: RegisterRepositoryRequest, state=Depends(get_state)):
    owner, name = request.owner.strip(), request.repoName.strip()
    if not owner or not name or "/" in owner or "/" in name:
        raise HTTPException(status_code=400, detail="owner and repoName are required")
    repo, created = state.store.register_repository(
        f"{owner}/{name}", default_branch=request.defaultBranch, activate=True
    )
    return repository_to_dict(repo)


@router.post("/ingest")
def ingest_build(request: IngestRequest, state=Depends(get_state)):
    """
    Record a build reported by a client instead of a webhook. The repository must be registered.
    """
    status = request.status.lower()
    if status not in BuildStatus.ALL:
        raise HTTPException(status_code=400, detail=f"Unknown build status: {request.status}")
    failure_type = request.failureType.lower() if request.failureType else None
    if failure_type is not None and failure_type not in FailureType.ALL:
        raise HTTPException(status_code=400, detail=f"Unknown failure type: {request.failureType}")
    if state.store.get_repository(request.repositoryName) is None:
        raise HTTPException(
            status_code=400,
            detail="Repository not registered. Register first via /api/repos.",
        )

    triggered_at = parse_github_timestamp(request.triggeredAt) or utcnow()
    event = BuildEvent(
        external_run_id=request.externalRunId or f"manual:{new_id()}",
        repo_full_name=request.repositoryName,
        branch=request.branch,
        commit_hash=request.commitHash,
        workflow_name=request.workflowName,
        conclusion="success" if status == BuildStatus.SUCCESS else "failure",
        started_at=triggered_at,
        completed_at=triggered_at + timedelta(seconds=max(0, request.durationSeconds)),
        logs_or_summary=request.errorMessage or "",
        status_override=status,
        failure_type_override=failure_type,
    )
    try:
        result = state.pipeline.ingest_build_event(event)
    except (TransientStoreError, TimeoutError) as e:
        raise HTTPException(status_code=503, detail=str(e) or "Repository is busy, retry later")
    state.metrics.invalidate()
    return result.to_dict()


# ---- GitHub App ----

@router.get("/github/status")
async def github_status(state=Depends(get_state)):
    empty = {"connected": False, "webhookEndpoint": config.WEBHOOK_ENDPOINT, "hasInstallation": False}
    return await _bounded_read(state.installations.status, empty)


@router.get("/github/connect")
def github_connect(state=Depends(get_state)):
    return {"installUrl": state.installations.connect()}


@router.get("/github/callback")
def github_callback(
    installation_id: str = Query(...),
    setup_action: Optional[str] = Query(None),
    state=Depends(get_state),
):
    try:
        repos = state.installations.handle_callback(installation_id, setup_action)
        logger.info(f"Auto-registered {len(repos)} repositories from GitHub App")
        return RedirectResponse(f"{config.FRONTEND_URL}?github_connected=true")
    except (GitHubAPIError, GitHubConfigurationError, TransientStoreError) as e:
        logger.error(f"Failed to process GitHub App callback: {e}")
        return RedirectResponse(f"{config.FRONTEND_URL}?github_connected=false")


@router.get("/github/repos")
def github_repositories(state=Depends(get_state)):
    try:
        return state.installations.list_repos()
    except (GitHubAPIError, GitHubConfigurationError) as e:
        raise _github_error(e)


@router.post("/github/sync")
def github_sync(state=Depends(get_state)):
    try:
        repos = state.installations.sync()
    except (GitHubAPIError, GitHubConfigurationError) as e:
        raise _github_error(e)
    except TransientStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {
        "message": "Successfully synced repositories",
        "count": len(repos),
        "repositories": [repository_to_dict(r) for r in repos],
    }


@router.post("/github/ingest-actions")
def github_ingest_actions(
    owner: str = Query(...),
    repo: str = Query(...),
    per_page: int = Query(20, alias="perPage", ge=1, le=100),
    state=Depends(get_state),
):
    try:
        summary = state.installations.backfill_actions(owner, repo, per_page)
    except (GitHubAPIError, GitHubConfigurationError) as e:
        raise _github_error(e)
    except (TransientStoreError, TimeoutError) as e:
        raise HTTPException(status_code=503, detail=str(e) or "Repository is busy, retry later")
    state.metrics.invalidate()
    return summary


@router.get("/github/actions/failure-reasons")
def github_failure_reasons(
    owner: str = Query(...),
    repo: str = Query(...),
    per_page: int = Query(20, alias="perPage", ge=1, le=100),
    state=Depends(get_state),
):
    try:
        return state.installations.failure_reasons(owner, repo, per_page)
    except (GitHubAPIError, GitHubConfigurationError) as e:
        raise _github_error(e)


@router.post("/github/webhook")
async def github_webhook(request: Request, state=Depends(get_state)):
    """
    Receive a GitHub webhook delivery.

    200 once the delivery is durably handled (or deliberately ignored), 400 for a
    malformed body, 401 for a bad signature, 503 when persistence gave up or the
    acknowledgement deadline passed; GitHub redelivers on any non-2xx.
    """
    raw_body = await request.body()
    event_type = request.headers.get("X-GitHub-Event", "unknown")
    delivery_id = request.headers.get("X-GitHub-Delivery")
    signature = request.headers.get("X-Hub-Signature-256")

    try:
        result = await asyncio.wait_for(
            run_in_threadpool(
                state.pipeline.handle_delivery, raw_body, signature, event_type, delivery_id
            ),
            timeout=config.WEBHOOK_TIMEOUT_SECONDS,
        )
    except InvalidSignature as e:
        logger.warning(f"Rejected delivery {delivery_id}: {e}")
        return JSONResponse(status_code=401, content={"error": "Invalid signature"})
    except MalformedPayload as e:
        logger.warning(f"Rejected delivery {delivery_id}: {e}")
        return JSONResponse(status_code=400, content={"error": str(e)})
    except (TransientStoreError, TimeoutError, asyncio.TimeoutError) as e:
        logger.error(f"Delivery {delivery_id} not persisted, asking GitHub to retry: {e!r}")
        return JSONResponse(status_code=503, content={"error": "Temporarily unavailable"})

    if result.status == "persisted":
        state.metrics.invalidate()
    return result.to_dict()
