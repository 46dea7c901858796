"""
Webhook Schemas

Pydantic models for the GitHub webhook payloads the monitor understands, plus the
canonical records the normalizer produces from them.

Each supported ``X-GitHub-Event`` maps to exactly one payload model; anything else
is carried as ``UnknownEvent`` so new GitHub event types never break delivery.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class AccountRef(_Payload):
    login: Optional[str] = None
    type: Optional[str] = None


class RepositoryRef(_Payload):
    id: Optional[int] = None
    name: str
    full_name: str
    owner: Optional[AccountRef] = None
    default_branch: Optional[str] = None
    description: Optional[str] = None
    html_url: Optional[str] = None


class InstallationRef(_Payload):
    id: int
    account: Optional[AccountRef] = None


class WorkflowRun(_Payload):
    id: int
    name: Optional[str] = None
    workflow_id: Optional[int] = None
    head_branch: Optional[str] = None
    head_sha: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
    run_attempt: int = 1
    run_started_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    display_title: Optional[str] = None
    html_url: Optional[str] = None


class CheckRunOutput(_Payload):
    title: Optional[str] = None
    summary: Optional[str] = None
    text: Optional[str] = None


class AppRef(_Payload):
    slug: Optional[str] = None


class CheckSuiteRef(_Payload):
    head_branch: Optional[str] = None


class CheckRun(_Payload):
    id: int
    name: Optional[str] = None
    head_sha: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    output: Optional[CheckRunOutput] = None
    app: Optional[AppRef] = None
    check_suite: Optional[CheckSuiteRef] = None


class WorkflowRunEvent(_Payload):
    action: str
    workflow_run: WorkflowRun
    repository: RepositoryRef
    installation: Optional[InstallationRef] = None


class CheckRunEvent(_Payload):
    action: str
    check_run: CheckRun
    repository: RepositoryRef
    installation: Optional[InstallationRef] = None


class PushEvent(_Payload):
    ref: str
    after: Optional[str] = None
    repository: RepositoryRef
    installation: Optional[InstallationRef] = None


class InstallationRepo(_Payload):
    id: Optional[int] = None
    name: str
    full_name: str


class InstallationEvent(_Payload):
    action: str
    installation: InstallationRef
    repositories: List[InstallationRepo] = []


class InstallationRepositoriesEvent(_Payload):
    action: str
    installation: InstallationRef
    repositories_added: List[InstallationRepo] = []
    repositories_removed: List[InstallationRepo] = []


class PingEvent(_Payload):
    zen: Optional[str] = None
    hook_id: Optional[int] = None


class UnknownEvent(_Payload):
    event_type: str
    payload: Dict[str, Any] = {}


WebhookEvent = Union[
    WorkflowRunEvent,
    CheckRunEvent,
    PushEvent,
    InstallationEvent,
    InstallationRepositoriesEvent,
    PingEvent,
    UnknownEvent,
]

EVENT_MODELS = {
    "workflow_run": WorkflowRunEvent,
    "check_run": CheckRunEvent,
    "push": PushEvent,
    "installation": InstallationEvent,
    "installation_repositories": InstallationRepositoriesEvent,
    "ping": PingEvent,
}


@dataclass
class Envelope:
    """A verified, parsed webhook delivery."""

    event_type: str
    delivery_id: Optional[str]
    event: WebhookEvent
    payload: Dict[str, Any]


# ---- Canonical records produced by the normalizer ----


@dataclass
class BuildEvent:
    external_run_id: str
    repo_full_name: str
    branch: str
    commit_hash: Optional[str]
    workflow_name: Optional[str]
    conclusion: Optional[str]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    run_attempt: int = 1
    logs_or_summary: str = ""
    default_branch: Optional[str] = None
    installation_id: Optional[str] = None
    # set by a caller that already knows the status (manual ingest)
    status_override: Optional[str] = None
    failure_type_override: Optional[str] = None

    @property
    def owner(self):
        return self.repo_full_name.split("/", 1)[0]

    @property
    def repo_name(self):
        return self.repo_full_name.split("/", 1)[-1]


@dataclass
class RepositoryTouch:
    repo_full_name: str
    default_branch: Optional[str] = None
    description: Optional[str] = None
    html_url: Optional[str] = None
    installation_id: Optional[str] = None


@dataclass
class InstallationChange:
    action: str
    installation_id: str
    account_login: Optional[str] = None
    repositories_added: List[str] = field(default_factory=list)
    repositories_removed: List[str] = field(default_factory=list)


@dataclass
class Ignored:
    reason: str


NormalizedEvent = Union[BuildEvent, RepositoryTouch, InstallationChange, Ignored]
