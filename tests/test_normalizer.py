"""Tests for mapping GitHub events onto canonical records."""

from datetime import datetime

import pytest

from build_failure_monitor.models import BuildStatus
from build_failure_monitor.normalizer import is_success, normalize, status_for
from build_failure_monitor.schemas import (
    BuildEvent,
    Envelope,
    Ignored,
    InstallationChange,
    RepositoryTouch,
)
from build_failure_monitor.webhook import parse_event

from tests.factories import workflow_run_payload


def envelope(event_type, payload):
    return Envelope(event_type, "delivery", parse_event(event_type, payload), payload)


def check_run_payload(app_slug="circleci", conclusion="failure", status="completed"):
    return {
        "action": "completed",
        "check_run": {
            "id": 555,
            "name": "lint",
            "head_sha": "abc1234",
            "status": status,
            "conclusion": conclusion,
            "started_at": "2026-10-15T09:00:00Z",
            "completed_at": "2026-10-15T09:01:30Z",
            "output": {"title": "Lint failed", "summary": "error: unused import os"},
            "app": {"slug": app_slug},
            "check_suite": {"head_branch": "feature/x"},
        },
        "repository": {"name": "widgets", "full_name": "acme/widgets", "default_branch": "main"},
    }


class TestStatusFor:

    @pytest.mark.parametrize("conclusion", ["success", "neutral", "skipped", "SUCCESS"])
    def test_success_conclusions(self, conclusion):
        assert is_success(conclusion)
        assert status_for(conclusion, []) == BuildStatus.SUCCESS

    @pytest.mark.parametrize("conclusion", ["failure", "timed_out", "cancelled", "startup_failure", None])
    def test_failure_without_history_is_failed(self, conclusion):
        assert status_for(conclusion, []) == BuildStatus.FAILED

    def test_failure_after_pass_is_flaky(self):
        assert status_for("failure", [BuildStatus.SUCCESS]) == BuildStatus.FLAKY

    def test_consistent_failures_stay_failed(self):
        assert status_for("failure", [BuildStatus.FAILED, BuildStatus.FAILED]) == BuildStatus.FAILED

    def test_pass_anywhere_in_lookback_counts(self):
        prior = [BuildStatus.FAILED, BuildStatus.FLAKY, BuildStatus.SUCCESS]
        assert status_for("failure", prior) == BuildStatus.FLAKY


class TestNormalizeWorkflowRun:

    def test_completed_run_becomes_build_event(self):
        payload = workflow_run_payload(run_id=77, conclusion="failure", title="Fix parser", installation_id=9)
        event = normalize(envelope("workflow_run", payload))

        assert isinstance(event, BuildEvent)
        assert event.external_run_id == "77"
        assert event.repo_full_name == "acme/widgets"
        assert event.owner == "acme"
        assert event.repo_name == "widgets"
        assert event.branch == "main"
        assert event.commit_hash == "sha77"
        assert event.workflow_name == "CI"
        assert event.conclusion == "failure"
        assert event.started_at == datetime(2026, 10, 15, 10, 0, 0)
        assert event.completed_at == datetime(2026, 10, 15, 10, 5, 0)
        assert event.installation_id == "9"
        assert "concluded failure" in event.logs_or_summary
        assert "Fix parser" in event.logs_or_summary

    @pytest.mark.parametrize(
        "action,status", [("requested", "queued"), ("in_progress", "in_progress")]
    )
    def test_non_terminal_run_ignored(self, action, status):
        payload = workflow_run_payload(action=action, status=status)
        assert isinstance(normalize(envelope("workflow_run", payload)), Ignored)


class TestNormalizeCheckRun:

    def test_third_party_check_run_becomes_build_event(self):
        event = normalize(envelope("check_run", check_run_payload()))
        assert isinstance(event, BuildEvent)
        assert event.external_run_id == "check_run:555"
        assert event.branch == "feature/x"
        assert event.workflow_name == "lint"
        assert "unused import" in event.logs_or_summary

    def test_actions_check_run_ignored(self):
        result = normalize(envelope("check_run", check_run_payload(app_slug="github-actions")))
        assert isinstance(result, Ignored)

    def test_incomplete_check_run_ignored(self):
        payload = check_run_payload(status="in_progress")
        payload["action"] = "created"
        assert isinstance(normalize(envelope("check_run", payload)), Ignored)


class TestNormalizeOtherEvents:

    def test_push_touches_repository(self):
        payload = {
            "ref": "refs/heads/main",
            "repository": {
                "name": "widgets",
                "full_name": "acme/widgets",
                "default_branch": "trunk",
                "html_url": "https://github.com/acme/widgets",
            },
        }
        result = normalize(envelope("push", payload))
        assert isinstance(result, RepositoryTouch)
        assert result.default_branch == "trunk"

    def test_installation_created(self):
        payload = {
            "action": "created",
            "installation": {"id": 31, "account": {"login": "acme"}},
            "repositories": [{"name": "widgets", "full_name": "acme/widgets"}],
        }
        result = normalize(envelope("installation", payload))
        assert isinstance(result, InstallationChange)
        assert result.action == "created"
        assert result.installation_id == "31"
        assert result.account_login == "acme"
        assert result.repositories_added == ["acme/widgets"]

    def test_installation_repositories_removed(self):
        payload = {
            "action": "removed",
            "installation": {"id": 31},
            "repositories_removed": [{"name": "old", "full_name": "acme/old"}],
        }
        result = normalize(envelope("installation_repositories", payload))
        assert result.action == "repositories_removed"
        assert result.repositories_removed == ["acme/old"]

    def test_ping_and_unknown_ignored(self):
        assert isinstance(normalize(envelope("ping", {"zen": "hi"})), Ignored)
        assert isinstance(normalize(envelope("star", {"action": "created"})), Ignored)
