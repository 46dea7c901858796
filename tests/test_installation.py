"""Tests for the GitHub App installation manager."""

from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from build_failure_monitor.errors import GitHubAPIError, GitHubConfigurationError
from build_failure_monitor.installation import InstallationState, repository_info
from build_failure_monitor.schemas import BuildEvent, InstallationChange

from tests.factories import NOW, add_build, workflow_run_payload


def github_repo(full_name, default_branch="main"):
    owner, name = full_name.split("/")
    return {
        "name": name,
        "full_name": full_name,
        "owner": {"login": owner},
        "default_branch": default_branch,
        "description": f"{name} service",
        "html_url": f"https://github.com/{full_name}",
    }


def run_item(**kwargs):
    return workflow_run_payload(**kwargs)["workflow_run"]


@pytest.fixture
def connected(installations, store):
    store.save_installation("99", account_login="acme", status="active")
    installations.load()
    return installations


class TestInstallationState:

    def test_token_valid_until_refresh_margin(self):
        state = InstallationState(access_token="t", token_expires_at=NOW + timedelta(minutes=10))
        assert state.token_valid(NOW)
        assert not state.token_valid(NOW + timedelta(minutes=6))

    def test_reset_clears_token(self):
        state = InstallationState("1", "acme", "t", NOW, [{"fullName": "acme/x"}])
        state.reset("2")
        assert state.installation_id == "2"
        assert state.access_token is None
        assert state.repositories == []

    def test_repository_info_shape(self):
        info = repository_info(github_repo("acme/widgets", "trunk"))
        assert info == {
            "fullName": "acme/widgets",
            "owner": "acme",
            "repoName": "widgets",
            "defaultBranch": "trunk",
            "description": "widgets service",
            "htmlUrl": "https://github.com/acme/widgets",
        }


class TestDiscovery:

    def test_load_restores_persisted_installation(self, connected):
        assert connected.state.installation_id == "99"
        assert connected.state.account_login == "acme"

    def test_ensure_installation_discovers_first(self, installations, github_client, store):
        github_client.list_installations.return_value = [
            {"installation_id": "5", "account_login": "acme"},
            {"installation_id": "6", "account_login": "other"},
        ]
        assert installations.ensure_installation()
        assert installations.state.installation_id == "5"
        assert store.load_installation().installation_id == "5"

    def test_no_installations(self, installations):
        assert not installations.ensure_installation()
        assert installations.status()["hasInstallation"] is False

    def test_discovery_error_recorded(self, installations, github_client):
        github_client.list_installations.side_effect = GitHubAPIError("bad credentials", 401)
        assert not installations.ensure_installation()
        assert "bad credentials" in installations.state.last_error

    def test_unconfigured_client_skips_discovery(self, installations, github_client):
        github_client.configured = False
        assert not installations.ensure_installation()
        github_client.list_installations.assert_not_called()

    def test_operations_require_installation(self, installations):
        with pytest.raises(GitHubConfigurationError):
            installations.list_repos()


class TestTokens:

    def test_token_cached_until_near_expiry(self, connected, github_client):
        assert connected.installation_token() == "ghs_test"
        assert connected.installation_token() == "ghs_test"
        assert github_client.request_installation_token.call_count == 1

    def test_expiring_token_refreshed(self, connected, github_client):
        github_client.request_installation_token.side_effect = [
            ("old", NOW + timedelta(minutes=3)),
            ("new", datetime(2030, 1, 1)),
        ]
        assert connected.installation_token() == "old"
        assert connected.installation_token() == "new"


class TestConnectAndStatus:

    def test_connect_url(self, installations):
        assert installations.connect() == "https://github.com/apps/build-failure-monitor/installations/new"

    def test_status_connected(self, connected):
        assert connected.status() == {
            "connected": True,
            "webhookEndpoint": "/api/github/webhook",
            "hasInstallation": True,
        }


class TestSync:

    def test_sync_registers_accessible_repositories(self, connected, github_client, store):
        github_client.list_installation_repositories.return_value = [
            github_repo("acme/widgets"),
            github_repo("acme/gadgets", "trunk"),
        ]
        synced = connected.sync()

        assert sorted(r.full_name for r in synced) == ["acme/gadgets", "acme/widgets"]
        gadgets = store.get_repository("acme/gadgets")
        assert gadgets.default_branch == "trunk"
        assert gadgets.installation_id == "99"
        assert store.load_installation().last_synced_at is not None
        github_client.list_installation_repositories.assert_called_with("ghs_test")

    def test_sync_deactivates_lost_repositories_without_deleting(self, connected, github_client, store):
        github_client.list_installation_repositories.return_value = [
            github_repo("acme/widgets"),
            github_repo("acme/gadgets"),
        ]
        connected.sync()
        add_build(store, 1, repo="acme/gadgets")

        github_client.list_installation_repositories.return_value = [github_repo("acme/widgets")]
        connected.sync()

        assert not store.get_repository("acme/gadgets").active
        assert store.get_repository("acme/widgets").active
        assert len(store.list_repositories()) == 2
        assert len(store.list_builds(repo_filter="acme/gadgets")) == 1

    def test_sync_reactivates_returning_repository(self, connected, github_client, store):
        store.register_repository("acme/widgets", installation_id="99")
        store.set_repository_active("acme/widgets", False)
        github_client.list_installation_repositories.return_value = [github_repo("acme/widgets")]

        connected.sync()
        assert store.get_repository("acme/widgets").active

    def test_sync_leaves_manual_repositories_alone(self, connected, github_client, store):
        store.register_repository("someone/manual")
        connected.sync()
        assert store.get_repository("someone/manual").active

    def test_callback_remembers_installation_and_syncs(self, installations, github_client, store):
        github_client.list_installation_repositories.return_value = [github_repo("acme/widgets")]
        repos = installations.handle_callback("123", "install")

        assert [r.full_name for r in repos] == ["acme/widgets"]
        assert installations.state.installation_id == "123"
        github_client.request_installation_token.assert_called_with("123")


class TestApplyChange:

    def test_created_remembers_installation(self, installations, store):
        result = installations.apply_change(
            InstallationChange("created", "42", "acme", repositories_added=["acme/widgets"])
        )
        assert result["repositoriesActivated"] == 1
        assert installations.state.installation_id == "42"
        assert store.get_repository("acme/widgets").installation_id == "42"

    def test_deleted_deactivates_repositories(self, installations, store):
        installations.apply_change(InstallationChange("created", "42", "acme", repositories_added=["acme/widgets"]))
        add_build(store, 1)

        result = installations.apply_change(InstallationChange("deleted", "42", "acme"))

        assert result["repositoriesDeactivated"] == 1
        assert not store.get_repository("acme/widgets").active
        assert store.load_installation() is None
        assert not installations.state.has_installation
        assert len(store.list_builds()) == 1

    def test_repositories_removed_keeps_history(self, installations, store):
        installations.apply_change(
            InstallationChange("created", "42", repositories_added=["acme/widgets", "acme/gadgets"])
        )
        add_build(store, 1, repo="acme/gadgets")

        result = installations.apply_change(
            InstallationChange("repositories_removed", "42", repositories_removed=["acme/gadgets"])
        )
        assert result["repositoriesDeactivated"] == 1
        assert not store.get_repository("acme/gadgets").active
        assert store.get_repository("acme/widgets").active
        assert len(store.list_builds(repo_filter="acme/gadgets")) == 1

    def test_suspend_then_unsuspend(self, installations, store):
        installations.apply_change(InstallationChange("created", "42", repositories_added=["acme/widgets"]))
        installations.apply_change(InstallationChange("suspend", "42"))
        assert not store.get_repository("acme/widgets").active

        result = installations.apply_change(InstallationChange("unsuspend", "42"))
        assert result["repositoriesActivated"] == 1
        assert store.get_repository("acme/widgets").active

    def test_unknown_action_ignored(self, installations):
        result = installations.apply_change(InstallationChange("renamed", "42"))
        assert result == {"action": "renamed", "installationId": "42"}


class TestFailureDetails:

    def event(self, run_id="1001", installation_id=None):
        return BuildEvent(
            external_run_id=run_id,
            repo_full_name="acme/widgets",
            branch="main",
            commit_hash="abc",
            workflow_name="CI",
            conclusion="failure",
            started_at=NOW,
            completed_at=NOW,
            logs_or_summary="",
            installation_id=installation_id,
        )

    def test_disabled_by_config(self, connected, github_client):
        assert connected.fetch_failure_details(self.event()) == ""
        github_client.fetch_failed_steps.assert_not_called()

    def test_fetches_failed_steps(self, connected, github_client):
        github_client.fetch_failed_steps.return_value = "test :: Run pytest failed (failure)"
        with patch("build_failure_monitor.installation.config.FETCH_JOB_DETAILS", True):
            details = connected.fetch_failure_details(self.event())
        assert details == "test :: Run pytest failed (failure)"
        github_client.fetch_failed_steps.assert_called_once_with("ghs_test", "acme", "widgets", "1001")

    def test_non_actions_runs_skipped(self, connected, github_client):
        with patch("build_failure_monitor.installation.config.FETCH_JOB_DETAILS", True):
            assert connected.fetch_failure_details(self.event("check_run:5")) == ""
            assert connected.fetch_failure_details(self.event("manual:abc")) == ""
        github_client.fetch_failed_steps.assert_not_called()

    def test_event_installation_adopted(self, installations, github_client):
        with patch("build_failure_monitor.installation.config.FETCH_JOB_DETAILS", True):
            installations.fetch_failure_details(self.event(installation_id="77"))
        assert installations.state.installation_id == "77"
        github_client.request_installation_token.assert_called_with("77")

    def test_known_installation_not_replaced_by_event(self, connected, github_client, store):
        with patch("build_failure_monitor.installation.config.FETCH_JOB_DETAILS", True):
            connected.fetch_failure_details(self.event(installation_id="77"))
        assert connected.state.installation_id == "99"
        github_client.request_installation_token.assert_called_with("99")
        assert store.load_installation().installation_id == "99"


class TestBackfill:

    def test_backfill_ingests_completed_runs(self, connected, github_client, store):
        github_client.list_workflow_runs.return_value = [
            run_item(run_id=1, conclusion="success", started="2026-10-15T08:00:00Z"),
            run_item(run_id=2, conclusion="failure", title="Error: ENOSPC no space left on device"),
            run_item(run_id=3, status="in_progress"),
            {"name": "no id"},
        ]
        summary = connected.backfill_actions("acme", "widgets", per_page=10)

        assert summary == {
            "owner": "acme",
            "repo": "widgets",
            "requested": 10,
            "fetched": 3,
            "ingested": 2,
            "failed": 1,
            "skipped": 1,
        }
        assert len(store.list_builds()) == 2
        github_client.list_workflow_runs.assert_called_once_with("ghs_test", "acme", "widgets", 10)

    def test_backfill_is_idempotent(self, connected, github_client, store):
        github_client.list_workflow_runs.return_value = [run_item(run_id=2, title="Error: segfault")]
        connected.backfill_actions("acme", "widgets")
        connected.backfill_actions("acme", "widgets")
        assert len(store.list_builds()) == 1
        assert store.list_failures()[0].frequency_count == 1

    def test_failure_reasons_not_persisted(self, connected, github_client, store):
        github_client.list_workflow_runs.return_value = [
            run_item(run_id=1, conclusion="success"),
            run_item(run_id=2, conclusion="failure"),
        ]
        github_client.fetch_failed_steps.return_value = "build :: Install dependencies failed (failure)"

        result = connected.failure_reasons("acme", "widgets")

        assert result["count"] == 1
        assert result["failedRuns"][0]["runId"] == "2"
        assert result["failedRuns"][0]["failureType"] == "dependency"
        assert result["reasons"] == {"dependency": 1}
        assert store.list_builds() == []
