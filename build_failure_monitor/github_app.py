"""
GitHub App Client

Talks to the GitHub REST API as a GitHub App:
- App JWT (RS256) for app-level endpoints
- installation access tokens for repository endpoints
"""
import base64
import binascii
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import jwt
import requests

from build_failure_monitor import config
from build_failure_monitor.errors import GitHubAPIError, GitHubConfigurationError
from build_failure_monitor.utils import parse_github_timestamp

logger = logging.getLogger(__name__)

MAX_PAGES = 10
PER_PAGE = 100  # 100 is the max for GitHub API


def load_private_key(raw: str = "", path: str = "") -> str:
    """
    Resolve the App private key.

    Accepted forms: a file path, PEM text (escaped newlines allowed), or base64 of PEM text.
    """
    if path and path.strip():
        key_path = Path(path.strip().strip('"'))
        if not key_path.is_file():
            raise GitHubConfigurationError(f"GitHub private key path is not a file: {key_path}")
        return key_path.read_text()

    value = (raw or "").strip()
    if not value:
        raise GitHubConfigurationError("GitHub App private key is not configured")
    if "BEGIN " in value:
        return value.replace("\\n", "\n")
    try:
        decoded = base64.b64decode("".join(value.split()), validate=True).decode("ascii")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise GitHubConfigurationError(
            "GITHUB_APP_PRIVATE_KEY must be PEM text, base64 PEM, or set GITHUB_APP_PRIVATE_KEY_PATH"
        ) from e
    if "BEGIN " not in decoded:
        raise GitHubConfigurationError("Decoded GitHub App private key is not PEM")
    return decoded


def get_next_page_url(link_header: str) -> Optional[str]:
    if 'rel="next"' in link_header:
        for part in link_header.split(","):
            if 'rel="next"' in part:
                url_part = part.split(";")[0].strip().strip("<>")
                return url_part
    return None


class GitHubAppClient:
    """
    Thin wrapper over the GitHub REST endpoints the monitor needs.
    """

    def __init__(
        self,
        app_id: Optional[str] = None,
        private_key: Optional[str] = None,
        private_key_path: Optional[str] = None,
        api_url: Optional[str] = None,
        http: Optional[requests.Session] = None,
        timeout: Optional[int] = None,
    ):
        self.app_id = config.GITHUB_APP_ID if app_id is None else app_id
        self.private_key = config.GITHUB_APP_PRIVATE_KEY if private_key is None else private_key
        self.private_key_path = (
            config.GITHUB_APP_PRIVATE_KEY_PATH if private_key_path is None else private_key_path
        )
        self.api_url = (api_url or config.GITHUB_API_URL).rstrip("/")
        self.http = http or requests.Session()
        self.timeout = timeout or config.GITHUB_REQUEST_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        return bool(self.app_id and (self.private_key or self.private_key_path))

    def generate_jwt(self) -> str:
        """App JWT, valid for 10 minutes (GitHub's maximum), backdated for clock drift."""
        if not self.app_id:
            raise GitHubConfigurationError("GITHUB_APP_ID is not configured")
        now = int(time.time())
        payload = {"iat": now - 60, "exp": now + 600, "iss": str(self.app_id)}
        pem = load_private_key(self.private_key, self.private_key_path)
        return jwt.encode(payload, pem, algorithm="RS256")

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": config.GITHUB_API_VERSION,
            "User-Agent": "Build-Failure-Monitor",
        }

    def _request(self, method: str, url: str, token: str, **kwargs) -> requests.Response:
        if not url.startswith("http"):
            url = f"{self.api_url}{url}"
        try:
            response = self.http.request(
                method, url, headers=self._headers(token), timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise GitHubAPIError(f"GitHub API request to {url} failed: {e}") from e

        if response.status_code == 403 and response.headers.get("X-RateLimit-Remaining") == "0":
            reset = response.headers.get("X-RateLimit-Reset")
            raise GitHubAPIError(f"GitHub API rate limit exceeded (resets at {reset})", 403)
        if response.status_code >= 400:
            raise GitHubAPIError(
                f"GitHub API {method} {url} returned {response.status_code}: {response.text[:200]}",
                response.status_code,
            )
        return response

    def _get_paginated(self, path: str, token: str, key: Optional[str] = None, params=None) -> List[Any]:
        items = []
        next_url = path
        page_count = 0
        request_params = dict(params or {})
        request_params.setdefault("per_page", PER_PAGE)
        while next_url and page_count < MAX_PAGES:
            response = self._request(
                "GET", next_url, token, params=request_params if page_count == 0 else None
            )
            data = response.json()
            page_items = data.get(key, []) if key else data
            if not page_items:
                break
            items.extend(page_items)
            next_url = get_next_page_url(response.headers.get("Link", ""))
            page_count += 1
        return items

    # ---- App level (JWT) ----

    def request_installation_token(self, installation_id: str) -> Tuple[str, Any]:
        """Exchange the App JWT for an installation access token (valid for one hour)."""
        response = self._request(
            "POST",
            f"/app/installations/{installation_id}/access_tokens",
            self.generate_jwt(),
            json={},
        )
        data = response.json()
        token = data.get("token")
        expires_at = parse_github_timestamp(data.get("expires_at"))
        if not token or not expires_at:
            raise GitHubAPIError("GitHub installation token response missing token or expires_at")
        logger.info(f"Obtained installation token for {installation_id} (expires {expires_at})")
        return token, expires_at

    def list_installations(self) -> List[Dict[str, Optional[str]]]:
        installations = self._get_paginated("/app/installations", self.generate_jwt())
        result = []
        for item in installations:
            if item.get("id") is None:
                continue
            account = item.get("account") or {}
            result.append(
                {"installation_id": str(item["id"]), "account_login": account.get("login")}
            )
        return result

    # ---- Installation level (installation token) ----

    def list_installation_repositories(self, token: str) -> List[Dict[str, Any]]:
        repos = self._get_paginated("/installation/repositories", token, key="repositories")
        logger.info(f"Fetched {len(repos)} repositories from GitHub App installation")
        return repos

    def list_workflow_runs(self, token: str, owner: str, repo: str, per_page: int = 20) -> List[Dict[str, Any]]:
        per_page = max(1, min(per_page, PER_PAGE))
        response = self._request(
            "GET",
            f"/repos/{owner}/{repo}/actions/runs",
            token,
            params={"per_page": per_page, "status": "completed"},
        )
        runs = response.json().get("workflow_runs")
        if not isinstance(runs, list):
            raise GitHubAPIError("Unexpected GitHub API response: workflow_runs missing")
        return runs

    def fetch_failed_steps(self, token: str, owner: str, repo: str, run_id: str) -> str:
        """
        Describe the failing jobs and steps of a run, one "job :: step (conclusion)" line each.

        Returns an empty string when no failing step is reported (cancelled runs, for example).
        """
        jobs = self._get_paginated(f"/repos/{owner}/{repo}/actions/runs/{run_id}/jobs", token, key="jobs")
        lines = []
        for job in jobs:
            job_name = job.get("name") or "job"
            job_conclusion = (job.get("conclusion") or "").lower()
            failed_steps = [
                step
                for step in job.get("steps") or []
                if (step.get("conclusion") or "").lower() not in ("", "success", "skipped", "neutral")
            ]
            for step in failed_steps:
                lines.append(f"{job_name} :: {step.get('name')} failed ({step.get('conclusion')})")
            if not failed_steps and job_conclusion not in ("", "success", "skipped", "neutral"):
                lines.append(f"{job_name} failed (job conclusion: {job_conclusion})")
        return "\n".join(lines)
