"""GitHub pull request lookup used as the convergence signal."""

import logging
import re
from pathlib import Path

import httpx

from review_loop.core.errors import ConvergenceConfigError, ConvergenceError
from review_loop.db.models import PRInfo
from review_loop.integrations.git import GitError, get_remote_url

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
PR_STATES = ("open", "closed", "merged")

_HTTPS_RE = re.compile(r"^https://(?:[^@/]+@)?github\.com/([^/]+)/([^/]+?)(?:\.git)?/?$")
_SSH_RE = re.compile(r"^(?:ssh://)?git@github\.com[:/]([^/]+)/([^/]+?)(?:\.git)?$")


def parse_github_url(url: str) -> tuple[str, str]:
    """Return (owner, repo) for an https or ssh GitHub remote URL."""
    url = url.strip()
    match = _HTTPS_RE.match(url) or _SSH_RE.match(url)
    if not match:
        raise ConvergenceConfigError(f"Not a GitHub repository URL: {url}")
    return match.group(1), match.group(2)


def _pr_state(pr: dict) -> str:
    if pr.get("merged_at"):
        return "merged"
    return pr.get("state", "open")


def _to_pr_info(pr: dict) -> PRInfo:
    try:
        return PRInfo(
            number=pr["number"],
            title=pr.get("title") or "",
            url=pr["html_url"],
            state=_pr_state(pr),
            head_branch=(pr.get("head") or {}).get("ref", ""),
            base_branch=(pr.get("base") or {}).get("ref", ""),
        )
    except (KeyError, TypeError, AttributeError) as e:
        raise ConvergenceError(f"GitHub returned a malformed pull request: {e!r}") from e


class GitHubConvergenceChecker:
    """Treats a pull request for the task branch, in an accepted state, as convergence."""

    def __init__(
        self,
        token: str | None,
        owner: str,
        repo: str,
        accepted_states: tuple[str, ...] | list[str] = ("open",),
        api_url: str = DEFAULT_API_URL,
        client: httpx.Client | None = None,
        timeout: float = 10.0,
    ):
        if not token:
            raise ConvergenceConfigError("GITHUB_TOKEN environment variable not set")
        unknown = [s for s in accepted_states if s not in PR_STATES]
        if unknown or not accepted_states:
            raise ConvergenceConfigError(
                f"Invalid convergence states {list(accepted_states)}; choose from {', '.join(PR_STATES)}"
            )
        self.owner = owner
        self.repo = repo
        self.accepted_states = tuple(accepted_states)
        self._client = client or httpx.Client(base_url=api_url, timeout=timeout)
        self._headers = {
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": "review-loop",
        }

    @classmethod
    def from_repo(
        cls,
        repo_path: str | Path,
        token: str | None,
        **kwargs,
    ) -> "GitHubConvergenceChecker":
        """Build a checker for the repository behind ``origin``."""
        try:
            remote = get_remote_url(repo_path)
        except GitError as e:
            raise ConvergenceConfigError(f"Failed to read origin remote: {e}") from e
        owner, repo = parse_github_url(remote)
        return cls(token, owner, repo, **kwargs)

    def close(self):
        self._client.close()

    def list_prs(self, branch_name: str) -> list[PRInfo]:
        """Every pull request whose head is ``branch_name``, in any state."""
        return [_to_pr_info(pr) for pr in self._fetch(branch_name)]

    def check(self, branch_name: str) -> PRInfo | None:
        """Return the first pull request for the branch in an accepted state."""
        for pr in self.list_prs(branch_name):
            if pr.state in self.accepted_states:
                return pr
        return None

    def _fetch(self, branch_name: str) -> list[dict]:
        endpoint = f"/repos/{self.owner}/{self.repo}/pulls"
        params = {"head": f"{self.owner}:{branch_name}", "state": "all"}
        try:
            response = self._client.get(endpoint, params=params, headers=self._headers)
        except httpx.HTTPError as e:
            raise ConvergenceError(f"GitHub request failed: {e}") from e

        if response.status_code == 401:
            raise ConvergenceConfigError("Invalid GitHub token")
        if response.status_code == 404:
            raise ConvergenceConfigError(
                f"Repository {self.owner}/{self.repo} not found or not accessible"
            )
        if response.status_code >= 400:
            raise ConvergenceError(
                f"GitHub API request failed: {response.status_code} {response.reason_phrase}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ConvergenceError(f"GitHub returned invalid JSON: {e}") from e
        if not isinstance(data, list):
            raise ConvergenceError("GitHub returned an unexpected payload")
        logger.debug("Found %d pull request(s) for %s", len(data), branch_name)
        return data
