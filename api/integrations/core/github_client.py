"""
GitHub API Client.

Direct REST client for the activity the dashboard needs: the authenticated
user, their most recently updated repositories, and commits, pull requests
and issues authored by (or assigned to) them.

GitHub OAuth app tokens don't expire and can't be refreshed.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import httpx

from .api_client import ProviderAPIClient, is_fatal_for_sync
from .errors import IntegrationError, RateLimitError
from .tokens import parse_timestamp

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"

# Only the most recently updated repos are scanned per sync
MAX_REPOS = 20
PER_PAGE = 100


@dataclass
class GitHubUser:
    login: str
    id: int
    name: Optional[str] = None


@dataclass
class GitHubRepo:
    full_name: str
    name: str
    html_url: str
    private: bool = False
    updated_at: Optional[datetime] = None


@dataclass
class GitHubCommit:
    sha: str
    message: str
    url: str
    repo: str
    author_name: Optional[str]
    authored_at: datetime


@dataclass
class GitHubPullRequest:
    number: int
    title: str
    state: str  # open | closed | merged
    url: str
    repo: str
    created_at: datetime
    merged_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None


@dataclass
class GitHubIssue:
    number: int
    title: str
    state: str
    url: str
    repo: str
    created_at: datetime
    closed_at: Optional[datetime] = None
    labels: list[str] = field(default_factory=list)
    assignees: list[str] = field(default_factory=list)


@dataclass
class GitHubActivity:
    commits: list[GitHubCommit]
    pull_requests: list[GitHubPullRequest]
    issues: list[GitHubIssue]

    @property
    def total(self) -> int:
        return len(self.commits) + len(self.pull_requests) + len(self.issues)


class GitHubAPIClient(ProviderAPIClient):
    """
    Direct API client for GitHub.

    Usage:
        client = GitHubAPIClient(access_token)
        activity = await client.fetch_activity(since)
    """

    provider = "github"
    base_url = GITHUB_API_BASE

    def __init__(self, access_token: str):
        super().__init__(access_token)
        self._user: Optional[GitHubUser] = None
        self._repos: Optional[list[GitHubRepo]] = None

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _classify_response(self, response: httpx.Response) -> IntegrationError:
        # GitHub signals primary rate limits as 403 with no remaining quota
        if response.status_code == 403 and response.headers.get("X-RateLimit-Remaining") == "0":
            retry_after = None
            reset = response.headers.get("X-RateLimit-Reset")
            if reset and reset.isdigit():
                retry_after = max(0, int(reset) - int(datetime.now().timestamp()))
            return RateLimitError(self.provider, retry_after=retry_after, status_code=403)
        return super()._classify_response(response)

    # =========================================================================
    # User & Repositories
    # =========================================================================

    async def fetch_user(self) -> GitHubUser:
        if self._user is None:
            data = await self._get("/user")
            self._user = GitHubUser(login=data["login"], id=data["id"], name=data.get("name"))
        return self._user

    async def fetch_repositories(self, limit: int = MAX_REPOS) -> list[GitHubRepo]:
        """Most recently updated repositories visible to the user."""
        if self._repos is None:
            data = await self._get(
                "/user/repos",
                params={"sort": "updated", "per_page": PER_PAGE},
            )
            self._repos = [
                GitHubRepo(
                    full_name=repo["full_name"],
                    name=repo.get("name") or repo["full_name"].split("/")[-1],
                    html_url=repo.get("html_url", ""),
                    private=repo.get("private", False),
                    updated_at=parse_timestamp(repo.get("updated_at")),
                )
                for repo in data or []
            ]
        return self._repos[:limit]

    async def _for_each_repo(self, fetch_one, label: str) -> list:
        """Run `fetch_one(repo)` over the scanned repos, skipping per-repo failures."""
        results: list = []
        for repo in await self.fetch_repositories():
            try:
                results.extend(await fetch_one(repo))
            except IntegrationError as e:
                if is_fatal_for_sync(e):
                    raise
                # Empty repos answer 409, archived/forbidden ones 403/404
                logger.info(f"[GITHUB_API] Skipping {label} for {repo.full_name}: {e.message}")
        return results

    # =========================================================================
    # Activity
    # =========================================================================

    async def fetch_commits(self, since: datetime) -> list[GitHubCommit]:
        user = await self.fetch_user()

        async def fetch_one(repo: GitHubRepo) -> list[GitHubCommit]:
            data = await self._get(
                f"/repos/{repo.full_name}/commits",
                params={"author": user.login, "since": since.isoformat(), "per_page": PER_PAGE},
            )
            commits = []
            for item in data or []:
                author = (item.get("commit") or {}).get("author") or {}
                authored_at = parse_timestamp(author.get("date"))
                if authored_at is None or authored_at < since:
                    continue
                commits.append(GitHubCommit(
                    sha=item["sha"],
                    message=(item.get("commit") or {}).get("message", ""),
                    url=item.get("html_url", ""),
                    repo=repo.full_name,
                    author_name=author.get("name"),
                    authored_at=authored_at,
                ))
            return commits

        return await self._for_each_repo(fetch_one, "commits")

    async def fetch_pull_requests(self, since: datetime) -> list[GitHubPullRequest]:
        user = await self.fetch_user()

        async def fetch_one(repo: GitHubRepo) -> list[GitHubPullRequest]:
            data = await self._get(
                f"/repos/{repo.full_name}/pulls",
                params={"state": "all", "sort": "created", "direction": "desc", "per_page": PER_PAGE},
            )
            pulls = []
            for pr in data or []:
                if (pr.get("user") or {}).get("login") != user.login:
                    continue
                created_at = parse_timestamp(pr.get("created_at"))
                if created_at is None or created_at < since:
                    continue
                merged_at = parse_timestamp(pr.get("merged_at"))
                pulls.append(GitHubPullRequest(
                    number=pr["number"],
                    title=pr.get("title", ""),
                    state="merged" if merged_at else pr.get("state", "open"),
                    url=pr.get("html_url", ""),
                    repo=repo.full_name,
                    created_at=created_at,
                    merged_at=merged_at,
                    closed_at=parse_timestamp(pr.get("closed_at")),
                ))
            return pulls

        return await self._for_each_repo(fetch_one, "pull requests")

    async def fetch_issues(self, since: datetime) -> list[GitHubIssue]:
        user = await self.fetch_user()

        async def fetch_one(repo: GitHubRepo) -> list[GitHubIssue]:
            data = await self._get(
                f"/repos/{repo.full_name}/issues",
                params={
                    "state": "all",
                    "sort": "created",
                    "direction": "desc",
                    "since": since.isoformat(),
                    "per_page": PER_PAGE,
                },
            )
            issues = []
            for issue in data or []:
                # The issues endpoint also returns pull requests
                if issue.get("pull_request"):
                    continue
                assignees = [a.get("login") for a in issue.get("assignees") or []]
                is_creator = (issue.get("user") or {}).get("login") == user.login
                if not is_creator and user.login not in assignees:
                    continue
                created_at = parse_timestamp(issue.get("created_at"))
                if created_at is None or created_at < since:
                    continue
                issues.append(GitHubIssue(
                    number=issue["number"],
                    title=issue.get("title", ""),
                    state=issue.get("state", "open"),
                    url=issue.get("html_url", ""),
                    repo=repo.full_name,
                    created_at=created_at,
                    closed_at=parse_timestamp(issue.get("closed_at")),
                    labels=[label.get("name") for label in issue.get("labels") or [] if isinstance(label, dict)],
                    assignees=assignees,
                ))
            return issues

        return await self._for_each_repo(fetch_one, "issues")

    async def fetch_activity(self, since: datetime) -> GitHubActivity:
        """Commits, pull requests and issues since `since` (user and repos fetched once)."""
        await self.fetch_user()
        await self.fetch_repositories()
        commits, pulls, issues = await asyncio.gather(
            self.fetch_commits(since),
            self.fetch_pull_requests(since),
            self.fetch_issues(since),
        )
        return GitHubActivity(commits=commits, pull_requests=pulls, issues=issues)

    async def fetch_stats(self, since: datetime) -> dict[str, Any]:
        activity = await self.fetch_activity(since)
        return {
            "commits": len(activity.commits),
            "pull_requests": len(activity.pull_requests),
            "merged_pull_requests": sum(1 for pr in activity.pull_requests if pr.state == "merged"),
            "issues": len(activity.issues),
            "repositories": len({c.repo for c in activity.commits}),
        }
