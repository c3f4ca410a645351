"""GitHub REST v3 client.

All requests go through the call cache. Commit listings and details are
cached for ``github_cache_hours``; diffs are immutable per sha and cached
for ``github_diff_cache_hours``.
"""
from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import urlparse

from karaoke.config import settings
from karaoke.errors import GatewayError, InvalidRequestError
from karaoke.services.call_cache import ExternalCallCache
from karaoke.services.gateway import GatewayClient, hours

logger = logging.getLogger(__name__)

DIFF_MEDIA_TYPE = "application/vnd.github.v3.diff"
LAST_ACTIVITY_BUFFER = timedelta(days=3)


@dataclass(frozen=True)
class RepoRef:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def url(self) -> str:
        return f"https://github.com/{self.owner}/{self.name}"


def parse_repo_url(repo_url: str) -> RepoRef:
    """Parse ``https://github.com/{owner}/{repo}``; anything else is invalid."""
    if not repo_url or not repo_url.strip():
        raise InvalidRequestError("Repository URL is required")
    parsed = urlparse(repo_url.strip())
    if parsed.scheme not in ("http", "https") or parsed.netloc.lower() not in ("github.com", "www.github.com"):
        raise InvalidRequestError(f"Not a GitHub repository URL: {repo_url}")
    parts = [p for p in parsed.path.split("/") if p]
    if len(parts) < 2:
        raise InvalidRequestError(f"Repository URL must include owner and name: {repo_url}")
    owner, name = parts[0], parts[1]
    if name.endswith(".git"):
        name = name[:-4]
    if not owner or not name:
        raise InvalidRequestError(f"Repository URL must include owner and name: {repo_url}")
    return RepoRef(owner=owner, name=name)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open commit window ``[start, end)`` in UTC."""
    start: datetime
    end: datetime

    def as_params(self) -> dict[str, str]:
        return {"since": _iso(self.start), "until": _iso(self.end)}


def day_window(now: datetime) -> TimeWindow:
    """UTC midnight today to midnight tomorrow."""
    midnight = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return TimeWindow(start=midnight, end=midnight + timedelta(days=1))


def week_window(now: datetime) -> TimeWindow:
    return TimeWindow(start=now - timedelta(days=7), end=now)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_github_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable GitHub timestamp: {value!r}")
        return None


@dataclass
class CommitFile:
    filename: str
    status: str = "modified"
    additions: int = 0
    deletions: int = 0
    changes: int = 0
    patch: Optional[str] = None


@dataclass
class CommitRecord:
    """A commit with its detail (and, once hydrated, its diff)."""
    sha: str
    message: str
    author_name: str = "Unknown"
    author_email: Optional[str] = None
    date: Optional[datetime] = None
    url: Optional[str] = None
    additions: int = 0
    deletions: int = 0
    total: int = 0
    files: list[CommitFile] = field(default_factory=list)
    diff: Optional[str] = None

    @property
    def short_message(self) -> str:
        return self.message.splitlines()[0][:255] if self.message else ""

    def as_document(self) -> str:
        """Flatten the commit into the text that gets chunked and embedded."""
        lines = [
            f"Commit: {self.sha}",
            f"Author: {self.author_name}",
            f"Date: {self.date.isoformat() if self.date else 'unknown'}",
            f"Message: {self.message}",
            f"Stats: +{self.additions} -{self.deletions} ({self.total} changes)",
        ]
        if self.files:
            lines.append("Files:")
            lines.extend(
                f"  {f.filename} ({f.status}, +{f.additions} -{f.deletions})" for f in self.files
            )
        if self.diff:
            lines.append("Diff:")
            lines.append(self.diff)
        return "\n".join(lines)


def parse_commit(data: dict[str, Any]) -> CommitRecord:
    """Build a ``CommitRecord`` from a list item or a commit-detail body."""
    commit = data.get("commit") or {}
    author = commit.get("author") or {}
    stats = data.get("stats") or {}
    files = [
        CommitFile(
            filename=f.get("filename", ""),
            status=f.get("status", "modified"),
            additions=int(f.get("additions") or 0),
            deletions=int(f.get("deletions") or 0),
            changes=int(f.get("changes") or 0),
            patch=f.get("patch"),
        )
        for f in data.get("files") or []
    ]
    return CommitRecord(
        sha=data.get("sha", ""),
        message=commit.get("message", ""),
        author_name=author.get("name") or "Unknown",
        author_email=author.get("email"),
        date=parse_github_datetime(author.get("date")),
        url=data.get("html_url"),
        additions=int(stats.get("additions") or 0),
        deletions=int(stats.get("deletions") or 0),
        total=int(stats.get("total") or 0),
        files=files,
    )


@dataclass
class AuthorCount:
    name: str
    count: int


@dataclass
class FileChurn:
    filename: str
    changes: int


@dataclass
class CommitSummary:
    repository: str
    commit_count: int
    authors: list[AuthorCount]
    most_changed_files: list[FileChurn]
    time_range_start: Optional[datetime]
    time_range_end: Optional[datetime]
    total_additions: int = 0
    total_deletions: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "repositoryName": self.repository,
            "commitCount": self.commit_count,
            "authors": [{"name": a.name, "count": a.count} for a in self.authors],
            "mostChangedFiles": [
                {"filename": f.filename, "changes": f.changes} for f in self.most_changed_files
            ],
            "timeRange": {
                "start": self.time_range_start.isoformat() if self.time_range_start else None,
                "end": self.time_range_end.isoformat() if self.time_range_end else None,
            },
            "totalAdditions": self.total_additions,
            "totalDeletions": self.total_deletions,
        }


def summarize_commits(repo: RepoRef, commits: list[CommitRecord], *, top_files: int = 10) -> CommitSummary:
    """Author histogram, most-changed files and time span for a commit set."""
    authors = Counter(c.author_name or "Unknown" for c in commits)
    churn: Counter[str] = Counter()
    for c in commits:
        for f in c.files:
            churn[f.filename] += f.additions + f.deletions
    dates = [c.date for c in commits if c.date is not None]
    return CommitSummary(
        repository=repo.full_name,
        commit_count=len(commits),
        authors=[
            AuthorCount(name, count)
            for name, count in sorted(authors.items(), key=lambda kv: (-kv[1], kv[0]))
        ],
        most_changed_files=[
            FileChurn(name, changes)
            for name, changes in sorted(churn.items(), key=lambda kv: (-kv[1], kv[0]))[:top_files]
        ],
        time_range_start=min(dates) if dates else None,
        time_range_end=max(dates) if dates else None,
        total_additions=sum(c.additions for c in commits),
        total_deletions=sum(c.deletions for c in commits),
    )


def collection_name_for(repo: RepoRef) -> str:
    """Qdrant collection holding one repository's commit chunks."""
    return re.sub(r"\W", "_", f"github_commits_{repo.owner}_{repo.name}")


def _require_list(payload: Any) -> None:
    if not isinstance(payload, list):
        raise GatewayError(
            "Commit listing is not a JSON array",
            service=GitHubClient.service,
            endpoint="/commits",
            response_payload=payload if isinstance(payload, dict) else None,
        )


class GitHubClient(GatewayClient):
    """Read-only GitHub REST v3 access for commit history."""

    service = "github"

    def __init__(
        self,
        cache: ExternalCallCache,
        *,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        per_page: Optional[int] = None,
    ) -> None:
        super().__init__(
            cache,
            base_url=base_url or settings.github_api_base_url,
            timeout=timeout or settings.github_timeout,
        )
        self.token = token if token is not None else settings.github_api_token
        self.per_page = per_page or settings.github_per_page
        self.cache_ttl = hours(settings.github_cache_hours)
        self.diff_cache_ttl = hours(settings.github_diff_cache_hours)

    def default_headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": "commit-karaoke",
        }
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        return headers

    async def get_repo(self, owner: str, repo: str) -> dict[str, Any]:
        return await self.request("GET", f"/repos/{owner}/{repo}", cache_ttl=self.cache_ttl)

    async def list_commits(
        self,
        owner: str,
        repo: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        page: int = 1,
        per_page: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """One page of the commit listing (newest first)."""
        params: dict[str, Any] = {"per_page": per_page or self.per_page, "page": page}
        if since is not None:
            params["since"] = _iso(since)
        if until is not None:
            params["until"] = _iso(until)
        result = await self.request(
            "GET",
            f"/repos/{owner}/{repo}/commits",
            params=params,
            cache_ttl=self.cache_ttl,
            validate=_require_list,
        )
        return result

    async def list_all_commits(
        self,
        owner: str,
        repo: str,
        window: TimeWindow,
    ) -> list[dict[str, Any]]:
        """Every page of commits in ``window``; stops at the first short page."""
        commits: list[dict[str, Any]] = []
        page = 1
        while True:
            batch = await self.list_commits(
                owner, repo, since=window.start, until=window.end, page=page,
            )
            commits.extend(batch)
            if len(batch) < self.per_page:
                break
            page += 1
        logger.info(f"📜 {owner}/{repo}: {len(commits)} commits across {page} page(s)")
        return commits

    async def get_latest_commit(self, owner: str, repo: str) -> Optional[dict[str, Any]]:
        """Newest commit on the default branch, or ``None`` for an empty repository."""
        batch = await self.list_commits(owner, repo, per_page=1)
        return batch[0] if batch else None

    async def get_commit(self, owner: str, repo: str, sha: str) -> dict[str, Any]:
        return await self.request(
            "GET",
            f"/repos/{owner}/{repo}/commits/{sha}",
            cache_ttl=self.cache_ttl,
        )

    async def get_commit_diff(self, owner: str, repo: str, sha: str) -> str:
        """Raw unified diff for one commit."""
        return await self.request(
            "GET",
            f"/repos/{owner}/{repo}/commits/{sha}",
            headers={"Accept": DIFF_MEDIA_TYPE},
            cache_ttl=self.diff_cache_ttl,
            as_text=True,
            variant=DIFF_MEDIA_TYPE,
        )
