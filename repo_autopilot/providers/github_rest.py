"""GitHub host provider implementation using PyGithub and REST API."""

import asyncio
from collections.abc import Callable
from typing import TypeVar

import structlog
from github import Github, GithubException  # type: ignore[import-not-found]
from github.Issue import Issue as GHIssue  # type: ignore[import-not-found]
from github.IssueComment import IssueComment as GHComment  # type: ignore[import-not-found]
from github.PullRequest import PullRequest as GHPullRequest  # type: ignore[import-not-found]
from github.Repository import Repository as GHRepository  # type: ignore[import-not-found]

from repo_autopilot.exceptions import ExternalServiceError
from repo_autopilot.models.domain import (
    BranchComparison,
    Change,
    CIFailureInfo,
    Comment,
    ConflictInfo,
    Issue,
    MergeResult,
    Priority,
    PullRequest,
    ReviewFeedback,
)
from repo_autopilot.monitoring.metrics import measure_api_call
from repo_autopilot.providers.base import HostProvider

log = structlog.get_logger(__name__)

T = TypeVar("T")

AUTO_FIXABLE_KEYWORDS = ("test", "lint", "format", "build")


async def _run_sync(func: Callable[[], T]) -> T:
    """Run a synchronous function in a thread pool.

    This prevents blocking the event loop when calling synchronous
    PyGithub methods.
    """
    return await asyncio.to_thread(func)


def is_auto_fixable(*texts: str) -> bool:
    """CI failures in test, lint, format or build jobs are handed to automated fixes."""
    haystack = " ".join(texts).lower()
    return any(keyword in haystack for keyword in AUTO_FIXABLE_KEYWORDS)


class GitHubRestProvider(HostProvider):
    """GitHub implementation using PyGithub library."""

    name = "github"

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        base_url: str = "https://api.github.com",
    ):
        """Initialize GitHub provider.

        Args:
            token: GitHub personal access token or App token
            owner: Repository owner (user or organization)
            repo: Repository name
            base_url: GitHub API base URL (for GitHub Enterprise)
        """
        self.token = token.strip() if token else token
        self.owner = owner
        self.repo = repo
        # Pydantic HttpUrl adds a trailing slash
        self.base_url = base_url.rstrip("/")
        self._client: Github | None = None
        self._repo: GHRepository | None = None

    async def connect(self) -> None:
        """Initialize GitHub client."""

        def _connect() -> tuple[Github, GHRepository]:
            client = Github(self.token, base_url=self.base_url)
            repo = client.get_repo(f"{self.owner}/{self.repo}")
            return client, repo

        self._client, self._repo = await self._call("connect", _connect)
        log.info("github_connected", base_url=self.base_url, owner=self.owner, repo=self.repo)

    async def disconnect(self) -> None:
        """Close GitHub client."""
        if self._client:
            await _run_sync(self._client.close)
            self._client = None
            self._repo = None

    async def _call(self, endpoint: str, func: Callable[[], T]) -> T:
        """Run a PyGithub call and normalize its failures."""
        try:
            return await _run_sync(func)
        except GithubException as e:
            log.error("github_request_failed", endpoint=endpoint, status=e.status, error=str(e))
            raise ExternalServiceError(
                f"GitHub request failed: {e}", status_code=e.status, endpoint=endpoint
            ) from e

    @measure_api_call("github", "get_issues")
    async def get_issues(
        self,
        labels: list[str] | None = None,
        state: str = "open",
    ) -> list[Issue]:
        """Retrieve issues via GitHub API. Pull requests are skipped."""
        log.info("get_issues", labels=labels, state=state)

        gh_state = state if state in ("open", "closed", "all") else "open"
        gh_issues = await self._call(
            "issues", lambda: list(self._repo.get_issues(state=gh_state, labels=labels or []))
        )
        return [self._convert_issue(gh_issue) for gh_issue in gh_issues if gh_issue.pull_request is None]

    @measure_api_call("github", "get_issue")
    async def get_issue(self, issue_number: int) -> Issue:
        log.info("get_issue", number=issue_number)
        gh_issue = await self._call(f"issues/{issue_number}", lambda: self._repo.get_issue(issue_number))
        return self._convert_issue(gh_issue)

    @measure_api_call("github", "get_comments")
    async def get_comments(self, issue_number: int) -> list[Comment]:
        """Retrieve all comments for an issue."""
        log.info("get_comments", number=issue_number)

        def _get_comments() -> list[GHComment]:
            gh_issue = self._repo.get_issue(issue_number)
            return list(gh_issue.get_comments())

        gh_comments = await self._call(f"issues/{issue_number}/comments", _get_comments)
        return [self._convert_comment(c) for c in gh_comments]

    @measure_api_call("github", "add_comment")
    async def add_comment(self, issue_number: int, body: str) -> Comment:
        """Add comment to issue."""
        log.info("add_comment", number=issue_number)

        def _add_comment() -> GHComment:
            gh_issue = self._repo.get_issue(issue_number)
            return gh_issue.create_comment(body)

        gh_comment = await self._call(f"issues/{issue_number}/comments", _add_comment)
        return self._convert_comment(gh_comment)

    @measure_api_call("github", "add_labels")
    async def add_labels(self, issue_number: int, labels: list[str]) -> None:
        log.info("add_labels", number=issue_number, labels=labels)

        def _add_labels() -> None:
            self._repo.get_issue(issue_number).add_to_labels(*labels)

        await self._call(f"issues/{issue_number}/labels", _add_labels)

    @measure_api_call("github", "remove_label")
    async def remove_label(self, issue_number: int, label: str) -> None:
        log.info("remove_label", number=issue_number, label=label)

        def _remove_label() -> None:
            try:
                self._repo.get_issue(issue_number).remove_from_labels(label)
            except GithubException as e:
                if e.status != 404:
                    raise
                log.debug("github_label_not_present", number=issue_number, label=label)

        await self._call(f"issues/{issue_number}/labels", _remove_label)

    @measure_api_call("github", "create_branch")
    async def create_branch(self, branch_name: str, from_branch: str) -> str:
        """Create a branch from ``from_branch`` unless it already exists."""
        log.info("create_branch", branch=branch_name, from_branch=from_branch)

        def _create_branch() -> str:
            try:
                return self._repo.get_branch(branch_name).commit.sha
            except GithubException as e:
                if e.status != 404:
                    raise

            source_sha = self._repo.get_git_ref(f"heads/{from_branch}").object.sha
            self._repo.create_git_ref(ref=f"refs/heads/{branch_name}", sha=source_sha)
            return source_sha

        return await self._call(f"git/refs/heads/{branch_name}", _create_branch)

    @measure_api_call("github", "compare_branches")
    async def compare_branches(self, base: str, head: str) -> BranchComparison:
        log.info("compare_branches", base=base, head=head)

        def _compare() -> BranchComparison:
            comparison = self._repo.compare(base, head)
            return BranchComparison(ahead_by=comparison.ahead_by, files_changed=len(comparison.files))

        return await self._call(f"compare/{base}...{head}", _compare)

    @measure_api_call("github", "create_pull_request")
    async def create_pull_request(
        self,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> PullRequest:
        """Create a pull request, updating the open one for ``head`` if present."""
        log.info("create_pull_request", title=title, head=head, base=base)

        def _create_pr() -> GHPullRequest:
            existing = list(self._repo.get_pulls(state="open", head=f"{self.owner}:{head}", base=base))
            if existing:
                gh_pr = existing[0]
                gh_pr.edit(title=title, body=body)
                log.info("pull_request_updated", pr=gh_pr.number)
                return gh_pr
            return self._repo.create_pull(title=title, body=body, head=head, base=base)

        gh_pr = await self._call("pulls", _create_pr)
        return self._convert_pull_request(gh_pr)

    @measure_api_call("github", "get_reviews")
    async def get_reviews(self, pr_number: int) -> list[ReviewFeedback]:
        """Latest verdict per reviewer. Comment-only reviews are ignored."""
        log.info("get_reviews", number=pr_number)

        def _get_reviews() -> list[ReviewFeedback]:
            gh_pr = self._repo.get_pull(pr_number)
            comments_by_review: dict[int, list[Change]] = {}
            for comment in gh_pr.get_review_comments():
                comments_by_review.setdefault(comment.pull_request_review_id, []).append(
                    Change(file=comment.path, description=comment.body)
                )

            latest: dict[str, ReviewFeedback] = {}
            for review in gh_pr.get_reviews():
                if review.state not in ("APPROVED", "CHANGES_REQUESTED"):
                    continue
                reviewer = review.user.login if review.user else "unknown"
                changes: tuple[Change, ...] = ()
                if review.state == "CHANGES_REQUESTED":
                    changes = tuple(comments_by_review.get(review.id, [])) or (
                        Change(file="*", description=review.body or "Changes requested"),
                    )
                latest[reviewer] = ReviewFeedback(
                    reviewer=reviewer,
                    overall_approval=review.state == "APPROVED",
                    requested_changes=changes,
                )
            return list(latest.values())

        return await self._call(f"pulls/{pr_number}/reviews", _get_reviews)

    @measure_api_call("github", "merge_pull_request")
    async def merge_pull_request(self, pr_number: int, message: str) -> MergeResult:
        """Merge unless the PR conflicts or its head commit has failing checks."""
        log.info("merge_pull_request", number=pr_number)

        def _merge() -> MergeResult:
            gh_pr = self._repo.get_pull(pr_number)

            if gh_pr.mergeable is False:
                conflicts = tuple(
                    ConflictInfo(file=f.filename, auto_resolvable="migration" not in f.filename)
                    for f in gh_pr.get_files()
                )
                log.warning("github_merge_conflicts", number=pr_number, files=len(conflicts))
                return MergeResult(merged=False, conflicts=conflicts)

            commit = self._repo.get_commit(gh_pr.head.sha)
            failures: list[CIFailureInfo] = []
            for status in commit.get_combined_status().statuses:
                if status.state in ("failure", "error"):
                    error = status.description or status.state
                    failures.append(
                        CIFailureInfo(
                            job_name=status.context,
                            step=status.context,
                            error=error,
                            auto_fixable=is_auto_fixable(status.context, error),
                        )
                    )
            for run in commit.get_check_runs():
                if run.conclusion in ("failure", "timed_out"):
                    step = (run.output.title if run.output else None) or run.name
                    error = (run.output.summary if run.output else None) or run.conclusion
                    failures.append(
                        CIFailureInfo(
                            job_name=run.name,
                            step=step,
                            error=error,
                            auto_fixable=is_auto_fixable(run.name, error),
                        )
                    )
            if failures:
                log.warning("github_ci_failures", number=pr_number, failures=len(failures))
                return MergeResult(merged=False, ci_failures=tuple(failures))

            status = gh_pr.merge(commit_message=message)
            return MergeResult(merged=status.merged, sha=status.sha)

        return await self._call(f"pulls/{pr_number}/merge", _merge)

    def _convert_issue(self, gh_issue: GHIssue) -> Issue:
        """Convert GitHub Issue to our Issue model."""
        labels = frozenset(label.name for label in gh_issue.labels)
        return Issue(
            number=gh_issue.number,
            title=gh_issue.title,
            body=gh_issue.body or "",
            labels=labels,
            priority=Priority.from_labels(labels),
            url=gh_issue.html_url,
        )

    def _convert_comment(self, gh_comment: GHComment) -> Comment:
        return Comment(
            id=gh_comment.id,
            body=gh_comment.body,
            author=gh_comment.user.login if gh_comment.user else "unknown",
            created_at=gh_comment.created_at,
        )

    def _convert_pull_request(self, gh_pr: GHPullRequest) -> PullRequest:
        return PullRequest(
            number=gh_pr.number,
            title=gh_pr.title,
            branch=gh_pr.head.ref,
            commits=gh_pr.commits,
            files_changed=gh_pr.changed_files,
            url=gh_pr.html_url,
        )
