"""Gitea host provider implementation using direct REST API calls."""

from typing import Any

import httpx
import structlog

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
from repo_autopilot.providers.github_rest import is_auto_fixable
from repo_autopilot.utils.retry import async_retry

log = structlog.get_logger(__name__)


class GiteaRestProvider(HostProvider):
    """Gitea implementation using direct REST API calls."""

    name = "gitea"

    def __init__(
        self,
        base_url: str,
        token: str,
        owner: str,
        repo: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Gitea provider.

        Args:
            base_url: Gitea base URL (e.g., http://gitea.example.com)
            token: API token
            owner: Repository owner
            repo: Repository name
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport, used to stub the API
        """
        self.base_url = base_url.rstrip("/")
        self.api_base = f"{self.base_url}/api/v1"
        self.token = token.strip() if token else token
        self.owner = owner
        self.repo = repo
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    async def connect(self) -> None:
        """Open the HTTP client and verify connectivity."""
        self._client = httpx.AsyncClient(
            base_url=self.api_base,
            headers={
                "Authorization": f"token {self.token}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
            transport=self._transport,
        )
        await self._request("GET", "/version")
        log.info("gitea_connected", base_url=self.base_url, owner=self.owner, repo=self.repo)

    async def disconnect(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "GiteaRestProvider":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()

    @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(ConnectionError,))
    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request and normalize failures to scheduler exceptions.

        Raises:
            ExternalServiceError: The API answered with an error status
            TimeoutError: The request timed out
            ConnectionError: The request could not be sent
        """
        if self._client is None:
            raise ExternalServiceError("Gitea provider is not connected", endpoint=path)

        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            log.error("gitea_request_failed", method=method, path=path, status=status)
            raise ExternalServiceError(
                f"Gitea request failed: {e.response.text[:200]}", status_code=status, endpoint=path
            ) from e
        except httpx.TimeoutException as e:
            raise TimeoutError(f"Gitea request timed out: {method} {path}") from e
        except httpx.TransportError as e:
            raise ConnectionError(f"Gitea request could not be sent: {e}") from e
        return response

    @measure_api_call("gitea", "get_issues")
    async def get_issues(
        self,
        labels: list[str] | None = None,
        state: str = "open",
    ) -> list[Issue]:
        """Retrieve issues via REST API."""
        log.info("get_issues", labels=labels, state=state)

        params: dict[str, str] = {"state": state, "type": "issues"}
        if labels:
            params["labels"] = ",".join(labels)

        response = await self._request("GET", f"{self._repo_path}/issues", params=params)
        return [self._parse_issue(data) for data in response.json() if not data.get("pull_request")]

    @measure_api_call("gitea", "get_issue")
    async def get_issue(self, issue_number: int) -> Issue:
        log.info("get_issue", issue_number=issue_number)
        response = await self._request("GET", f"{self._repo_path}/issues/{issue_number}")
        return self._parse_issue(response.json())

    @measure_api_call("gitea", "get_comments")
    async def get_comments(self, issue_number: int) -> list[Comment]:
        log.info("get_comments", issue_number=issue_number)
        response = await self._request("GET", f"{self._repo_path}/issues/{issue_number}/comments")
        return [self._parse_comment(data) for data in response.json()]

    @measure_api_call("gitea", "add_comment")
    async def add_comment(self, issue_number: int, body: str) -> Comment:
        log.info("add_comment", issue_number=issue_number)
        response = await self._request(
            "POST", f"{self._repo_path}/issues/{issue_number}/comments", json={"body": body}
        )
        return self._parse_comment(response.json())

    @measure_api_call("gitea", "add_labels")
    async def add_labels(self, issue_number: int, labels: list[str]) -> None:
        log.info("add_labels", issue_number=issue_number, labels=labels)
        label_ids = await self._get_or_create_label_ids(labels)
        await self._request("POST", f"{self._repo_path}/issues/{issue_number}/labels", json={"labels": label_ids})

    @measure_api_call("gitea", "remove_label")
    async def remove_label(self, issue_number: int, label: str) -> None:
        log.info("remove_label", issue_number=issue_number, label=label)

        label_map = await self._label_map()
        if label not in label_map:
            return
        try:
            await self._request("DELETE", f"{self._repo_path}/issues/{issue_number}/labels/{label_map[label]}")
        except ExternalServiceError as e:
            if e.status_code != 404:
                raise
            log.debug("gitea_label_not_present", issue_number=issue_number, label=label)

    @measure_api_call("gitea", "create_branch")
    async def create_branch(self, branch_name: str, from_branch: str) -> str:
        """Create a branch unless it already exists and return its head SHA."""
        log.info("create_branch", branch=branch_name, from_branch=from_branch)

        try:
            response = await self._request("GET", f"{self._repo_path}/branches/{branch_name}")
            log.info("branch_exists", branch=branch_name)
            return response.json()["commit"]["id"]
        except ExternalServiceError as e:
            if e.status_code != 404:
                raise

        response = await self._request(
            "POST",
            f"{self._repo_path}/branches",
            json={"new_branch_name": branch_name, "old_branch_name": from_branch},
        )
        return response.json()["commit"]["id"]

    @measure_api_call("gitea", "compare_branches")
    async def compare_branches(self, base: str, head: str) -> BranchComparison:
        log.info("compare_branches", base=base, head=head)
        response = await self._request("GET", f"{self._repo_path}/compare/{base}...{head}")
        data = response.json()
        commits = data.get("commits") or []
        return BranchComparison(
            ahead_by=data.get("total_commits", len(commits)),
            files_changed=len(data.get("files") or []),
        )

    @measure_api_call("gitea", "create_pull_request")
    async def create_pull_request(
        self,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> PullRequest:
        """Create a pull request, updating the open one for ``head`` if present."""
        log.info("create_pull_request", title=title, head=head, base=base)

        pulls_path = f"{self._repo_path}/pulls"
        existing = await self._request("GET", pulls_path, params={"state": "open"})
        for pr in existing.json():
            if pr["head"]["ref"] == head and pr["base"]["ref"] == base:
                response = await self._request(
                    "PATCH", f"{pulls_path}/{pr['number']}", json={"title": title, "body": body}
                )
                log.info("pull_request_updated", pr=pr["number"])
                return self._parse_pull_request(response.json())

        response = await self._request(
            "POST", pulls_path, json={"title": title, "body": body, "head": head, "base": base}
        )
        return self._parse_pull_request(response.json())

    @measure_api_call("gitea", "get_reviews")
    async def get_reviews(self, pr_number: int) -> list[ReviewFeedback]:
        """Latest verdict per reviewer. Comment-only reviews are ignored."""
        log.info("get_reviews", pr=pr_number)

        response = await self._request("GET", f"{self._repo_path}/pulls/{pr_number}/reviews")

        latest: dict[str, ReviewFeedback] = {}
        for review in response.json():
            state = review.get("state")
            if state not in ("APPROVED", "REQUEST_CHANGES"):
                continue
            reviewer = (review.get("user") or {}).get("login", "unknown")
            changes: tuple[Change, ...] = ()
            if state == "REQUEST_CHANGES":
                comments = await self._request(
                    "GET", f"{self._repo_path}/pulls/{pr_number}/reviews/{review['id']}/comments"
                )
                changes = tuple(Change(file=c["path"], description=c["body"]) for c in comments.json()) or (
                    Change(file="*", description=review.get("body") or "Changes requested"),
                )
            latest[reviewer] = ReviewFeedback(
                reviewer=reviewer,
                overall_approval=state == "APPROVED",
                requested_changes=changes,
            )
        return list(latest.values())

    @measure_api_call("gitea", "merge_pull_request")
    async def merge_pull_request(self, pr_number: int, message: str) -> MergeResult:
        """Merge unless the PR conflicts or its head commit has failing statuses."""
        log.info("merge_pull_request", pr=pr_number)

        pr_path = f"{self._repo_path}/pulls/{pr_number}"
        pr = (await self._request("GET", pr_path)).json()

        if pr.get("mergeable") is False:
            files = (await self._request("GET", f"{pr_path}/files")).json()
            conflicts = tuple(
                ConflictInfo(file=f["filename"], auto_resolvable="migration" not in f["filename"]) for f in files
            )
            log.warning("gitea_merge_conflicts", pr=pr_number, files=len(conflicts))
            return MergeResult(merged=False, conflicts=conflicts)

        status = (await self._request("GET", f"{self._repo_path}/commits/{pr['head']['sha']}/status")).json()
        failures = tuple(
            CIFailureInfo(
                job_name=entry["context"],
                step=entry["context"],
                error=entry.get("description") or entry["status"],
                auto_fixable=is_auto_fixable(entry["context"], entry.get("description") or ""),
            )
            for entry in status.get("statuses") or []
            if entry.get("status") in ("failure", "error")
        )
        if failures:
            log.warning("gitea_ci_failures", pr=pr_number, failures=len(failures))
            return MergeResult(merged=False, ci_failures=failures)

        await self._request("POST", f"{pr_path}/merge", json={"Do": "merge", "MergeMessageField": message})
        merged = (await self._request("GET", pr_path)).json()
        return MergeResult(merged=bool(merged.get("merged", True)), sha=merged.get("merge_commit_sha"))

    async def _label_map(self) -> dict[str, int]:
        response = await self._request("GET", f"{self._repo_path}/labels")
        return {label["name"]: label["id"] for label in response.json()}

    async def _get_or_create_label_ids(self, label_names: list[str]) -> list[int]:
        """Resolve label names to IDs, creating missing labels.

        Gitea requires label IDs (not names) when labelling issues. Created
        labels use a default gray color.
        """
        label_map = await self._label_map()

        label_ids = []
        for name in label_names:
            if name not in label_map:
                log.info("creating_label", name=name)
                response = await self._request(
                    "POST",
                    f"{self._repo_path}/labels",
                    json={"name": name, "color": "ededed", "description": f"Auto-created label: {name}"},
                )
                label_map[name] = response.json()["id"]
            label_ids.append(label_map[name])
        return label_ids

    def _parse_issue(self, data: dict[str, Any]) -> Issue:
        labels = frozenset(label["name"] for label in data.get("labels") or [])
        return Issue(
            number=data["number"],
            title=data["title"],
            body=data.get("body") or "",
            labels=labels,
            priority=Priority.from_labels(labels),
            url=data.get("html_url", ""),
        )

    def _parse_comment(self, data: dict[str, Any]) -> Comment:
        return Comment(
            id=data["id"],
            body=data.get("body", ""),
            author=(data.get("user") or {}).get("login", "unknown"),
        )

    def _parse_pull_request(self, data: dict[str, Any]) -> PullRequest:
        return PullRequest(
            number=data["number"],
            title=data["title"],
            branch=data["head"]["ref"],
            commits=data.get("commits") or 0,
            files_changed=data.get("changed_files") or 0,
            url=data.get("html_url", ""),
        )
