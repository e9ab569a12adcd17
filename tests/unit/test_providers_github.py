"""Tests for repo_autopilot/providers/github_rest.py."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from github import GithubException

from repo_autopilot.exceptions import ExternalServiceError
from repo_autopilot.models.domain import (
    BranchComparison,
    Change,
    CIFailureInfo,
    ConflictInfo,
    MergeResult,
    Priority,
    ReviewFeedback,
)
from repo_autopilot.providers.github_rest import GitHubRestProvider, is_auto_fixable


def gh_issue(number, title, labels=(), pull_request=None, body="Body"):
    issue = MagicMock()
    issue.number = number
    issue.title = title
    issue.body = body
    issue.labels = [SimpleNamespace(name=name) for name in labels]
    issue.html_url = f"https://github.com/test-owner/test-repo/issues/{number}"
    issue.pull_request = pull_request
    return issue


def gh_pull(number=7, mergeable=True, head_sha="abc123"):
    pr = MagicMock()
    pr.number = number
    pr.title = "Fix Fix login redirect"
    pr.head = SimpleNamespace(ref="agent-1/issue-42", sha=head_sha)
    pr.commits = 2
    pr.changed_files = 3
    pr.html_url = f"https://github.com/test-owner/test-repo/pull/{number}"
    pr.mergeable = mergeable
    return pr


@pytest.fixture
def gh_repo() -> MagicMock:
    return MagicMock()


@pytest.fixture
def provider(gh_repo) -> GitHubRestProvider:
    provider = GitHubRestProvider(token=" test-token\n", owner="test-owner", repo="test-repo")
    provider._repo = gh_repo
    return provider


class TestConnection:
    """Tests for client setup."""

    @pytest.mark.asyncio
    async def test_connect_uses_token_and_base_url(self):
        with patch("repo_autopilot.providers.github_rest.Github") as github_cls:
            provider = GitHubRestProvider("test-token", "test-owner", "test-repo", base_url="https://ghe.local/api/v3/")
            await provider.connect()

        github_cls.assert_called_once_with("test-token", base_url="https://ghe.local/api/v3")
        github_cls.return_value.get_repo.assert_called_once_with("test-owner/test-repo")

    @pytest.mark.asyncio
    async def test_connect_failure_is_normalized(self):
        with patch("repo_autopilot.providers.github_rest.Github") as github_cls:
            github_cls.return_value.get_repo.side_effect = GithubException(401, {"message": "Bad credentials"}, None)
            provider = GitHubRestProvider("bad", "test-owner", "test-repo")

            with pytest.raises(ExternalServiceError) as exc_info:
                await provider.connect()

        assert exc_info.value.status_code == 401
        assert exc_info.value.endpoint == "connect"

    @pytest.mark.asyncio
    async def test_disconnect_closes_client(self, provider):
        client = MagicMock()
        provider._client = client

        await provider.disconnect()

        client.close.assert_called_once()
        assert provider._client is None


class TestIssues:
    """Tests for issue, comment and label operations."""

    @pytest.mark.asyncio
    async def test_get_issues_skips_pull_requests(self, provider, gh_repo):
        gh_repo.get_issues.return_value = [
            gh_issue(42, "Fix login redirect", labels=("autopilot:ready", "priority:critical")),
            gh_issue(43, "A pull request", pull_request=object()),
        ]

        issues = await provider.get_issues(labels=["autopilot:ready"])

        assert [issue.number for issue in issues] == [42]
        assert issues[0].priority is Priority.CRITICAL
        assert issues[0].labels == frozenset({"autopilot:ready", "priority:critical"})
        gh_repo.get_issues.assert_called_once_with(state="open", labels=["autopilot:ready"])

    @pytest.mark.asyncio
    async def test_get_issue_error_carries_status_and_endpoint(self, provider, gh_repo):
        gh_repo.get_issue.side_effect = GithubException(404, {"message": "Not Found"}, None)

        with pytest.raises(ExternalServiceError) as exc_info:
            await provider.get_issue(42)

        assert exc_info.value.status_code == 404
        assert exc_info.value.endpoint == "issues/42"

    @pytest.mark.asyncio
    async def test_add_comment(self, provider, gh_repo):
        created = MagicMock(id=5, body="Hello", user=SimpleNamespace(login="autopilot"), created_at=None)
        gh_repo.get_issue.return_value.create_comment.return_value = created

        comment = await provider.add_comment(42, "Hello")

        assert (comment.id, comment.body, comment.author) == (5, "Hello", "autopilot")
        gh_repo.get_issue.return_value.create_comment.assert_called_once_with("Hello")

    @pytest.mark.asyncio
    async def test_remove_missing_label_is_noop(self, provider, gh_repo):
        gh_repo.get_issue.return_value.remove_from_labels.side_effect = GithubException(404, {}, None)

        await provider.remove_label(42, "in-progress")

    @pytest.mark.asyncio
    async def test_remove_label_other_errors_raise(self, provider, gh_repo):
        gh_repo.get_issue.return_value.remove_from_labels.side_effect = GithubException(500, {}, None)

        with pytest.raises(ExternalServiceError):
            await provider.remove_label(42, "in-progress")


class TestBranches:
    """Tests for branch creation and comparison."""

    @pytest.mark.asyncio
    async def test_existing_branch_is_reused(self, provider, gh_repo):
        gh_repo.get_branch.return_value.commit.sha = "existing"

        assert await provider.create_branch("agent-1/issue-42", "main") == "existing"
        gh_repo.create_git_ref.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_branch_is_created_from_base(self, provider, gh_repo):
        gh_repo.get_branch.side_effect = GithubException(404, {"message": "Branch not found"}, None)
        gh_repo.get_git_ref.return_value.object.sha = "base-sha"

        assert await provider.create_branch("agent-1/issue-42", "main") == "base-sha"
        gh_repo.get_git_ref.assert_called_once_with("heads/main")
        gh_repo.create_git_ref.assert_called_once_with(ref="refs/heads/agent-1/issue-42", sha="base-sha")

    @pytest.mark.asyncio
    async def test_compare_branches(self, provider, gh_repo):
        gh_repo.compare.return_value = SimpleNamespace(ahead_by=4, files=[object(), object()])

        assert await provider.compare_branches("main", "agent-1/issue-42") == BranchComparison(4, 2)


class TestPullRequests:
    """Tests for pull request creation, reviews and merging."""

    @pytest.mark.asyncio
    async def test_create_pull_request(self, provider, gh_repo):
        gh_repo.get_pulls.return_value = []
        gh_repo.create_pull.return_value = gh_pull()

        pr = await provider.create_pull_request("Fix Fix login redirect", "Closes #42", "agent-1/issue-42", "main")

        assert (pr.number, pr.branch, pr.commits, pr.files_changed) == (7, "agent-1/issue-42", 2, 3)
        gh_repo.get_pulls.assert_called_once_with(state="open", head="test-owner:agent-1/issue-42", base="main")
        gh_repo.create_pull.assert_called_once_with(
            title="Fix Fix login redirect", body="Closes #42", head="agent-1/issue-42", base="main"
        )

    @pytest.mark.asyncio
    async def test_existing_pull_request_is_updated(self, provider, gh_repo):
        existing = gh_pull(number=9)
        gh_repo.get_pulls.return_value = [existing]

        pr = await provider.create_pull_request("New title", "Closes #42", "agent-1/issue-42", "main")

        assert pr.number == 9
        existing.edit.assert_called_once_with(title="New title", body="Closes #42")
        gh_repo.create_pull.assert_not_called()

    @pytest.mark.asyncio
    async def test_reviews_keep_latest_verdict_per_reviewer(self, provider, gh_repo):
        pr = gh_repo.get_pull.return_value
        pr.get_review_comments.return_value = [
            SimpleNamespace(pull_request_review_id=2, path="auth.py", body="Handle expired tokens"),
        ]
        pr.get_reviews.return_value = [
            SimpleNamespace(id=1, state="CHANGES_REQUESTED", user=SimpleNamespace(login="alice"), body="Nope"),
            SimpleNamespace(id=2, state="CHANGES_REQUESTED", user=SimpleNamespace(login="bob"), body=""),
            SimpleNamespace(id=3, state="COMMENTED", user=SimpleNamespace(login="carol"), body="Nice"),
            SimpleNamespace(id=4, state="APPROVED", user=SimpleNamespace(login="alice"), body=""),
        ]

        reviews = await provider.get_reviews(7)

        assert reviews == [
            ReviewFeedback(reviewer="alice", overall_approval=True),
            ReviewFeedback(
                reviewer="bob",
                requested_changes=(Change(file="auth.py", description="Handle expired tokens"),),
            ),
        ]

    @pytest.mark.asyncio
    async def test_merge_reports_conflicts(self, provider, gh_repo):
        pr = gh_pull(mergeable=False)
        pr.get_files.return_value = [SimpleNamespace(filename="app.py"), SimpleNamespace(filename="migrations/1.py")]
        gh_repo.get_pull.return_value = pr

        result = await provider.merge_pull_request(7, "Merge #7")

        assert result == MergeResult(
            merged=False,
            conflicts=(
                ConflictInfo(file="app.py", auto_resolvable=True),
                ConflictInfo(file="migrations/1.py", auto_resolvable=False),
            ),
        )
        pr.merge.assert_not_called()

    @pytest.mark.asyncio
    async def test_merge_reports_ci_failures(self, provider, gh_repo):
        gh_repo.get_pull.return_value = gh_pull()
        commit = gh_repo.get_commit.return_value
        commit.get_combined_status.return_value.statuses = [
            SimpleNamespace(state="success", context="ci/lint", description="ok"),
            SimpleNamespace(state="failure", context="ci/tests", description="2 failed"),
        ]
        commit.get_check_runs.return_value = [
            SimpleNamespace(
                name="deploy-preview",
                conclusion="failure",
                output=SimpleNamespace(title="Upload", summary="permission denied"),
            ),
        ]

        result = await provider.merge_pull_request(7, "Merge #7")

        assert result.ci_failures == (
            CIFailureInfo(job_name="ci/tests", step="ci/tests", error="2 failed", auto_fixable=True),
            CIFailureInfo(job_name="deploy-preview", step="Upload", error="permission denied", auto_fixable=False),
        )
        gh_repo.get_commit.assert_called_once_with("abc123")

    @pytest.mark.asyncio
    async def test_merge_success(self, provider, gh_repo):
        pr = gh_pull()
        pr.merge.return_value = SimpleNamespace(merged=True, sha="merge-sha")
        gh_repo.get_pull.return_value = pr
        gh_repo.get_commit.return_value.get_combined_status.return_value.statuses = []
        gh_repo.get_commit.return_value.get_check_runs.return_value = []

        result = await provider.merge_pull_request(7, "Merge #7: Fix")

        assert result == MergeResult(merged=True, sha="merge-sha")
        pr.merge.assert_called_once_with(commit_message="Merge #7: Fix")


class TestAutoFixable:
    @pytest.mark.parametrize(
        "texts,expected",
        [
            (("unit-tests", "2 failed"), True),
            (("ci", "Lint errors"), True),
            (("deploy", "permission denied"), False),
        ],
    )
    def test_keywords(self, texts, expected):
        assert is_auto_fixable(*texts) is expected
