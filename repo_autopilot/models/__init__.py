"""Domain models for the autonomous workflow scheduler.

Key Models:
    - Issue: Issue snapshot taken at assignment time
    - WorkspaceState: Branch prepared for an assignment
    - WorkProgress: Progress accumulated while work is in flight
    - PullRequest, ReviewFeedback: Review cycle records
    - ConflictInfo, CIFailureInfo, MergeResult: Merge attempt outcome
    - CompletedWork: Summary carried by the Merged state

Tagged unions:
    - BlockerType: Obstacle encountered while InProgress
    - AbandonmentReason: Why a workflow ended in Abandoned
    - WorkObservation: What the work observer saw on one poll
"""

from repo_autopilot.models.domain import (
    PLACEHOLDER_ISSUE,
    AbandonmentReason,
    AgentId,
    BlockerObserved,
    BlockerType,
    BranchComparison,
    BuildFailure,
    Change,
    CIFailureInfo,
    Comment,
    CommentSeverity,
    CompletedWork,
    ConflictInfo,
    CriticalFailure,
    DependencyIssue,
    DependencyIssues,
    ExternalService,
    InconsistencyReport,
    Issue,
    MergeResult,
    MissingRequirements,
    NetworkIssue,
    Priority,
    ProgressObserved,
    PullRequest,
    RequirementsChanged,
    ReviewComment,
    ReviewFeedback,
    TestFailure,
    TimeoutExceeded,
    UnresolvableBlocker,
    WorkFinished,
    WorkObservation,
    WorkProgress,
    WorkspaceState,
    describe_reason,
)

__all__ = [
    "PLACEHOLDER_ISSUE",
    "AbandonmentReason",
    "AgentId",
    "BlockerObserved",
    "BlockerType",
    "BranchComparison",
    "BuildFailure",
    "Change",
    "CIFailureInfo",
    "Comment",
    "CommentSeverity",
    "CompletedWork",
    "ConflictInfo",
    "CriticalFailure",
    "DependencyIssue",
    "DependencyIssues",
    "ExternalService",
    "InconsistencyReport",
    "Issue",
    "MergeResult",
    "MissingRequirements",
    "NetworkIssue",
    "Priority",
    "ProgressObserved",
    "PullRequest",
    "RequirementsChanged",
    "ReviewComment",
    "ReviewFeedback",
    "TestFailure",
    "TimeoutExceeded",
    "UnresolvableBlocker",
    "WorkFinished",
    "WorkObservation",
    "WorkProgress",
    "WorkspaceState",
    "describe_reason",
]
