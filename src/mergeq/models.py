from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


CheckStatus = Literal["success", "failure", "pending", "neutral", "cancelled", "skipped"]
MergeMethod = Literal["merge", "squash", "rebase"]
MergeResult = Literal["merged", "failed", "conflict", "removed"]
QueueEvent = Literal["merged", "failed", "conflict", "removed", "rejected"]


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    title: str
    author_login: str
    html_url: str
    state: str
    merged: bool
    draft: bool
    labels: tuple[str, ...]
    head_sha: str
    head_ref: str
    head_label: str
    base_ref: str
    mergeable: bool | None
    cross_repository: bool = False

    @property
    def effective_state(self) -> str:
        if self.merged:
            return "merged"
        return self.state

    @property
    def is_open(self) -> bool:
        return self.effective_state == "open"


@dataclass(frozen=True)
class Review:
    reviewer_login: str | None
    state: str
    submitted_at: str = ""


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: CheckStatus
    conclusion: str | None = None


@dataclass(frozen=True)
class ValidationChecks:
    approved: bool = False
    checks_pass: bool = False
    not_draft: bool = False
    no_block_labels: bool = False
    up_to_date: bool = False
    no_conflicts: bool = False


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: str | None = None
    checks: ValidationChecks | None = None
    pr_state: str = "open"
    pending_checks: tuple[str, ...] = ()


@dataclass(frozen=True)
class StatusCheckEvaluation:
    valid: bool
    reason: str | None = None
    failed: tuple[str, ...] = ()
    pending: tuple[str, ...] = ()
    no_checks: bool = False


@dataclass(frozen=True)
class UpdateResult:
    success: bool
    conflict: bool = False
    sha: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ProcessResult:
    pr_number: int
    result: MergeResult
    reason: str | None = None
    merge_sha: str | None = None
    update_attempts: int = 0
