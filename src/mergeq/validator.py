from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
from typing import Iterable, Protocol

from mergeq.config import QueueConfig
from mergeq.models import (
    CheckResult,
    PullRequestSnapshot,
    Review,
    StatusCheckEvaluation,
    ValidationChecks,
    ValidationResult,
)
from mergeq.observability import log_event


LOGGER = logging.getLogger("mergeq.validator")


class PullRequestReader(Protocol):
    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot: ...

    def list_reviews(self, pr_number: int) -> tuple[Review, ...]: ...

    def get_commit_checks(self, sha: str) -> tuple[CheckResult, ...]: ...

    def is_branch_behind(self, pr_number: int) -> bool: ...


class PullRequestGate(ABC):
    """Capability interface for anything that decides whether a PR may merge.

    Custom policies wrap an existing gate and delegate to it rather than
    subclassing the GitHub-backed validator.
    """

    @abstractmethod
    def validate(self, pr_number: int) -> ValidationResult:
        """Evaluate every merge gate against freshly fetched PR state."""

    @abstractmethod
    def check_status_checks(self, sha: str) -> StatusCheckEvaluation:
        """Evaluate the status checks reported for one commit."""

    @abstractmethod
    def is_behind(self, pr_number: int) -> bool:
        """Return whether the PR branch is missing commits from its base."""


@dataclass(frozen=True)
class ReviewEvaluation:
    approval_count: int
    has_change_requests: bool


def evaluate_reviews(reviews: Iterable[Review]) -> ReviewEvaluation:
    """Reduce a chronological review list to the latest state per reviewer."""
    latest_by_reviewer: dict[str, str] = {}
    for review in reviews:
        if not review.reviewer_login:
            continue
        latest_by_reviewer[review.reviewer_login] = review.state

    states = list(latest_by_reviewer.values())
    return ReviewEvaluation(
        approval_count=sum(1 for state in states if state == "APPROVED"),
        has_change_requests=any(state == "CHANGES_REQUESTED" for state in states),
    )


def evaluate_checks(
    checks: Iterable[CheckResult], *, ignore_checks: tuple[str, ...] = ()
) -> StatusCheckEvaluation:
    ignored = frozenset(ignore_checks)
    considered = [check for check in checks if check.name not in ignored]

    failed = tuple(
        check.name for check in considered if check.status in {"failure", "cancelled"}
    )
    if failed:
        return StatusCheckEvaluation(
            valid=False,
            reason=f"Failed checks: {', '.join(failed)}",
            failed=failed,
        )

    pending = tuple(check.name for check in considered if check.status == "pending")
    if pending:
        return StatusCheckEvaluation(
            valid=False,
            reason=f"Pending checks: {', '.join(pending)}",
            pending=pending,
        )
    return StatusCheckEvaluation(valid=True, no_checks=not considered)


def waiting_on_checks(validation: ValidationResult) -> bool:
    """Return whether pending checks are the only gate keeping an open PR out."""
    checks = validation.checks
    if validation.valid or checks is None:
        return False
    return (
        checks.not_draft
        and checks.approved
        and checks.no_block_labels
        and not checks.checks_pass
        and bool(validation.pending_checks)
    )


class PullRequestValidator(PullRequestGate):
    def __init__(self, github: PullRequestReader, config: QueueConfig) -> None:
        self._github = github
        self._config = config

    def validate(self, pr_number: int) -> ValidationResult:
        log_event(LOGGER, "pr_validation_started", pr_number=pr_number)
        pr = self._github.get_pull_request(pr_number)

        if not pr.is_open:
            return self._reject(
                pr_number,
                ValidationResult(
                    valid=False,
                    reason=f"PR is {pr.effective_state}",
                    pr_state=pr.effective_state,
                ),
            )

        if pr.draft and not self._config.allow_draft:
            return self._reject(
                pr_number,
                ValidationResult(
                    valid=False, reason="PR is in draft state", checks=ValidationChecks()
                ),
            )
        passed = ValidationChecks(not_draft=True)

        if self._config.enforce_approval_locally:
            approval_failure = self._approval_failure(pr_number)
            if approval_failure is not None:
                return self._reject(
                    pr_number,
                    ValidationResult(valid=False, reason=approval_failure, checks=passed),
                )
        passed = ValidationChecks(approved=True, not_draft=True)

        blocking = tuple(label for label in self._config.block_labels if label in pr.labels)
        if blocking:
            return self._reject(
                pr_number,
                ValidationResult(
                    valid=False,
                    reason=f"PR has blocking label: {', '.join(blocking)}",
                    checks=passed,
                ),
            )
        passed = ValidationChecks(approved=True, not_draft=True, no_block_labels=True)

        status = self.check_status_checks(pr.head_sha)
        if not status.valid:
            return self._reject(
                pr_number,
                ValidationResult(
                    valid=False,
                    reason=status.reason,
                    checks=passed,
                    pending_checks=status.pending,
                ),
            )

        up_to_date = not self.is_behind(pr_number)
        passed = ValidationChecks(
            approved=True,
            checks_pass=True,
            not_draft=True,
            no_block_labels=True,
            up_to_date=up_to_date,
        )

        # None means GitHub has not finished computing mergeability yet.
        if pr.mergeable is False:
            return self._reject(
                pr_number,
                ValidationResult(valid=False, reason="PR has merge conflicts", checks=passed),
            )

        log_event(LOGGER, "pr_validation_passed", pr_number=pr_number, up_to_date=up_to_date)
        return ValidationResult(
            valid=True,
            checks=ValidationChecks(
                approved=True,
                checks_pass=True,
                not_draft=True,
                no_block_labels=True,
                up_to_date=up_to_date,
                no_conflicts=True,
            ),
        )

    def check_status_checks(self, sha: str) -> StatusCheckEvaluation:
        if not self._config.require_all_checks:
            return StatusCheckEvaluation(valid=True)

        checks = self._github.get_commit_checks(sha)
        skipped = sum(1 for check in checks if check.name in self._config.ignore_checks)
        if skipped:
            log_event(
                LOGGER,
                "checks_ignored",
                sha=sha,
                skipped_count=skipped,
                ignored_names=self._config.ignore_checks,
            )
        return evaluate_checks(checks, ignore_checks=self._config.ignore_checks)

    def is_behind(self, pr_number: int) -> bool:
        return self._github.is_branch_behind(pr_number)

    def _approval_failure(self, pr_number: int) -> str | None:
        evaluation = evaluate_reviews(self._github.list_reviews(pr_number))
        required = self._config.required_approvals
        # Change requests take precedence over approval counts.
        if evaluation.has_change_requests:
            return "PR has outstanding changes requested reviews"
        if evaluation.approval_count == 0 and required > 0:
            return "PR has no approving reviews"
        if evaluation.approval_count < required:
            return f"Insufficient approvals: {evaluation.approval_count}/{required}"
        return None

    def _reject(self, pr_number: int, result: ValidationResult) -> ValidationResult:
        log_event(LOGGER, "pr_validation_failed", pr_number=pr_number, reason=result.reason)
        return result
