from __future__ import annotations

from abc import ABC, abstractmethod
import logging
from typing import Final, Protocol

from mergeq import messages
from mergeq.config import QueueConfig
from mergeq.github_gateway import GitHubApiError
from mergeq.models import (
    MergeMethod,
    ProcessResult,
    PullRequestSnapshot,
    StatusCheckEvaluation,
    UpdateResult,
)
from mergeq.observability import log_event
from mergeq.validator import PullRequestGate, waiting_on_checks


LOGGER = logging.getLogger("mergeq.processor")
# Not mergeable (branch protection, required reviews) or head moved under us.
_MERGE_REFUSED_STATUS_CODES: Final[frozenset[int]] = frozenset({405, 409})


class LabelClient(Protocol):
    def add_labels(self, pr_number: int, labels: tuple[str, ...]) -> None: ...

    def remove_label(self, pr_number: int, label: str) -> None: ...

    def add_comment(self, pr_number: int, body: str) -> None: ...


class MergeClient(Protocol):
    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot: ...

    def merge_pull_request(
        self, pr_number: int, method: MergeMethod, *, commit_title: str | None = None
    ) -> str: ...

    def delete_branch(self, ref: str) -> None: ...


class BranchUpdating(Protocol):
    def update_if_behind(self, pr_number: int) -> UpdateResult: ...

    def wait_for_pending_checks(self, pr_number: int) -> StatusCheckEvaluation: ...


class PullRequestMerger(ABC):
    """Capability interface for anything that performs the final merge."""

    @abstractmethod
    def merge(self, pr_number: int) -> str:
        """Merge the PR and return the resulting commit sha."""


class GitHubMerger(PullRequestMerger):
    def __init__(self, github: MergeClient, config: QueueConfig) -> None:
        self._github = github
        self._config = config

    def merge(self, pr_number: int) -> str:
        pr = self._github.get_pull_request(pr_number)
        sha = self._github.merge_pull_request(pr_number, self._config.merge_method)
        if self._config.delete_branch_after_merge:
            if pr.cross_repository:
                log_event(LOGGER, "branch_delete_skipped_fork", pr_number=pr_number)
            elif pr.head_ref:
                self._github.delete_branch(pr.head_ref)
        return sha


class QueueProcessor:
    """Drives one queued PR to a terminal outcome.

    validate [-> wait for pending checks -> validate]
        -> (update branch -> re-check staleness)* -> final staleness gate -> merge

    The base branch can move while CI runs on an updated head, so staleness is
    re-queried after every update and once more right before merging. Remote
    errors propagate; only staleness is retried here.
    """

    def __init__(
        self,
        github: LabelClient,
        *,
        gate: PullRequestGate,
        updater: BranchUpdating,
        merger: PullRequestMerger,
        config: QueueConfig,
    ) -> None:
        self._github = github
        self._gate = gate
        self._updater = updater
        self._merger = merger
        self._config = config

    def process_pr(self, pr_number: int) -> ProcessResult:
        log_event(LOGGER, "pr_processing_started", pr_number=pr_number)
        self._enter_processing(pr_number)
        result = self._decide(pr_number)
        self._apply_terminal_labels(result)
        log_event(
            LOGGER,
            "pr_processing_finished",
            pr_number=pr_number,
            result=result.result,
            reason=result.reason,
            update_attempts=result.update_attempts,
        )
        return result

    def _decide(self, pr_number: int) -> ProcessResult:
        validation = self._gate.validate(pr_number)
        if waiting_on_checks(validation):
            outcome = self._updater.wait_for_pending_checks(pr_number)
            validation = self._gate.validate(pr_number)
            if waiting_on_checks(validation):
                return ProcessResult(
                    pr_number, "failed", reason=outcome.reason or validation.reason
                )
        if not validation.valid:
            if validation.pr_state != "open":
                return ProcessResult(pr_number, "removed", reason=validation.reason)
            return ProcessResult(
                pr_number, "failed", reason=validation.reason or "PR failed validation"
            )

        attempts = 0
        up_to_date = validation.checks is not None and validation.checks.up_to_date
        if not up_to_date:
            if not self._config.auto_update_branch:
                return ProcessResult(
                    pr_number,
                    "failed",
                    reason="Branch is behind base and automatic branch updates are disabled",
                )
            attempts, loop_failure = self._update_until_current(pr_number)
            if loop_failure is not None:
                return loop_failure

        # The base may have moved since validation.
        if self._gate.is_behind(pr_number):
            return ProcessResult(
                pr_number,
                "failed",
                reason="Base branch advanced before merge; branch is behind again",
                update_attempts=attempts,
            )

        try:
            merge_sha = self._merger.merge(pr_number)
        except GitHubApiError as exc:
            if exc.status_code not in _MERGE_REFUSED_STATUS_CODES:
                raise
            return ProcessResult(
                pr_number,
                "failed",
                reason=f"GitHub refused the merge: {exc.api_message}",
                update_attempts=attempts,
            )
        return ProcessResult(
            pr_number, "merged", merge_sha=merge_sha, update_attempts=attempts
        )

    def _update_until_current(self, pr_number: int) -> tuple[int, ProcessResult | None]:
        max_attempts = self._config.max_update_retries
        self._add_label(pr_number, self._config.updating_label)
        try:
            for attempt in range(1, max_attempts + 1):
                log_event(
                    LOGGER,
                    "branch_update_attempt",
                    pr_number=pr_number,
                    attempt=attempt,
                    max_attempts=max_attempts,
                )
                update = self._updater.update_if_behind(pr_number)
                if update.conflict:
                    return attempt, ProcessResult(
                        pr_number,
                        "conflict",
                        reason=update.error or "Merge conflict detected",
                        update_attempts=attempt,
                    )
                if not update.success:
                    return attempt, ProcessResult(
                        pr_number,
                        "failed",
                        reason=update.error or "Branch update failed",
                        update_attempts=attempt,
                    )
                if not self._gate.is_behind(pr_number):
                    return attempt, None
                log_event(
                    LOGGER,
                    "branch_behind_after_update",
                    pr_number=pr_number,
                    attempt=attempt,
                    sha=update.sha,
                )

            return max_attempts, ProcessResult(
                pr_number,
                "failed",
                reason=(
                    f"Branch is still behind base after {max_attempts} update attempts; "
                    "the base branch is advancing faster than the queue can catch up"
                ),
                update_attempts=max_attempts,
            )
        finally:
            self._remove_label(pr_number, self._config.updating_label)

    def _enter_processing(self, pr_number: int) -> None:
        for label in (
            self._config.queued_label,
            self._config.failed_label,
            self._config.conflict_label,
        ):
            self._remove_label(pr_number, label)
        self._add_label(pr_number, self._config.processing_label)

    def _apply_terminal_labels(self, result: ProcessResult) -> None:
        pr_number = result.pr_number
        self._remove_label(pr_number, self._config.processing_label)

        if result.result == "merged":
            self._comment(pr_number, messages.merged_successfully())
            return
        if result.result == "removed":
            self._remove_label(pr_number, self._config.queued_label)
            return

        for label in (self._config.queue_label, self._config.queued_label):
            self._remove_label(pr_number, label)
        if result.result == "conflict":
            self._add_label(pr_number, self._config.conflict_label)
            self._comment(pr_number, messages.removed_conflict(config=self._config))
            return
        self._add_label(pr_number, self._config.failed_label)
        self._comment(
            pr_number,
            messages.removed_failure(result.reason or "unknown failure", config=self._config),
        )

    def _add_label(self, pr_number: int, label: str) -> None:
        try:
            self._github.add_labels(pr_number, (label,))
        except Exception as exc:  # noqa: BLE001
            self._log_side_effect_failure("add_label", pr_number, exc, label=label)

    def _remove_label(self, pr_number: int, label: str) -> None:
        try:
            self._github.remove_label(pr_number, label)
        except Exception as exc:  # noqa: BLE001
            self._log_side_effect_failure("remove_label", pr_number, exc, label=label)

    def _comment(self, pr_number: int, body: str) -> None:
        try:
            self._github.add_comment(pr_number, body)
        except Exception as exc:  # noqa: BLE001
            self._log_side_effect_failure("add_comment", pr_number, exc)

    def _log_side_effect_failure(
        self, action: str, pr_number: int, exc: Exception, **fields: object
    ) -> None:
        log_event(
            LOGGER,
            "side_effect_failed",
            level=logging.WARNING,
            action=action,
            pr_number=pr_number,
            error_type=type(exc).__name__,
            error=str(exc),
            **fields,
        )
