from __future__ import annotations

import logging
import math
import time
from typing import Protocol

from mergeq.config import QueueConfig
from mergeq.models import PullRequestSnapshot, StatusCheckEvaluation, UpdateResult
from mergeq.observability import log_event
from mergeq.validator import PullRequestGate


LOGGER = logging.getLogger("mergeq.branch_updater")


class BranchUpdateClient(Protocol):
    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot: ...

    def update_branch(self, pr_number: int) -> UpdateResult: ...


class BranchUpdater:
    """Brings a stale PR branch up to date and waits for CI on the new head."""

    def __init__(
        self, github: BranchUpdateClient, gate: PullRequestGate, config: QueueConfig
    ) -> None:
        self._github = github
        self._gate = gate
        self._config = config

    @property
    def max_polls(self) -> int:
        timeout_seconds = self._config.update_timeout_minutes * 60
        return max(1, math.ceil(timeout_seconds / self._config.check_poll_interval_seconds))

    def update_if_behind(self, pr_number: int) -> UpdateResult:
        if not self._gate.is_behind(pr_number):
            log_event(LOGGER, "branch_already_current", pr_number=pr_number)
            return UpdateResult(success=True, conflict=False)

        result = self._github.update_branch(pr_number)
        if result.conflict:
            return result
        if not result.success:
            log_event(
                LOGGER,
                "branch_update_unsuccessful",
                level=logging.WARNING,
                pr_number=pr_number,
                error=result.error,
            )
            return result
        if not result.sha:
            return UpdateResult(
                success=False,
                error="Branch update reported success but returned no SHA",
            )

        outcome = self.wait_for_tests(pr_number, result.sha)
        if not outcome.valid:
            return UpdateResult(
                success=False,
                sha=result.sha,
                error=f"Tests failed after branch update: {outcome.reason}",
            )
        return UpdateResult(success=True, sha=result.sha)

    def wait_for_pending_checks(self, pr_number: int) -> StatusCheckEvaluation:
        pr = self._github.get_pull_request(pr_number)
        log_event(LOGGER, "pending_checks_wait", pr_number=pr_number, sha=pr.head_sha)
        return self.wait_for_tests(pr_number, pr.head_sha)

    def wait_for_tests(self, pr_number: int, sha: str) -> StatusCheckEvaluation:
        """Poll the checks of ``sha`` until they settle or the poll budget runs out.

        A head pushed moments ago may have no checks registered yet, so an empty
        check list on the first poll counts as pending while polls remain.
        """
        max_polls = self.max_polls
        last = StatusCheckEvaluation(valid=False, reason="No checks evaluated")
        for poll in range(1, max_polls + 1):
            pr = self._github.get_pull_request(pr_number)
            if not pr.is_open:
                log_event(
                    LOGGER,
                    "check_wait_aborted",
                    pr_number=pr_number,
                    state=pr.effective_state,
                )
                return StatusCheckEvaluation(valid=False, reason=f"PR is {pr.effective_state}")

            last = self._gate.check_status_checks(sha)
            if last.valid and last.no_checks and poll == 1 and max_polls > 1:
                log_event(LOGGER, "checks_not_registered", pr_number=pr_number, sha=sha)
                time.sleep(self._config.check_poll_interval_seconds)
                continue
            if last.valid:
                log_event(LOGGER, "checks_passed", pr_number=pr_number, sha=sha, polls=poll)
                return last
            if last.failed:
                log_event(
                    LOGGER,
                    "checks_failed",
                    pr_number=pr_number,
                    sha=sha,
                    failed=last.failed,
                )
                return last

            log_event(
                LOGGER,
                "checks_pending",
                pr_number=pr_number,
                sha=sha,
                poll=poll,
                max_polls=max_polls,
                pending=last.pending,
            )
            if poll < max_polls:
                time.sleep(self._config.check_poll_interval_seconds)

        detail = f": {last.reason}" if last.reason else ""
        return StatusCheckEvaluation(
            valid=False,
            reason=(
                f"Timed out after {self._config.update_timeout_minutes} minutes "
                f"waiting for checks{detail}"
            ),
            pending=last.pending,
        )
