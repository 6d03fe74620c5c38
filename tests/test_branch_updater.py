from __future__ import annotations

import pytest

from mergeq.branch_updater import BranchUpdater
from mergeq.config import QueueConfig
from mergeq.models import (
    PullRequestSnapshot,
    StatusCheckEvaluation,
    UpdateResult,
    ValidationResult,
)
from mergeq.validator import PullRequestGate


def _pr(state: str = "open", merged: bool = False) -> PullRequestSnapshot:
    return PullRequestSnapshot(
        number=9,
        title="t",
        author_login="alice",
        html_url="u",
        state=state,
        merged=merged,
        draft=False,
        labels=(),
        head_sha="new-sha",
        head_ref="feature",
        head_label="alice:feature",
        base_ref="main",
        mergeable=True,
    )


class FakeGate(PullRequestGate):
    def __init__(self, *, behind: bool = True, evaluations: list[StatusCheckEvaluation]) -> None:
        self.behind = behind
        self.evaluations = evaluations
        self.checked: list[str] = []

    def validate(self, pr_number: int) -> ValidationResult:
        raise AssertionError("validate should not be called")

    def check_status_checks(self, sha: str) -> StatusCheckEvaluation:
        self.checked.append(sha)
        if len(self.evaluations) > 1:
            return self.evaluations.pop(0)
        return self.evaluations[0]

    def is_behind(self, pr_number: int) -> bool:
        _ = pr_number
        return self.behind


class FakeClient:
    def __init__(self, update: UpdateResult, prs: list[PullRequestSnapshot] | None = None) -> None:
        self.update = update
        self.prs = prs or [_pr()]
        self.update_calls = 0

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        _ = pr_number
        if len(self.prs) > 1:
            return self.prs.pop(0)
        return self.prs[0]

    def update_branch(self, pr_number: int) -> UpdateResult:
        _ = pr_number
        self.update_calls += 1
        return self.update


_PASSING = StatusCheckEvaluation(valid=True)
_PENDING = StatusCheckEvaluation(valid=False, reason="Pending checks: ci", pending=("ci",))
_FAILING = StatusCheckEvaluation(valid=False, reason="Failed checks: ci", failed=("ci",))


@pytest.fixture()
def sleeps(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    recorded: list[float] = []
    monkeypatch.setattr("mergeq.branch_updater.time.sleep", recorded.append)
    return recorded


def _config(**overrides: object) -> QueueConfig:
    values: dict[str, object] = {"update_timeout_minutes": 2, "check_poll_interval_seconds": 30}
    values.update(overrides)
    return QueueConfig(**values)  # type: ignore[arg-type]


def test_current_branch_is_not_updated() -> None:
    client = FakeClient(UpdateResult(success=True, sha="x"))
    updater = BranchUpdater(client, FakeGate(behind=False, evaluations=[_PASSING]), _config())

    result = updater.update_if_behind(9)

    assert result == UpdateResult(success=True, conflict=False)
    assert client.update_calls == 0


def test_conflict_and_failure_are_returned_unchanged() -> None:
    conflict = UpdateResult(success=False, conflict=True, error="Merge conflict detected")
    failure = UpdateResult(success=False, error="Branch update validation failed: nope")

    for update in (conflict, failure):
        updater = BranchUpdater(FakeClient(update), FakeGate(evaluations=[_PASSING]), _config())
        assert updater.update_if_behind(9) == update


def test_success_without_sha_is_a_failure() -> None:
    updater = BranchUpdater(
        FakeClient(UpdateResult(success=True)), FakeGate(evaluations=[_PASSING]), _config()
    )

    result = updater.update_if_behind(9)

    assert result.success is False
    assert result.error == "Branch update reported success but returned no SHA"


def test_update_waits_for_checks_on_new_head(sleeps: list[float]) -> None:
    gate = FakeGate(evaluations=[_PENDING, _PENDING, _PASSING])
    updater = BranchUpdater(FakeClient(UpdateResult(success=True, sha="new-sha")), gate, _config())

    result = updater.update_if_behind(9)

    assert result == UpdateResult(success=True, sha="new-sha")
    assert gate.checked == ["new-sha", "new-sha", "new-sha"]
    assert sleeps == [30, 30]


def test_failed_checks_after_update_stop_polling(sleeps: list[float]) -> None:
    gate = FakeGate(evaluations=[_PENDING, _FAILING])
    updater = BranchUpdater(FakeClient(UpdateResult(success=True, sha="new-sha")), gate, _config())

    result = updater.update_if_behind(9)

    assert result.success is False
    assert result.sha == "new-sha"
    assert result.error == "Tests failed after branch update: Failed checks: ci"
    assert sleeps == [30]


def test_wait_for_tests_times_out(sleeps: list[float]) -> None:
    gate = FakeGate(evaluations=[_PENDING])
    updater = BranchUpdater(FakeClient(UpdateResult(success=True)), gate, _config())

    outcome = updater.wait_for_tests(9, "new-sha")

    assert outcome.valid is False
    assert outcome.reason == "Timed out after 2 minutes waiting for checks: Pending checks: ci"
    assert outcome.pending == ("ci",)
    assert len(gate.checked) == 4
    # no sleep after the final poll
    assert sleeps == [30, 30, 30]


def test_wait_for_tests_aborts_when_pr_closes(sleeps: list[float]) -> None:
    client = FakeClient(UpdateResult(success=True), prs=[_pr(), _pr(state="closed", merged=True)])
    gate = FakeGate(evaluations=[_PENDING])
    updater = BranchUpdater(client, gate, _config())

    outcome = updater.wait_for_tests(9, "new-sha")

    assert outcome == StatusCheckEvaluation(valid=False, reason="PR is merged")
    assert gate.checked == ["new-sha"]
    assert sleeps == [30]


def test_max_polls_rounds_up_and_is_at_least_one() -> None:
    gate = FakeGate(evaluations=[_PASSING])
    client = FakeClient(UpdateResult(success=True))

    assert BranchUpdater(client, gate, _config()).max_polls == 4
    assert (
        BranchUpdater(
            client, gate, _config(update_timeout_minutes=1, check_poll_interval_seconds=45)
        ).max_polls
        == 2
    )
    assert (
        BranchUpdater(
            client, gate, _config(update_timeout_minutes=1, check_poll_interval_seconds=600)
        ).max_polls
        == 1
    )


_NOTHING_REGISTERED = StatusCheckEvaluation(valid=True, no_checks=True)


def test_new_head_without_checks_is_polled_again(sleeps: list[float]) -> None:
    gate = FakeGate(evaluations=[_NOTHING_REGISTERED, _PENDING, _PASSING])
    updater = BranchUpdater(FakeClient(UpdateResult(success=True, sha="new-sha")), gate, _config())

    result = updater.update_if_behind(9)

    assert result == UpdateResult(success=True, sha="new-sha")
    assert gate.checked == ["new-sha", "new-sha", "new-sha"]
    assert sleeps == [30, 30]


def test_repository_without_checks_passes_on_second_poll(sleeps: list[float]) -> None:
    gate = FakeGate(evaluations=[_NOTHING_REGISTERED])
    updater = BranchUpdater(FakeClient(UpdateResult(success=True)), gate, _config())

    outcome = updater.wait_for_tests(9, "new-sha")

    assert outcome.valid is True
    assert gate.checked == ["new-sha", "new-sha"]
    assert sleeps == [30]


def test_single_poll_budget_accepts_empty_checks(sleeps: list[float]) -> None:
    gate = FakeGate(evaluations=[_NOTHING_REGISTERED])
    config = _config(update_timeout_minutes=1, check_poll_interval_seconds=600)
    updater = BranchUpdater(FakeClient(UpdateResult(success=True)), gate, config)

    assert updater.wait_for_tests(9, "new-sha").valid is True
    assert sleeps == []


def test_wait_for_pending_checks_uses_current_head(sleeps: list[float]) -> None:
    gate = FakeGate(evaluations=[_PENDING, _PASSING])
    updater = BranchUpdater(FakeClient(UpdateResult(success=True)), gate, _config())

    outcome = updater.wait_for_pending_checks(9)

    assert outcome.valid is True
    assert gate.checked == ["new-sha", "new-sha"]
    assert sleeps == [30]
