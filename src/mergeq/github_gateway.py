from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import time
from typing import Final, cast
from urllib.parse import quote, urlencode

from mergeq.models import (
    CheckResult,
    CheckStatus,
    MergeMethod,
    PullRequestSnapshot,
    Review,
    UpdateResult,
)
from mergeq.observability import log_event
from mergeq.shell import CommandError, run


LOGGER = logging.getLogger("mergeq.github_gateway")

_PAGE_SIZE: Final[int] = 100
_MAX_GET_RETRIES: Final[int] = 3
_RETRY_INITIAL_DELAY_SECONDS: Final[float] = 1.0
_RETRY_MAX_DELAY_SECONDS: Final[float] = 10.0
_RETRY_BACKOFF_MULTIPLIER: Final[float] = 2.0
_BRANCH_UPDATE_POLL_ATTEMPTS: Final[int] = 10
_BRANCH_UPDATE_POLL_INTERVAL_SECONDS: Final[float] = 3.0

_CHECK_RUN_CONCLUSIONS: Final[dict[str, CheckStatus]] = {
    "success": "success",
    "failure": "failure",
    "cancelled": "cancelled",
    "neutral": "neutral",
    "skipped": "skipped",
    "timed_out": "failure",
    "action_required": "failure",
    "stale": "pending",
}
_COMMIT_STATUS_STATES: Final[dict[str, CheckStatus]] = {
    "success": "success",
    "failure": "failure",
    "error": "failure",
    "pending": "pending",
}


class GitHubApiError(RuntimeError):
    """GitHub rejected a request or could not be reached."""

    def __init__(
        self, message: str, *, status_code: int | None = None, api_message: str = ""
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.api_message = api_message or message

    @property
    def retryable(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for pull request")

        head = _as_object_dict(payload_obj.get("head"))
        base = _as_object_dict(payload_obj.get("base"))
        if head is None or base is None:
            raise RuntimeError("Unexpected GitHub response: missing pull request head/base")
        user_obj = _as_object_dict(payload_obj.get("user"))

        head_ref = _as_string(head.get("ref"))
        snapshot = PullRequestSnapshot(
            number=_as_int(payload_obj.get("number"), field="number"),
            title=_as_string(payload_obj.get("title")),
            author_login=_as_string(user_obj.get("login") if user_obj else None),
            html_url=_as_string(payload_obj.get("html_url")),
            state=_as_string(payload_obj.get("state")).strip().lower(),
            merged=_as_optional_bool(payload_obj.get("merged")) is True,
            draft=_as_optional_bool(payload_obj.get("draft")) is True,
            labels=_label_names(payload_obj.get("labels")),
            head_sha=_as_string(head.get("sha")),
            head_ref=head_ref,
            head_label=_as_string(head.get("label")) or head_ref,
            base_ref=_as_string(base.get("ref")),
            mergeable=_as_optional_bool(payload_obj.get("mergeable")),
            cross_repository=_repo_full_name(head) != _repo_full_name(base),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr_number=snapshot.number,
            state=snapshot.effective_state,
            head_sha=snapshot.head_sha,
        )
        return snapshot

    def list_reviews(self, pr_number: int) -> tuple[Review, ...]:
        reviews: list[Review] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/reviews?{query}"
            payload = self._api_json("GET", path)
            if not isinstance(payload, list):
                raise RuntimeError("Unexpected GitHub response: expected list of reviews")

            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                user_obj = _as_object_dict(item_obj.get("user"))
                reviews.append(
                    Review(
                        reviewer_login=_as_login(user_obj.get("login") if user_obj else None),
                        state=_as_string(item_obj.get("state")).strip().upper(),
                        submitted_at=_as_string(item_obj.get("submitted_at")),
                    )
                )
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_reviews",
            pr_number=pr_number,
            count=len(reviews),
        )
        return tuple(reviews)

    def get_commit_checks(self, sha: str) -> tuple[CheckResult, ...]:
        checks = [*self._list_check_runs(sha), *self._list_commit_statuses(sha)]
        log_event(
            LOGGER,
            "github_read",
            endpoint="commit_checks",
            sha=sha,
            count=len(checks),
        )
        return tuple(checks)

    def is_branch_behind(self, pr_number: int) -> bool:
        pr = self.get_pull_request(pr_number)
        basehead = f"{_quote_ref(pr.base_ref)}...{_quote_ref(pr.head_label)}"
        path = f"/repos/{self.owner}/{self.name}/compare/{basehead}"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for compare commits")

        # behind_by counts base commits missing from the PR branch.
        behind_by = _as_int(payload_obj.get("behind_by", 0), field="behind_by")
        log_event(
            LOGGER,
            "github_read",
            endpoint="compare_commits",
            pr_number=pr_number,
            base_ref=pr.base_ref,
            head_label=pr.head_label,
            behind_by=behind_by,
        )
        return behind_by > 0

    def update_branch(self, pr_number: int) -> UpdateResult:
        """Merge the base branch into the PR branch, GitHub's "Update branch" button.

        GitHub answers 202 and performs the merge asynchronously, so the PR is
        polled until its head sha moves before a result is returned.
        """
        pr = self.get_pull_request(pr_number)
        previous_sha = pr.head_sha
        log_event(
            LOGGER,
            "branch_update_requested",
            pr_number=pr_number,
            previous_sha=previous_sha,
            base_ref=pr.base_ref,
            head_ref=pr.head_ref,
        )
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/update-branch"
        try:
            self._api_json("PUT", path, payload={"expected_head_sha": previous_sha})
        except GitHubApiError as exc:
            if exc.status_code == 409 or "conflict" in exc.api_message.lower():
                log_event(
                    LOGGER,
                    "branch_update_conflict",
                    level=logging.WARNING,
                    pr_number=pr_number,
                    status_code=exc.status_code,
                    error=exc.api_message,
                )
                return UpdateResult(success=False, conflict=True, error="Merge conflict detected")
            if exc.status_code == 422:
                log_event(
                    LOGGER,
                    "branch_update_rejected",
                    level=logging.WARNING,
                    pr_number=pr_number,
                    status_code=exc.status_code,
                    error=exc.api_message,
                )
                return UpdateResult(
                    success=False,
                    error=f"Branch update validation failed: {exc.api_message}",
                )
            log_event(
                LOGGER,
                "branch_update_failed",
                level=logging.ERROR,
                pr_number=pr_number,
                status_code=exc.status_code,
                error=exc.api_message,
            )
            raise

        new_sha = self._wait_for_branch_update(pr_number, previous_sha)
        if new_sha is None:
            waited = int(_BRANCH_UPDATE_POLL_ATTEMPTS * _BRANCH_UPDATE_POLL_INTERVAL_SECONDS)
            return UpdateResult(
                success=False,
                error=f"Branch update did not complete within {waited}s for PR #{pr_number}",
            )
        log_event(
            LOGGER,
            "branch_updated",
            pr_number=pr_number,
            previous_sha=previous_sha,
            sha=new_sha,
        )
        return UpdateResult(success=True, sha=new_sha)

    def merge_pull_request(
        self,
        pr_number: int,
        method: MergeMethod,
        *,
        commit_title: str | None = None,
    ) -> str:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/merge"
        request: dict[str, object] = {"merge_method": method}
        if commit_title is not None:
            request["commit_title"] = commit_title
        payload_obj = _as_object_dict(self._api_json("PUT", path, payload=request))
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for merge")
        if payload_obj.get("merged") is not True:
            message = _as_string(payload_obj.get("message")) or "PR was not merged"
            raise GitHubApiError(
                f"Failed to merge PR #{pr_number}: {message}", api_message=message
            )
        sha = _as_string(payload_obj.get("sha"))
        log_event(LOGGER, "pr_merged", pr_number=pr_number, method=method, sha=sha)
        return sha

    def delete_branch(self, ref: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/git/refs/heads/{_quote_ref(ref)}"
        try:
            self._api_json("DELETE", path)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "branch_delete_failed",
                level=logging.WARNING,
                ref=ref,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        log_event(LOGGER, "branch_deleted", ref=ref)

    def add_labels(self, pr_number: int, labels: tuple[str, ...]) -> None:
        if not labels:
            return
        path = f"/repos/{self.owner}/{self.name}/issues/{pr_number}/labels"
        self._api_json("POST", path, payload={"labels": list(labels)})
        log_event(LOGGER, "labels_added", pr_number=pr_number, labels=labels)

    def remove_label(self, pr_number: int, label: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{pr_number}/labels/{quote(label, safe='')}"
        try:
            self._api_json("DELETE", path)
        except GitHubApiError as exc:
            if exc.status_code == 404:
                return
            raise
        log_event(LOGGER, "label_removed", pr_number=pr_number, label=label)

    def add_comment(self, pr_number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{pr_number}/comments"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                level=logging.WARNING,
                repo_full_name=self.full_name,
                pr_number=pr_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_comment_posted", pr_number=pr_number)

    def list_prs_with_label(self, label: str) -> tuple[int, ...]:
        query = urlencode(
            {
                "state": "open",
                "labels": label,
                "sort": "created",
                "direction": "asc",
                "per_page": _PAGE_SIZE,
            }
        )
        path = f"/repos/{self.owner}/{self.name}/issues?{query}"
        payload = self._api_json("GET", path)
        if not isinstance(payload, list):
            raise RuntimeError("Unexpected GitHub response: expected list for issues")

        numbers: list[int] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            # Plain issues share the endpoint; only pull requests carry this key.
            if "pull_request" not in item_obj:
                continue
            numbers.append(_as_int(item_obj.get("number"), field="number"))
        log_event(
            LOGGER,
            "github_read",
            endpoint="issues_with_label",
            label=label,
            count=len(numbers),
        )
        return tuple(numbers)

    def _list_check_runs(self, sha: str) -> list[CheckResult]:
        results: list[CheckResult] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            path = f"/repos/{self.owner}/{self.name}/commits/{sha}/check-runs?{query}"
            payload_obj = _as_object_dict(self._api_json("GET", path))
            if payload_obj is None:
                raise RuntimeError("Unexpected GitHub response: expected object for check runs")
            runs = payload_obj.get("check_runs")
            if not isinstance(runs, list):
                raise RuntimeError("Unexpected GitHub response: expected check_runs list")
            for item in runs:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                conclusion = _normalize_optional_lower_str(item_obj.get("conclusion"))
                results.append(
                    CheckResult(
                        name=_as_string(item_obj.get("name")),
                        status=map_check_run_status(
                            conclusion, _as_string(item_obj.get("status")).strip().lower()
                        ),
                        conclusion=conclusion,
                    )
                )
            if len(runs) < _PAGE_SIZE:
                break
            page += 1
        return results

    def _list_commit_statuses(self, sha: str) -> list[CheckResult]:
        path = f"/repos/{self.owner}/{self.name}/commits/{sha}/status?per_page={_PAGE_SIZE}"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for combined status")
        statuses = payload_obj.get("statuses")
        if not isinstance(statuses, list):
            raise RuntimeError("Unexpected GitHub response: expected statuses list")

        results: list[CheckResult] = []
        for item in statuses:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            state = _as_string(item_obj.get("state")).strip().lower()
            results.append(
                CheckResult(
                    name=_as_string(item_obj.get("context")),
                    status=map_commit_status_state(state),
                    conclusion=state or None,
                )
            )
        return results

    def _wait_for_branch_update(self, pr_number: int, previous_sha: str) -> str | None:
        for attempt in range(1, _BRANCH_UPDATE_POLL_ATTEMPTS + 1):
            time.sleep(_BRANCH_UPDATE_POLL_INTERVAL_SECONDS)
            pr = self.get_pull_request(pr_number)
            if pr.head_sha != previous_sha:
                return pr.head_sha
            log_event(
                LOGGER,
                "branch_update_pending",
                pr_number=pr_number,
                attempt=attempt,
                max_attempts=_BRANCH_UPDATE_POLL_ATTEMPTS,
            )
        return None

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        if method_upper != "GET":
            return self._request(method_upper, path, payload)

        delay = _RETRY_INITIAL_DELAY_SECONDS
        for attempt in range(_MAX_GET_RETRIES + 1):
            try:
                return self._request(method_upper, path, None)
            except (GitHubApiError, CommandError) as exc:
                retryable = not isinstance(exc, GitHubApiError) or exc.retryable
                if not retryable or attempt == _MAX_GET_RETRIES:
                    log_event(
                        LOGGER,
                        "github_get_failed",
                        level=logging.WARNING,
                        path=path,
                        attempts=attempt + 1,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    raise
                log_event(
                    LOGGER,
                    "github_get_retrying",
                    path=path,
                    attempt=attempt + 1,
                    delay_seconds=delay,
                    error=str(exc),
                )
                time.sleep(delay)
                delay = min(delay * _RETRY_BACKOFF_MULTIPLIER, _RETRY_MAX_DELAY_SECONDS)
        raise AssertionError("unreachable")

    def _request(self, method: str, path: str, payload: dict[str, object] | None) -> object:
        cmd = ["gh", "api", "--method", method, "--include", path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload, check=False)

        try:
            status_code, _headers, body = _parse_http_response(raw)
        except RuntimeError as exc:
            raise GitHubApiError(
                f"GitHub API {method} {path} failed: {exc} (output: {_preview_for_log(raw)})"
            ) from exc

        if status_code < 200 or status_code >= 300:
            api_message = _error_message(body)
            raise GitHubApiError(
                f"GitHub API {method} {path} failed with status {status_code}: {api_message}",
                status_code=status_code,
                api_message=api_message,
            )
        if not body.strip():
            return None
        return json.loads(body)


def map_check_run_status(conclusion: str | None, status: str) -> CheckStatus:
    if conclusion:
        return _CHECK_RUN_CONCLUSIONS.get(conclusion, "pending")
    # No conclusion yet; fall back to the run's lifecycle status.
    return "success" if status == "completed" else "pending"


def map_commit_status_state(state: str) -> CheckStatus:
    return _COMMIT_STATUS_STATES.get(state, "pending")


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _error_message(body: str) -> str:
    stripped = body.strip()
    if not stripped:
        return "<empty>"
    try:
        parsed = json.loads(stripped)
    except ValueError:
        return stripped
    parsed_obj = _as_object_dict(parsed)
    if parsed_obj is not None and isinstance(parsed_obj.get("message"), str):
        return cast(str, parsed_obj["message"])
    return stripped


def _quote_ref(ref: str) -> str:
    return quote(ref, safe="/:")


def _repo_full_name(ref_obj: dict[str, object]) -> str:
    repo_obj = _as_object_dict(ref_obj.get("repo"))
    if repo_obj is None:
        return ""
    return _as_string(repo_obj.get("full_name")).lower()


def _label_names(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    names: list[str] = []
    for entry in value:
        entry_obj = _as_object_dict(entry)
        if entry_obj is None:
            continue
        name = entry_obj.get("name")
        if isinstance(name, str):
            names.append(name)
    return tuple(names)


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _normalize_optional_lower_str(value: object) -> str | None:
    raw = _as_optional_str(value)
    if raw is None:
        return None
    normalized = raw.strip().lower()
    return normalized or None


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_login(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    return normalized or None


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    raise RuntimeError("Unexpected GitHub response type for bool field")


def _as_optional_bool(value: object) -> bool | None:
    if value is None:
        return None
    return _as_bool(value)
