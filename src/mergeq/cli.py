from __future__ import annotations

import argparse
from dataclasses import asdict
import json
import logging
import os
from pathlib import Path
from typing import Mapping, cast

from mergeq import messages
from mergeq.branch_updater import BranchUpdater
from mergeq.config import (
    QueueConfig,
    config_from_action_inputs,
    load_config,
    parse_repository,
)
from mergeq.github_gateway import GitHubGateway
from mergeq.models import ProcessResult, QueueEvent, ValidationResult
from mergeq.notifier import PullRequestDetails, notify
from mergeq.observability import configure_logging, log_event
from mergeq.processor import GitHubMerger, QueueProcessor
from mergeq.validator import PullRequestValidator, waiting_on_checks


LOGGER = logging.getLogger("mergeq.cli")
_NOTIFY_EVENTS: tuple[QueueEvent, ...] = ("merged", "failed", "conflict", "rejected", "removed")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mergeq")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="TOML config file; defaults to GitHub Action inputs from the environment",
    )
    parser.add_argument(
        "--repo",
        type=str,
        default=None,
        help="Repository as owner/name; defaults to $GITHUB_REPOSITORY",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log every event instead of milestones only",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    process_parser = subparsers.add_parser(
        "process", help="Validate, update and merge the next queued pull request"
    )
    process_parser.add_argument(
        "--pr", type=int, default=None, help="Process this PR instead of the oldest queued one"
    )

    add_parser = subparsers.add_parser(
        "add", help="Validate a pull request and add it to the queue"
    )
    add_parser.add_argument("--pr", type=int, required=True)

    remove_parser = subparsers.add_parser("remove", help="Remove a pull request from the queue")
    remove_parser.add_argument("--pr", type=int, required=True)

    notify_parser = subparsers.add_parser("notify", help="Send a queue notification to Slack")
    notify_parser.add_argument("--pr", type=int, required=True)
    notify_parser.add_argument("--result", choices=_NOTIFY_EVENTS, required=True)
    notify_parser.add_argument("--reason", type=str, default=None)

    validate_parser = subparsers.add_parser(
        "validate", help="Print the merge readiness checklist of a pull request"
    )
    validate_parser.add_argument("--pr", type=int, required=True)
    validate_parser.add_argument("--json", action="store_true", help="Print the result as JSON")

    return parser


def main() -> None:
    args = build_parser().parse_args()
    configure_logging(True if args.verbose else "low")
    config = _resolve_config(args.config)
    owner, name = parse_repository(args.repo or os.environ.get("GITHUB_REPOSITORY", ""))
    github = GitHubGateway(owner, name)

    if args.command == "process":
        _cmd_process(config, github, pr_number=args.pr)
        return
    if args.command == "add":
        _cmd_add(config, github, pr_number=args.pr)
        return
    if args.command == "remove":
        _cmd_remove(config, github, pr_number=args.pr)
        return
    if args.command == "notify":
        _cmd_notify(
            config,
            github,
            pr_number=args.pr,
            event=cast(QueueEvent, args.result),
            reason=args.reason,
        )
        return
    if args.command == "validate":
        _cmd_validate(config, github, pr_number=args.pr, as_json=bool(args.json))
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _resolve_config(path: Path | None) -> QueueConfig:
    if path is not None:
        return load_config(path)
    return config_from_action_inputs(os.environ)


def _cmd_process(
    config: QueueConfig, github: GitHubGateway, *, pr_number: int | None
) -> ProcessResult | None:
    if pr_number is None:
        queued = github.list_prs_with_label(config.queued_label)
        if not queued:
            log_event(LOGGER, "queue_empty", label=config.queued_label)
            _write_action_output("result", "none")
            return None
        pr_number = queued[0]
    log_event(LOGGER, "pr_selected", pr_number=pr_number)

    validator = PullRequestValidator(github, config)
    processor = QueueProcessor(
        github,
        gate=validator,
        updater=BranchUpdater(github, validator, config),
        merger=GitHubMerger(github, config),
        config=config,
    )
    try:
        result = processor.process_pr(pr_number)
    except Exception as exc:
        _report_unexpected_error(config, github, pr_number, exc)
        raise

    _write_action_output("result", result.result)
    _write_action_output("pr-number", str(pr_number))
    if result.result != "removed":
        _send_notification(config, github, pr_number, result.result, reason=result.reason)
    print(f"PR #{pr_number}: {result.result}" + (f" ({result.reason})" if result.reason else ""))
    return result


def _cmd_add(config: QueueConfig, github: GitHubGateway, *, pr_number: int) -> bool:
    validation = PullRequestValidator(github, config).validate(pr_number)
    if validation.valid or waiting_on_checks(validation):
        github.add_labels(pr_number, (config.queued_label,))
        queued = github.list_prs_with_label(config.queued_label)
        position = queued.index(pr_number) + 1 if pr_number in queued else len(queued) + 1
        github.add_comment(pr_number, messages.added_to_queue(position))
        log_event(LOGGER, "pr_added_to_queue", pr_number=pr_number, position=position)
        return True

    reason = validation.reason or "PR is not ready to merge"
    github.remove_label(pr_number, config.queue_label)
    github.add_comment(pr_number, messages.rejected_from_queue(reason, config=config))
    log_event(LOGGER, "pr_rejected_from_queue", pr_number=pr_number, reason=reason)
    _send_notification(config, github, pr_number, "rejected", reason=reason)
    return False


def _cmd_remove(config: QueueConfig, github: GitHubGateway, *, pr_number: int) -> None:
    for label in config.queue_labels:
        github.remove_label(pr_number, label)
    github.add_comment(pr_number, messages.removed_by_request())
    log_event(LOGGER, "pr_removed_from_queue", pr_number=pr_number)


def _cmd_notify(
    config: QueueConfig,
    github: GitHubGateway,
    *,
    pr_number: int,
    event: QueueEvent,
    reason: str | None,
) -> None:
    _send_notification(config, github, pr_number, event, reason=reason)


def _cmd_validate(
    config: QueueConfig, github: GitHubGateway, *, pr_number: int, as_json: bool
) -> ValidationResult:
    result = PullRequestValidator(github, config).validate(pr_number)
    if as_json:
        print(json.dumps(asdict(result), indent=2, sort_keys=True))
        return result

    print(f"PR #{pr_number}: {'ready' if result.valid else 'not ready'}")
    if result.reason:
        print(f"Reason: {result.reason}")
    if result.checks is not None:
        for key, passed in asdict(result.checks).items():
            print(f"  [{'x' if passed else ' '}] {key}")
    return result


def _send_notification(
    config: QueueConfig,
    github: GitHubGateway,
    pr_number: int,
    event: QueueEvent,
    *,
    reason: str | None,
) -> None:
    if not config.slack_webhook_url:
        return
    try:
        pr = github.get_pull_request(pr_number)
    except Exception as exc:  # noqa: BLE001
        log_event(
            LOGGER,
            "notification_pr_lookup_failed",
            level=logging.WARNING,
            pr_number=pr_number,
            error_type=type(exc).__name__,
        )
        return
    details = PullRequestDetails.from_snapshot(pr, repository=github.full_name)
    notify(config.slack_webhook_url, event, details, reason=reason)


def _report_unexpected_error(
    config: QueueConfig, github: GitHubGateway, pr_number: int, exc: Exception
) -> None:
    log_event(
        LOGGER,
        "pr_processing_error",
        level=logging.ERROR,
        pr_number=pr_number,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    try:
        github.remove_label(pr_number, config.processing_label)
        github.add_labels(pr_number, (config.failed_label,))
        github.add_comment(pr_number, messages.removed_error(str(exc)))
    except Exception as report_exc:  # noqa: BLE001
        log_event(
            LOGGER,
            "pr_error_report_failed",
            level=logging.WARNING,
            pr_number=pr_number,
            error_type=type(report_exc).__name__,
        )
    _send_notification(config, github, pr_number, "failed", reason=str(exc))


def _write_action_output(
    name: str, value: str, *, environ: Mapping[str, str] | None = None
) -> None:
    env = os.environ if environ is None else environ
    output_path = env.get("GITHUB_OUTPUT")
    if not output_path:
        return
    with Path(output_path).open("a", encoding="utf-8") as fh:
        fh.write(f"{name}={value}\n")

