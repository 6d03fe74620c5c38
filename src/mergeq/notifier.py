from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Final

import httpx

from mergeq.models import PullRequestSnapshot, QueueEvent
from mergeq.observability import log_event


LOGGER = logging.getLogger("mergeq.notifier")
_TIMEOUT_SECONDS: Final[float] = 10.0

_RESULT_COLOURS: Final[dict[str, str]] = {
    "merged": "#2ea44f",
    "failed": "#d73a4a",
    "conflict": "#b60205",
    "rejected": "#e36209",
}
_RESULT_HEADERS: Final[dict[str, str]] = {
    "merged": "PR Merged Successfully",
    "failed": "PR Failed to Merge",
    "conflict": "PR Has Merge Conflicts",
    "rejected": "PR Rejected from Queue",
}
_RESULT_ICONS: Final[dict[str, str]] = {
    "merged": ":white_check_mark:",
    "failed": ":x:",
    "conflict": ":warning:",
    "rejected": ":no_entry:",
}


@dataclass(frozen=True)
class PullRequestDetails:
    number: int
    title: str
    author: str
    url: str
    repository: str

    @classmethod
    def from_snapshot(cls, pr: PullRequestSnapshot, *, repository: str) -> PullRequestDetails:
        return cls(
            number=pr.number,
            title=pr.title,
            author=pr.author_login,
            url=pr.html_url,
            repository=repository,
        )


def build_slack_payload(
    event: QueueEvent,
    pr: PullRequestDetails,
    *,
    reason: str | None = None,
    now: datetime | None = None,
) -> dict[str, object] | None:
    """Build a Block Kit payload, or None when the event is not worth a message."""
    colour = _RESULT_COLOURS.get(event)
    if colour is None:
        return None

    header = _RESULT_HEADERS[event]
    icon = _RESULT_ICONS[event]
    timestamp = (now or datetime.now(timezone.utc)).isoformat()

    blocks: list[dict[str, object]] = [
        {"type": "section", "text": {"type": "mrkdwn", "text": f"{icon} *{header}*"}},
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": " "},
            "fields": [
                {"type": "mrkdwn", "text": f"*PR:*\n<{pr.url}|#{pr.number} {pr.title}>"},
                {"type": "mrkdwn", "text": f"*Repository:*\n{pr.repository}"},
                {"type": "mrkdwn", "text": f"*Author:*\n{pr.author}"},
            ],
        },
    ]
    if reason:
        blocks.append(
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*Reason:*\n{reason}"}}
        )
    blocks.append(
        {
            "type": "actions",
            "elements": [
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "View Pull Request"},
                    "url": pr.url,
                }
            ],
        }
    )
    blocks.append(
        {
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": f"Merge Queue | {timestamp}"}],
        }
    )

    return {
        "attachments": [
            {
                "color": colour,
                "blocks": blocks,
                "fallback": f"{header}: #{pr.number} {pr.title} ({pr.repository})",
            }
        ]
    }


def send_slack_notification(
    webhook_url: str,
    payload: dict[str, object],
    *,
    client: httpx.Client | None = None,
) -> bool:
    """Post to an incoming webhook. Returns False on any failure; never raises."""
    try:
        if client is not None:
            response = client.post(webhook_url, json=payload)
        else:
            with httpx.Client(timeout=_TIMEOUT_SECONDS) as owned_client:
                response = owned_client.post(webhook_url, json=payload)
    except Exception as exc:  # noqa: BLE001
        log_event(
            LOGGER,
            "slack_delivery_error",
            level=logging.WARNING,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False
    return response.is_success


def notify(
    webhook_url: str | None,
    event: QueueEvent,
    pr: PullRequestDetails,
    *,
    reason: str | None = None,
    client: httpx.Client | None = None,
) -> bool:
    if not webhook_url:
        log_event(LOGGER, "notification_skipped", pr_number=pr.number, queue_event=event)
        return False

    payload = build_slack_payload(event, pr, reason=reason)
    if payload is None:
        log_event(LOGGER, "notification_not_applicable", pr_number=pr.number, queue_event=event)
        return False

    delivered = send_slack_notification(webhook_url, payload, client=client)
    if delivered:
        log_event(LOGGER, "notification_sent", pr_number=pr.number, queue_event=event)
    else:
        log_event(
            LOGGER,
            "notification_failed",
            level=logging.WARNING,
            pr_number=pr.number,
            queue_event=event,
        )
    return delivered
