from __future__ import annotations

from mergeq.config import QueueConfig


def added_to_queue(position: int) -> str:
    return f"✅ Added to merge queue at position {position}"


def rejected_from_queue(reason: str, *, config: QueueConfig) -> str:
    return (
        f"❌ Cannot add to merge queue: {reason}\n\n"
        f"Fix the problem and add the `{config.queue_label}` label again to re-queue."
    )


def merged_successfully() -> str:
    return "✅ Merged successfully"


def removed_failure(details: str, *, config: QueueConfig) -> str:
    return (
        f"❌ Removed from queue: {details}\n\n"
        f"Add the `{config.queue_label}` label again to re-queue."
    )


def removed_conflict(*, config: QueueConfig) -> str:
    return (
        "❌ Removed from queue: merge conflict detected during update\n\n"
        f"Please resolve conflicts and add the `{config.queue_label}` label again to re-queue."
    )


def removed_error(error: str) -> str:
    return f"❌ Removed from queue: error occurred\n\n```\n{error}\n```"


def removed_by_request() -> str:
    return "Removed from merge queue."
