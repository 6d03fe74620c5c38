from __future__ import annotations

import json
import logging
import os
import sys
from typing import Final, Literal, Mapping, cast


_ROOT_LOGGER: Final[str] = "mergeq"
_EVENT_ATTR: Final[str] = "mergeq_event"
_FIELD_LIMIT: Final[int] = 120
_LINE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Events that still print when the CLI runs in its default low mode.
_MILESTONE_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "queue_empty",
        "pr_selected",
        "branch_update_requested",
        "branch_update_attempt",
        "pending_checks_wait",
        "pr_merged",
        "pr_processing_finished",
        "pr_added_to_queue",
        "pr_rejected_from_queue",
        "pr_removed_from_queue",
        "notification_sent",
    }
)
_WORKFLOW_COMMANDS: Final[dict[int, str]] = {
    logging.WARNING: "::warning::",
    logging.ERROR: "::error::",
    logging.CRITICAL: "::error::",
}


VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    environ: Mapping[str, str] | None = None,
) -> None:
    """Install the single stderr handler of the ``mergeq`` logger tree.

    ``None`` and ``False`` silence output, ``"low"`` keeps milestones plus
    warnings, and ``True``/``"high"`` print every event. Inside a GitHub
    Actions runner, warnings and errors are emitted as workflow commands.
    """
    root = logging.getLogger(_ROOT_LOGGER)
    root.propagate = False
    root.handlers.clear()

    mode = _parse_mode(verbose)
    if mode is None:
        root.addHandler(logging.NullHandler())
        root.setLevel(logging.CRITICAL + 1)
        return

    env = os.environ if environ is None else environ
    in_actions = env.get("GITHUB_ACTIONS") == "true"
    handler = logging.StreamHandler(sys.stderr)
    formatter_cls = _ActionsAnnotationFormatter if in_actions else logging.Formatter
    handler.setFormatter(formatter_cls(_LINE_FORMAT))
    if mode == "low":
        handler.addFilter(_MilestoneFilter())
    root.addHandler(handler)
    root.setLevel(logging.INFO)


def log_event(
    logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: object
) -> None:
    rendered = [f"event={_format_field(event)}"]
    rendered.extend(f"{key}={_format_field(fields[key])}" for key in sorted(fields))
    logger.log(level, " ".join(rendered), extra={_EVENT_ATTR: event})


def _format_field(value: object) -> str:
    text = _field_text(value)
    if "=" in text or any(ch.isspace() for ch in text):
        return json.dumps(text)
    return text


def _field_text(value: object) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int | float):
        return str(value)
    if isinstance(value, str):
        text = " ".join(value.split())
        if not text:
            return "<empty>"
        return text if len(text) <= _FIELD_LIMIT else f"{text[:_FIELD_LIMIT]}..."
    if isinstance(value, tuple | list | frozenset):
        return ",".join(str(item) for item in value) or "<empty>"
    return f"<{type(value).__name__}>"


def _parse_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None or verbose is False:
        return None
    if verbose is True:
        return "high"
    mode = verbose.strip().lower()
    if mode not in ("low", "high"):
        raise ValueError(f"Unsupported verbose mode: {verbose!r}")
    return cast(VerboseMode, mode)


class _MilestoneFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        return getattr(record, _EVENT_ATTR, None) in _MILESTONE_EVENTS


class _ActionsAnnotationFormatter(logging.Formatter):
    """Prefix warnings and errors with workflow commands so the runner annotates them."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        return _WORKFLOW_COMMANDS.get(record.levelno, "") + line
