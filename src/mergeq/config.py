from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import Mapping, cast

from mergeq.models import MergeMethod


_MERGE_METHODS: tuple[MergeMethod, ...] = ("merge", "squash", "rebase")
_BOOL_INPUTS = frozenset(
    {
        "enforce_approval_locally",
        "require_all_checks",
        "allow_draft",
        "auto_update_branch",
        "delete_branch_after_merge",
    }
)
_INT_INPUTS = frozenset(
    {
        "required_approvals",
        "update_timeout_minutes",
        "max_update_retries",
        "check_poll_interval_seconds",
    }
)
_LIST_INPUTS = frozenset({"block_labels", "ignore_checks"})
_STR_INPUTS = frozenset(
    {
        "queue_label",
        "queued_label",
        "processing_label",
        "updating_label",
        "failed_label",
        "conflict_label",
        "merge_method",
    }
)


@dataclass(frozen=True)
class QueueConfig:
    queue_label: str = "ready"
    queued_label: str = "queued-for-merge"
    processing_label: str = "merge-processing"
    updating_label: str = "merge-updating"
    failed_label: str = "merge-queue-failed"
    conflict_label: str = "merge-queue-conflict"
    required_approvals: int = 1
    enforce_approval_locally: bool = True
    require_all_checks: bool = True
    allow_draft: bool = False
    block_labels: tuple[str, ...] = ("do-not-merge", "wip")
    auto_update_branch: bool = True
    update_timeout_minutes: int = 30
    max_update_retries: int = 3
    check_poll_interval_seconds: int = 30
    merge_method: MergeMethod = "squash"
    delete_branch_after_merge: bool = True
    ignore_checks: tuple[str, ...] = ()
    slack_webhook_url: str | None = None

    @property
    def queue_labels(self) -> tuple[str, ...]:
        return (self.queued_label, self.processing_label, self.updating_label)


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> QueueConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    queue_data = _optional_table(data, "queue") or {}
    return _parse_queue_config(queue_data)


def config_from_action_inputs(environ: Mapping[str, str]) -> QueueConfig:
    """Build the config from GitHub Action inputs (``INPUT_<NAME>`` variables).

    The runner upper-cases input names but keeps their dashes, so
    ``merge-method`` arrives as ``INPUT_MERGE-METHOD``. Unset or empty inputs
    fall back to the defaults.
    """
    data: dict[str, object] = {}
    for key in sorted(_BOOL_INPUTS | _INT_INPUTS | _LIST_INPUTS | _STR_INPUTS):
        raw = _action_input(environ, key)
        if raw is None:
            continue
        if key in _BOOL_INPUTS:
            data[key] = _parse_bool_input(raw, key=key)
        elif key in _INT_INPUTS:
            data[key] = _parse_int_input(raw, key=key)
        elif key in _LIST_INPUTS:
            data[key] = [item.strip() for item in raw.split(",") if item.strip()]
        else:
            data[key] = raw

    webhook = environ.get("SLACK_WEBHOOK_URL", "").strip() or _action_input(
        environ, "slack_webhook_url"
    )
    if webhook:
        data["slack_webhook_url"] = webhook
    return _parse_queue_config(data)


def parse_repository(value: str) -> tuple[str, str]:
    owner, sep, name = value.strip().partition("/")
    if not sep or not owner or not name or "/" in name:
        raise ConfigError(f'Invalid repository format: "{value}". Expected "owner/repo".')
    return owner, name


def _parse_queue_config(data: dict[str, object]) -> QueueConfig:
    defaults = QueueConfig()
    config = QueueConfig(
        queue_label=_str_with_default(data, "queue_label", defaults.queue_label),
        queued_label=_str_with_default(data, "queued_label", defaults.queued_label),
        processing_label=_str_with_default(data, "processing_label", defaults.processing_label),
        updating_label=_str_with_default(data, "updating_label", defaults.updating_label),
        failed_label=_str_with_default(data, "failed_label", defaults.failed_label),
        conflict_label=_str_with_default(data, "conflict_label", defaults.conflict_label),
        required_approvals=_int_with_default(
            data, "required_approvals", defaults.required_approvals
        ),
        enforce_approval_locally=_bool_with_default(
            data, "enforce_approval_locally", defaults.enforce_approval_locally
        ),
        require_all_checks=_bool_with_default(
            data, "require_all_checks", defaults.require_all_checks
        ),
        allow_draft=_bool_with_default(data, "allow_draft", defaults.allow_draft),
        block_labels=_tuple_of_str_with_default(data, "block_labels", defaults.block_labels),
        auto_update_branch=_bool_with_default(
            data, "auto_update_branch", defaults.auto_update_branch
        ),
        update_timeout_minutes=_int_with_default(
            data, "update_timeout_minutes", defaults.update_timeout_minutes
        ),
        max_update_retries=_int_with_default(
            data, "max_update_retries", defaults.max_update_retries
        ),
        check_poll_interval_seconds=_int_with_default(
            data, "check_poll_interval_seconds", defaults.check_poll_interval_seconds
        ),
        merge_method=_merge_method_with_default(data, "merge_method", defaults.merge_method),
        delete_branch_after_merge=_bool_with_default(
            data, "delete_branch_after_merge", defaults.delete_branch_after_merge
        ),
        ignore_checks=_tuple_of_str_with_default(data, "ignore_checks", defaults.ignore_checks),
        slack_webhook_url=_optional_str(data, "slack_webhook_url"),
    )

    if config.required_approvals < 0:
        raise ConfigError("required_approvals must be >= 0")
    if config.update_timeout_minutes < 1:
        raise ConfigError("update_timeout_minutes must be a positive integer")
    if config.max_update_retries < 1:
        raise ConfigError("max_update_retries must be >= 1")
    if config.check_poll_interval_seconds < 1:
        raise ConfigError("check_poll_interval_seconds must be >= 1")
    labels = [
        config.queued_label,
        config.processing_label,
        config.updating_label,
        config.failed_label,
        config.conflict_label,
    ]
    if len(set(labels)) != len(labels):
        raise ConfigError("queue state labels must be distinct")
    return config


def _action_input(environ: Mapping[str, str], key: str) -> str | None:
    name = key.replace("_", "-").upper()
    raw = environ.get(f"INPUT_{name}")
    if raw is None:
        raw = environ.get(f"INPUT_{name.replace('-', '_')}")
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def _parse_bool_input(raw: str, *, key: str) -> bool:
    normalized = raw.strip().lower()
    if normalized in {"true", "yes", "1"}:
        return True
    if normalized in {"false", "no", "0"}:
        return False
    raise ConfigError(f"{key} must be a boolean, got {raw!r}")


def _parse_int_input(raw: str, *, key: str) -> int:
    try:
        return int(raw.strip(), 10)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string")
    return value.strip()


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        normalized = item.strip()
        if normalized and normalized not in out:
            out.append(normalized)
    return tuple(out)


def _merge_method_with_default(
    data: dict[str, object], key: str, default: MergeMethod
) -> MergeMethod:
    value = data.get(key, default)
    if not isinstance(value, str) or value.strip().lower() not in _MERGE_METHODS:
        raise ConfigError(
            f'Invalid merge method: "{value}". Must be one of: {", ".join(_MERGE_METHODS)}'
        )
    return cast(MergeMethod, value.strip().lower())
