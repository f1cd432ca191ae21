"""skipper_shared.worker_contract — Worker definition contract.

A worker pairs event triggers with a runtime prompt/policy. Raw definitions
(JSON objects authored under ``.skipper/worker/``) are validated into frozen
records here; validation is fail-fast and every error names the offending
field and the definition's label.

Raw shape::

    {
      "metadata": {"id": "review", "type": "code-review", "enabled": true},
      "triggers": [
        {"provider": "github", "event": "pull_request", "actions": ["opened"],
         "if": {"repository": ["acme/api"], "baseBranches": ["main"], "draft": false}}
      ],
      "runtime": {"agent": "claude", "mode": "comment-only", "prompt": "Review it"}
    }
"""

from __future__ import annotations

import json
import logging
import math
import pathlib
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from skipper_shared.errors import ValidationError

logger = logging.getLogger(__name__)

WORKER_PROVIDERS = ("github",)
WORKER_AGENTS = ("claude", "opencode")
WORKER_MODES = ("comment-only", "apply")
DEFAULT_WORKER_MODE = "apply"

WORKER_DIR = ".skipper/worker"
WORKER_FILE_GLOB = "*.json"

_RE_WORKER_ID = re.compile(r"^[a-z0-9][a-z0-9-]*$", re.IGNORECASE)

# Absent key marker; an explicit JSON null is a type error, not "unset".
_MISSING = object()


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkerMetadata:
    id: str
    type: str
    description: Optional[str] = None
    enabled: bool = True
    version: Optional[str] = None


@dataclass(frozen=True)
class WorkerTriggerFilter:
    """Optional trigger conditions. ``None`` fields match any value."""

    repository: Optional[Tuple[str, ...]] = None
    base_branches: Optional[Tuple[str, ...]] = None
    head_branches: Optional[Tuple[str, ...]] = None
    draft: Optional[bool] = None


@dataclass(frozen=True)
class WorkerTrigger:
    provider: str
    event: str
    actions: Optional[Tuple[str, ...]] = None
    filter: Optional[WorkerTriggerFilter] = None


@dataclass(frozen=True)
class WorkerRuntime:
    prompt: str
    agent: Optional[str] = None
    mode: Optional[str] = None
    allow_push: bool = True
    max_duration_minutes: Optional[float] = None
    env: Optional[Dict[str, str]] = None

    @property
    def effective_mode(self) -> str:
        return self.mode or DEFAULT_WORKER_MODE


@dataclass(frozen=True)
class WorkerDefinition:
    metadata: WorkerMetadata
    triggers: Tuple[WorkerTrigger, ...]
    runtime: WorkerRuntime

    @property
    def id(self) -> str:
        return self.metadata.id

    @property
    def enabled(self) -> bool:
        return self.metadata.enabled is not False


@dataclass(frozen=True)
class WorkerManifest:
    workers: Tuple[WorkerDefinition, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_worker_definition(value: Any, label: str) -> WorkerDefinition:
    """Validate one raw worker definition.

    Raises ValidationError on the first invalid field.
    """
    if not isinstance(value, dict):
        raise ValidationError(f"invalid worker definition in {label}", label)
    metadata = _parse_metadata(value.get("metadata"), label)
    triggers = _parse_triggers(value.get("triggers"), label)
    runtime = _parse_runtime(value.get("runtime"), label)
    return WorkerDefinition(metadata=metadata, triggers=triggers, runtime=runtime)


def parse_worker_manifest(value: Any, label: str = "manifest") -> WorkerManifest:
    """Validate a ``{"workers": [...]}`` document; worker ids must be unique."""
    if not isinstance(value, dict) or not isinstance(value.get("workers"), list):
        raise ValidationError(f"invalid worker manifest in {label}", label)
    workers = tuple(
        parse_worker_definition(entry, f"{label} worker[{index}]")
        for index, entry in enumerate(value["workers"])
    )
    _check_unique_ids(workers)
    return WorkerManifest(workers=workers)


def _parse_metadata(value: Any, label: str) -> WorkerMetadata:
    if not isinstance(value, dict):
        raise ValidationError(f"missing metadata in {label}", f"metadata in {label}")
    worker_id = _read_worker_id(value.get("id", _MISSING), label)
    worker_type = _read_required_string(value.get("type", _MISSING), f"metadata.type in {label}")
    description = _read_optional_string(value.get("description", _MISSING), f"metadata.description in {label}")
    enabled = _read_optional_bool(value.get("enabled", _MISSING), f"metadata.enabled in {label}")
    version = _read_optional_string(value.get("version", _MISSING), f"metadata.version in {label}")
    return WorkerMetadata(
        id=worker_id,
        type=worker_type,
        description=description,
        enabled=True if enabled is None else enabled,
        version=version,
    )


def _parse_triggers(value: Any, label: str) -> Tuple[WorkerTrigger, ...]:
    if not isinstance(value, list) or not value:
        raise ValidationError(f"missing triggers in {label}", f"triggers in {label}")
    return tuple(
        _parse_trigger(entry, f"{label} triggers[{index}]")
        for index, entry in enumerate(value)
    )


def _parse_trigger(value: Any, label: str) -> WorkerTrigger:
    if not isinstance(value, dict):
        raise ValidationError(f"invalid {label}", label)
    provider = _read_required_string(value.get("provider", _MISSING), f"{label} provider")
    if provider not in WORKER_PROVIDERS:
        raise ValidationError(f"invalid provider in {label}", f"{label} provider")
    event = _read_required_string(value.get("event", _MISSING), f"{label} event")
    actions = _read_optional_string_list(value.get("actions", _MISSING), f"{label} actions")
    trigger_filter = _parse_trigger_filter(value.get("if", _MISSING), label)
    return WorkerTrigger(provider=provider, event=event, actions=actions, filter=trigger_filter)


def _parse_trigger_filter(value: Any, label: str) -> Optional[WorkerTriggerFilter]:
    if value is _MISSING:
        return None
    if not isinstance(value, dict):
        raise ValidationError(f"invalid if block in {label}", f"{label} if")
    return WorkerTriggerFilter(
        repository=_read_optional_string_list(value.get("repository", _MISSING), f"{label} if.repository"),
        base_branches=_read_optional_string_list(value.get("baseBranches", _MISSING), f"{label} if.baseBranches"),
        head_branches=_read_optional_string_list(value.get("headBranches", _MISSING), f"{label} if.headBranches"),
        draft=_read_optional_bool(value.get("draft", _MISSING), f"{label} if.draft"),
    )


def _parse_runtime(value: Any, label: str) -> WorkerRuntime:
    if not isinstance(value, dict):
        raise ValidationError(f"missing runtime in {label}", f"runtime in {label}")
    prompt = _read_required_string(value.get("prompt", _MISSING), f"runtime.prompt in {label}")
    agent = _read_optional_string(value.get("agent", _MISSING), f"runtime.agent in {label}")
    if agent is not None and agent not in WORKER_AGENTS:
        raise ValidationError(f"invalid runtime.agent in {label}", f"runtime.agent in {label}")
    mode = _read_optional_string(value.get("mode", _MISSING), f"runtime.mode in {label}")
    if mode is not None and mode not in WORKER_MODES:
        raise ValidationError(f"invalid runtime.mode in {label}", f"runtime.mode in {label}")
    allow_push = _read_optional_bool(value.get("allowPush", _MISSING), f"runtime.allowPush in {label}")
    if allow_push is None:
        allow_push = mode != "comment-only"
    max_duration = _read_optional_positive_number(
        value.get("maxDurationMinutes", _MISSING), f"runtime.maxDurationMinutes in {label}"
    )
    env = _read_optional_string_map(value.get("env", _MISSING), f"runtime.env in {label}")
    return WorkerRuntime(
        prompt=prompt,
        agent=agent,
        mode=mode,
        allow_push=allow_push,
        max_duration_minutes=max_duration,
        env=env,
    )


def _read_worker_id(value: Any, label: str) -> str:
    worker_id = _read_required_string(value, f"metadata.id in {label}")
    if not _RE_WORKER_ID.match(worker_id):
        raise ValidationError(f"invalid metadata.id in {label}", f"metadata.id in {label}")
    return worker_id


# ---------------------------------------------------------------------------
# Field readers
# ---------------------------------------------------------------------------


def _read_optional_string(value: Any, path: str) -> Optional[str]:
    if value is _MISSING:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{path} must be string", path)
    normalized = value.strip()
    if not normalized:
        raise ValidationError(f"{path} must be non-empty", path)
    return normalized


def _read_required_string(value: Any, path: str) -> str:
    normalized = _read_optional_string(value, path)
    if normalized is None:
        raise ValidationError(f"{path} is required", path)
    return normalized


def _read_optional_bool(value: Any, path: str) -> Optional[bool]:
    if value is _MISSING:
        return None
    if not isinstance(value, bool):
        raise ValidationError(f"{path} must be boolean", path)
    return value


def _read_optional_positive_number(value: Any, path: str) -> Optional[float]:
    if value is _MISSING:
        return None
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{path} must be a positive number", path)
    if not math.isfinite(value) or value <= 0:
        raise ValidationError(f"{path} must be a positive number", path)
    return value


def _read_optional_string_list(value: Any, path: str) -> Optional[Tuple[str, ...]]:
    if value is _MISSING:
        return None
    if not isinstance(value, list):
        raise ValidationError(f"{path} must be string[]", path)
    return tuple(
        _read_required_string(entry, f"{path}[{index}]")
        for index, entry in enumerate(value)
    )


def _read_optional_string_map(value: Any, path: str) -> Optional[Dict[str, str]]:
    if value is _MISSING:
        return None
    if not isinstance(value, dict):
        raise ValidationError(f"{path} must be object", path)
    result: Dict[str, str] = {}
    for key, entry in value.items():
        if not isinstance(entry, str):
            raise ValidationError(f"{path}.{key} must be string", f"{path}.{key}")
        result[str(key)] = entry
    return result


def _check_unique_ids(workers: Tuple[WorkerDefinition, ...]) -> None:
    seen = set()
    for worker in workers:
        if worker.id in seen:
            raise ValidationError(f"duplicate worker id: {worker.id}", "metadata.id")
        seen.add(worker.id)


# ---------------------------------------------------------------------------
# Canonical dict form (inverse of parse_worker_definition)
# ---------------------------------------------------------------------------


def worker_to_dict(worker: WorkerDefinition) -> Dict[str, Any]:
    """Raw camelCase form of a worker; unset optional fields are omitted."""
    metadata: Dict[str, Any] = {
        "id": worker.metadata.id,
        "type": worker.metadata.type,
        "enabled": worker.metadata.enabled,
    }
    _put(metadata, "description", worker.metadata.description)
    _put(metadata, "version", worker.metadata.version)

    runtime: Dict[str, Any] = {
        "prompt": worker.runtime.prompt,
        "allowPush": worker.runtime.allow_push,
    }
    _put(runtime, "agent", worker.runtime.agent)
    _put(runtime, "mode", worker.runtime.mode)
    _put(runtime, "maxDurationMinutes", worker.runtime.max_duration_minutes)
    if worker.runtime.env is not None:
        runtime["env"] = dict(worker.runtime.env)

    return {
        "metadata": metadata,
        "triggers": [_trigger_to_dict(trigger) for trigger in worker.triggers],
        "runtime": runtime,
    }


def manifest_to_dict(manifest: WorkerManifest) -> Dict[str, Any]:
    return {"workers": [worker_to_dict(worker) for worker in manifest.workers]}


def _trigger_to_dict(trigger: WorkerTrigger) -> Dict[str, Any]:
    out: Dict[str, Any] = {"provider": trigger.provider, "event": trigger.event}
    if trigger.actions is not None:
        out["actions"] = list(trigger.actions)
    if trigger.filter is not None:
        condition: Dict[str, Any] = {}
        if trigger.filter.repository is not None:
            condition["repository"] = list(trigger.filter.repository)
        if trigger.filter.base_branches is not None:
            condition["baseBranches"] = list(trigger.filter.base_branches)
        if trigger.filter.head_branches is not None:
            condition["headBranches"] = list(trigger.filter.head_branches)
        _put(condition, "draft", trigger.filter.draft)
        out["if"] = condition
    return out


def _put(target: Dict[str, Any], key: str, value: Any) -> None:
    if value is not None:
        target[key] = value


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def discover_worker_files(root_dir: str) -> List[pathlib.Path]:
    """Worker definition files under ``<root>/.skipper/worker``, sorted."""
    worker_dir = pathlib.Path(root_dir) / WORKER_DIR
    if not worker_dir.is_dir():
        return []
    return sorted(path for path in worker_dir.glob(WORKER_FILE_GLOB) if path.is_file())


def load_workers(root_dir: str) -> List[WorkerDefinition]:
    """Load and validate every worker definition file in a repository."""
    root = pathlib.Path(root_dir)
    workers: List[WorkerDefinition] = []
    seen_ids = set()
    for path in discover_worker_files(root_dir):
        label = path.relative_to(root).as_posix()
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValidationError(f"invalid JSON in {label}: {exc.msg}", label) from exc
        worker = parse_worker_definition(raw, label)
        if worker.id in seen_ids:
            raise ValidationError(f"duplicate worker id: {worker.id}", f"metadata.id in {label}")
        seen_ids.add(worker.id)
        workers.append(worker)
    logger.info("Loaded %d worker definition(s) from %s", len(workers), root / WORKER_DIR)
    return workers
