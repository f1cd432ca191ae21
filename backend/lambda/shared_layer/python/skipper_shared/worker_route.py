"""skipper_shared.worker_route — Match inbound events against worker triggers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from skipper_shared.worker_contract import (
    WorkerDefinition,
    WorkerManifest,
    WorkerTrigger,
)


@dataclass(frozen=True)
class RouteContext:
    """Event attributes a trigger can match on."""

    provider: str
    event: str
    action: Optional[str] = None
    repository: Optional[str] = None
    base_branch: Optional[str] = None
    head_branch: Optional[str] = None
    draft: Optional[bool] = None


@dataclass(frozen=True)
class WorkerSubscription:
    worker_id: str
    events: Tuple[str, ...]


def route_workers(manifest: WorkerManifest, context: RouteContext) -> List[WorkerDefinition]:
    """Enabled workers with at least one matching trigger, sorted by id."""
    matched = [
        worker
        for worker in manifest.workers
        if worker.enabled and _matches_worker(worker, context)
    ]
    return sorted(matched, key=lambda worker: worker.id)


def collect_subscriptions(manifest: WorkerManifest) -> List[WorkerSubscription]:
    """Per enabled worker, the sorted unique github events it subscribes to."""
    subscriptions = []
    for worker in sorted(manifest.workers, key=lambda w: w.id):
        if not worker.enabled:
            continue
        events = sorted(
            {
                trigger.event.strip()
                for trigger in worker.triggers
                if trigger.provider == "github" and trigger.event.strip()
            }
        )
        subscriptions.append(WorkerSubscription(worker_id=worker.id, events=tuple(events)))
    return subscriptions


def collect_github_events(workers: Iterable[WorkerDefinition]) -> List[str]:
    """Union of github events across enabled workers, sorted."""
    events = set()
    for worker in workers:
        if not worker.enabled:
            continue
        for trigger in worker.triggers:
            if trigger.provider != "github":
                continue
            event = trigger.event.strip()
            if event:
                events.add(event)
    return sorted(events)


def _matches_worker(worker: WorkerDefinition, context: RouteContext) -> bool:
    return any(_matches_trigger(trigger, context) for trigger in worker.triggers)


def _matches_trigger(trigger: WorkerTrigger, context: RouteContext) -> bool:
    if trigger.provider != context.provider:
        return False
    if trigger.event != context.event:
        return False
    if trigger.actions is not None and context.action not in trigger.actions:
        return False
    condition = trigger.filter
    if condition is None:
        return True
    if not _matches_optional(condition.repository, context.repository):
        return False
    if not _matches_optional(condition.base_branches, context.base_branch):
        return False
    if not _matches_optional(condition.head_branches, context.head_branch):
        return False
    # draft only constrains when both sides carry a value
    if condition.draft is not None and context.draft is not None:
        return condition.draft == context.draft
    return True


def _matches_optional(candidates: Optional[Sequence[str]], value: Optional[str]) -> bool:
    if not candidates:
        return True
    if not value:
        return False
    return value in candidates
