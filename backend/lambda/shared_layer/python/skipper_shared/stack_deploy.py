"""skipper_shared.stack_deploy — Idempotent CloudFormation stack deploys.

State machine:
    Absent          → create → poll → Created | CreateFailed
    Present, stable → update → poll → Updated | UpdateFailed
                             → "No updates are to be performed" → Noop
    Present, *_IN_PROGRESS   → rejected immediately (StackBusyError)

Polling runs at a fixed interval until the caller's deadline; a deadline
passed without a terminal status raises StackTimeoutError, distinct from a
definite failure (StackDeployError, carrying a summary of the most recent
failing resource events).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from botocore.exceptions import ClientError

from skipper_shared.errors import StackBusyError, StackDeployError, StackTimeoutError

logger = logging.getLogger(__name__)

SUCCESS_STATES = frozenset({"CREATE_COMPLETE", "UPDATE_COMPLETE"})
FAILURE_STATES = frozenset({
    "CREATE_FAILED",
    "ROLLBACK_COMPLETE",
    "ROLLBACK_FAILED",
    "DELETE_FAILED",
    "UPDATE_ROLLBACK_FAILED",
    "UPDATE_ROLLBACK_COMPLETE",
    "UPDATE_FAILED",
})

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"
STATUS_IN_PROGRESS = "in-progress"
STATUS_ABSENT = "absent"

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_NOOP = "noop"

DEFAULT_POLL_SECONDS = 5.0
FAILURE_SUMMARY_LIMIT = 10
STACK_CAPABILITIES = ["CAPABILITY_NAMED_IAM"]

_NO_UPDATES_MESSAGE = "No updates are to be performed"


@dataclass
class StackDeployResult:
    stack_name: str
    action: str
    status: str
    outputs: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def kind(self) -> str:
        return classify_stack_status(self.status)

    def output(self, key: str) -> Optional[str]:
        for item in self.outputs:
            if item.get("OutputKey") == key:
                return item.get("OutputValue")
        return None


@dataclass(frozen=True)
class StackState:
    stack_name: str
    kind: str
    status: str = ""


def classify_stack_status(status: str) -> str:
    """Map a CloudFormation status onto success / failure / in-progress."""
    if status in SUCCESS_STATES:
        return STATUS_SUCCESS
    if status in FAILURE_STATES:
        return STATUS_FAILURE
    return STATUS_IN_PROGRESS


# ---------------------------------------------------------------------------
# Deploy
# ---------------------------------------------------------------------------


def deploy_stack(
    cfn: Any,
    stack_name: str,
    template_body: Optional[str],
    parameters: Mapping[str, Optional[str]],
    timeout_seconds: float,
    tags: Optional[Mapping[str, str]] = None,
    poll_seconds: float = DEFAULT_POLL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.time,
) -> StackDeployResult:
    """Create the stack if absent, otherwise update it, and wait for the outcome.

    ``parameters`` maps keys to values; a ``None`` value reuses the stack's
    previous value on update. ``template_body=None`` reuses the deployed
    template (update only).
    """
    current = describe_stack(cfn, stack_name)

    if current is None:
        if template_body is None:
            raise StackDeployError(
                f"Stack {stack_name} does not exist and no template was supplied",
                stack_name=stack_name,
            )
        logger.info("Creating stack %s", stack_name)
        cfn.create_stack(
            StackName=stack_name,
            TemplateBody=template_body,
            Parameters=to_cfn_parameters(parameters, allow_previous=False),
            Capabilities=STACK_CAPABILITIES,
            **_tags_kwargs(tags),
        )
        status = wait_for_terminal_status(
            cfn, stack_name, timeout_seconds, poll_seconds=poll_seconds, sleep=sleep, clock=clock
        )
        return StackDeployResult(stack_name, ACTION_CREATE, status, get_stack_outputs(cfn, stack_name))

    current_status = str(current.get("StackStatus") or "")
    if current_status.endswith("_IN_PROGRESS"):
        raise StackBusyError(
            f"Stack {stack_name} currently {current_status}",
            stack_name=stack_name,
            status=current_status,
        )

    update_kwargs: Dict[str, Any] = {
        "StackName": stack_name,
        "Parameters": to_cfn_parameters(parameters, allow_previous=True),
        "Capabilities": STACK_CAPABILITIES,
    }
    if template_body is None:
        update_kwargs["UsePreviousTemplate"] = True
    else:
        update_kwargs["TemplateBody"] = template_body
    update_kwargs.update(_tags_kwargs(tags))

    logger.info("Updating stack %s (current status %s)", stack_name, current_status)
    try:
        cfn.update_stack(**update_kwargs)
    except ClientError as exc:
        message = str(exc.response.get("Error", {}).get("Message") or exc)
        if _NO_UPDATES_MESSAGE in message:
            logger.info("Stack %s unchanged", stack_name)
            return StackDeployResult(
                stack_name, ACTION_NOOP, current_status, list(current.get("Outputs") or [])
            )
        raise

    status = wait_for_terminal_status(
        cfn, stack_name, timeout_seconds, poll_seconds=poll_seconds, sleep=sleep, clock=clock
    )
    return StackDeployResult(stack_name, ACTION_UPDATE, status, get_stack_outputs(cfn, stack_name))


def wait_for_terminal_status(
    cfn: Any,
    stack_name: str,
    timeout_seconds: float,
    poll_seconds: float = DEFAULT_POLL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.time,
) -> str:
    """Poll until success (returns the status) or failure (raises)."""
    deadline = clock() + timeout_seconds
    last_status = ""
    while clock() < deadline:
        last_status = get_stack_status(cfn, stack_name)
        kind = classify_stack_status(last_status)
        if kind == STATUS_SUCCESS:
            logger.info("Stack %s reached %s", stack_name, last_status)
            return last_status
        if kind == STATUS_FAILURE:
            summary = get_failure_summary(cfn, stack_name)
            raise StackDeployError(
                f"Stack {stack_name} failed: {last_status}",
                stack_name=stack_name,
                status=last_status,
                summary=summary,
            )
        sleep(poll_seconds)
    raise StackTimeoutError(stack_name, timeout_seconds, last_status)


# ---------------------------------------------------------------------------
# Describe helpers
# ---------------------------------------------------------------------------


def describe_stack(cfn: Any, stack_name: str) -> Optional[Dict[str, Any]]:
    """Current stack description, or None when the stack does not exist."""
    try:
        resp = cfn.describe_stacks(StackName=stack_name)
    except ClientError as exc:
        message = str(exc.response.get("Error", {}).get("Message") or exc)
        if "does not exist" in message:
            return None
        raise
    stacks = resp.get("Stacks") or []
    return stacks[0] if stacks else None


def get_stack_status(cfn: Any, stack_name: str) -> str:
    stack = describe_stack(cfn, stack_name)
    status = str((stack or {}).get("StackStatus") or "")
    if not status:
        raise StackDeployError(f"Cannot read stack status: {stack_name}", stack_name=stack_name)
    return status


def get_stack_outputs(cfn: Any, stack_name: str) -> List[Dict[str, Any]]:
    stack = describe_stack(cfn, stack_name) or {}
    return list(stack.get("Outputs") or [])


def get_failure_summary(cfn: Any, stack_name: str, limit: int = FAILURE_SUMMARY_LIMIT) -> List[str]:
    """Most recent failing / rollback resource events as readable lines."""
    try:
        resp = cfn.describe_stack_events(StackName=stack_name)
    except ClientError as exc:
        logger.warning("Could not read stack events for %s: %s", stack_name, exc)
        return []
    lines: List[str] = []
    for event in resp.get("StackEvents") or []:
        status = str(event.get("ResourceStatus") or "")
        if "FAILED" not in status and "ROLLBACK" not in status:
            continue
        logical_id = event.get("LogicalResourceId") or "unknown"
        reason = event.get("ResourceStatusReason") or "no reason"
        lines.append(f"{logical_id}: {status or 'unknown'} - {reason}")
        if len(lines) >= limit:
            break
    return lines


def stack_parameter_values(parameters: Iterable[Mapping[str, Any]]) -> Dict[str, Optional[str]]:
    """``[{ParameterKey, ParameterValue}]`` → ``{key: value}``."""
    values: Dict[str, Optional[str]] = {}
    for parameter in parameters or []:
        key = parameter.get("ParameterKey")
        if not key:
            continue
        values[key] = parameter.get("ParameterValue")
    return values


# ---------------------------------------------------------------------------
# Parameter shaping
# ---------------------------------------------------------------------------


def to_cfn_parameters(
    parameters: Mapping[str, Optional[str]], allow_previous: bool = True
) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for key, value in parameters.items():
        if value is None:
            # nothing to reuse on create; the template default applies
            if allow_previous:
                out.append({"ParameterKey": key, "UsePreviousValue": True})
            continue
        out.append({"ParameterKey": key, "ParameterValue": value})
    return out


def merge_worker_parameters(
    previous: Iterable[Mapping[str, Any]],
    worker_patch: Mapping[str, str],
) -> Dict[str, Optional[str]]:
    """Overlay worker parameter values onto a stack's existing parameters.

    Existing keys named by the patch take the new value, other existing keys
    keep their previous value (None), and new patch keys are appended.
    """
    merged: Dict[str, Optional[str]] = {}
    for parameter in previous or []:
        key = parameter.get("ParameterKey")
        if not key:
            continue
        merged[key] = worker_patch.get(key, "") if key in worker_patch else None
    for key, value in worker_patch.items():
        if key not in merged:
            merged[key] = value
    return merged


def _tags_kwargs(tags: Optional[Mapping[str, str]]) -> Dict[str, Any]:
    if not tags:
        return {}
    return {"Tags": [{"Key": k, "Value": v} for k, v in tags.items()]}


def read_stack_state(cfn: Any, stack_name: str) -> StackState:
    """Absent, or the classified current status of an existing stack."""
    stack = describe_stack(cfn, stack_name)
    if stack is None:
        return StackState(stack_name, STATUS_ABSENT)
    status = str(stack.get("StackStatus") or "")
    return StackState(stack_name, classify_stack_status(status), status)
