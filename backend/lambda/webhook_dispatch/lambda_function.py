"""webhook_dispatch/lambda_function.py — GitHub webhook → worker task dispatch.

SQS-triggered Lambda. Each record carries one GitHub delivery wrapped in the
ingress envelope ({rawBodyB64, headers}). For every record:

    envelope parsed → required headers present (else skipped)
    → HMAC signature verified → payload parsed
    → worker manifest resolved (stack parameters, cached by checksum)
    → workers routed (none matched ⇒ done)
    → per matched worker, sequentially:
          environment built → installation token minted → ECS task launched

A failed launch only fails that worker; siblings still dispatch. Any other
error propagates so SQS retry / dead-letter behaviour applies to the message.

Records are processed in order and no partial-batch response is returned, so
an error on a later record fails the whole invocation and SQS redelivers every
record in the batch, re-launching tasks for records that already dispatched.
Configure the queue event source mapping with BatchSize=1.

When no manifest is deployed (WORKERS_STACK_NAME/WORKERS_SHA256 unset or an
empty manifest) a single task runs with a prompt taken from the payload or
the PROMPT env var.

Environment variables:
    ECS_CLUSTER_ARN                       cluster for RunTask (required)
    ECS_TASK_DEFINITION_ARN               task definition (required)
    ECS_SUBNET_IDS                        CSV subnet ids (required)
    ECS_SECURITY_GROUP_ID                 security group (required)
    ECS_ASSIGN_PUBLIC_IP                  ENABLED (default) | DISABLED
    ECS_CONTAINER_NAME                    default: webhook
    WEBHOOK_SECRET                        HMAC key for X-Hub-Signature-256
    WEBHOOK_SECRET_SSM_PARAMETER          alternative: SSM SecureString name
    WORKERS_STACK_NAME                    stack holding the encoded manifest
    WORKERS_SHA256                        manifest checksum this deploy expects
    GITHUB_APP_ID                         GitHub App numeric ID
    GITHUB_APP_PRIVATE_KEY_SSM_PARAMETER  SSM SecureString with the App PEM
    GITHUB_APP_KEY_TTL_SECONDS            default: 86400
    GITHUB_TOKEN_REFRESH_BUFFER_SECONDS   default: 60
    PROMPT                                legacy prompt fallback
    ANTHROPIC_API_KEY                     optional pass-through to tasks
"""

from __future__ import annotations

import json
import logging
import os
import time
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from skipper_shared.aws_clients import _get_cloudformation, _get_ecs
from skipper_shared.errors import DispatchError, IntegrityError, InvalidPayload
from skipper_shared.github_app import (
    DEFAULT_KEY_TTL_SECONDS,
    DEFAULT_TOKEN_REFRESH_BUFFER_SECONDS,
    GitHubAppCredentials,
    read_secure_parameter,
)
from skipper_shared.manifest_codec import DecodedManifestCache, decode_manifest
from skipper_shared.stack_deploy import describe_stack, stack_parameter_values
from skipper_shared.webhook import (
    WebhookMeta,
    parse_envelope,
    require_headers,
    verify_signature,
)
from skipper_shared.worker_contract import WorkerDefinition, WorkerManifest
from skipper_shared.worker_params import WORKERS_SHA256_PARAM
from skipper_shared.worker_route import RouteContext, route_workers

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

ECS_CLUSTER_ARN = os.environ.get("ECS_CLUSTER_ARN", "")
ECS_TASK_DEFINITION_ARN = os.environ.get("ECS_TASK_DEFINITION_ARN", "")
ECS_SECURITY_GROUP_ID = os.environ.get("ECS_SECURITY_GROUP_ID", "")
ECS_SUBNET_IDS = [s.strip() for s in os.environ.get("ECS_SUBNET_IDS", "").split(",") if s.strip()]
ECS_ASSIGN_PUBLIC_IP = (
    "DISABLED" if os.environ.get("ECS_ASSIGN_PUBLIC_IP", "").upper() == "DISABLED" else "ENABLED"
)
ECS_CONTAINER_NAME = os.environ.get("ECS_CONTAINER_NAME", "webhook")

WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET", "")
WEBHOOK_SECRET_SSM_PARAMETER = os.environ.get("WEBHOOK_SECRET_SSM_PARAMETER", "")

WORKERS_STACK_NAME = os.environ.get("WORKERS_STACK_NAME", "").strip()
WORKERS_SHA256 = os.environ.get("WORKERS_SHA256", "").strip()

GITHUB_APP_ID = os.environ.get("GITHUB_APP_ID", "").strip()
GITHUB_APP_PRIVATE_KEY_SSM_PARAMETER = os.environ.get("GITHUB_APP_PRIVATE_KEY_SSM_PARAMETER", "").strip()
GITHUB_APP_KEY_TTL_SECONDS = float(
    os.environ.get("GITHUB_APP_KEY_TTL_SECONDS", str(DEFAULT_KEY_TTL_SECONDS))
)
GITHUB_TOKEN_REFRESH_BUFFER_SECONDS = float(
    os.environ.get("GITHUB_TOKEN_REFRESH_BUFFER_SECONDS", str(DEFAULT_TOKEN_REFRESH_BUFFER_SECONDS))
)

LEGACY_PROMPT = os.environ.get("PROMPT", "").strip()
ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")

GITHUB_TOKEN_ENV = "GITHUB_TOKEN"

# Outcome states reported per message / per worker
STATE_SKIPPED = "skipped"
STATE_NO_MATCH = "no_match"
STATE_DISPATCHED = "dispatched"
WORKER_SUCCESS = "success"
WORKER_DISPATCH_FAILED = "dispatch_failed"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)

# ---------------------------------------------------------------------------
# Per-context state (survives warm invocations, lost on cold start)
# ---------------------------------------------------------------------------

_credentials: Optional[GitHubAppCredentials] = None
_manifest_cache = DecodedManifestCache()

_webhook_secret_cache: Optional[str] = None
_webhook_secret_fetched_at: float = 0.0
_WEBHOOK_SECRET_TTL: float = 3600.0


def _get_credentials() -> GitHubAppCredentials:
    global _credentials
    if _credentials is None:
        _credentials = GitHubAppCredentials(
            app_id=GITHUB_APP_ID,
            private_key_parameter=GITHUB_APP_PRIVATE_KEY_SSM_PARAMETER,
            key_ttl_seconds=GITHUB_APP_KEY_TTL_SECONDS,
            token_refresh_buffer_seconds=GITHUB_TOKEN_REFRESH_BUFFER_SECONDS,
        )
    return _credentials


def _get_webhook_secret() -> str:
    """Webhook HMAC secret from env, or from SSM (cached)."""
    global _webhook_secret_cache, _webhook_secret_fetched_at
    if WEBHOOK_SECRET:
        return WEBHOOK_SECRET
    if not WEBHOOK_SECRET_SSM_PARAMETER:
        raise ValueError("WEBHOOK_SECRET or WEBHOOK_SECRET_SSM_PARAMETER must be set")
    now = time.time()
    if _webhook_secret_cache and (now - _webhook_secret_fetched_at) < _WEBHOOK_SECRET_TTL:
        return _webhook_secret_cache
    _webhook_secret_cache = read_secure_parameter(WEBHOOK_SECRET_SSM_PARAMETER)
    _webhook_secret_fetched_at = now
    return _webhook_secret_cache


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def _parse_payload(raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidPayload("invalid JSON for github payload", "body") from exc
    if not isinstance(payload, dict):
        raise InvalidPayload("github payload must be an object", "body")
    return payload


def _section(payload: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, dict) else {}


def _str_field(container: Dict[str, Any], key: str) -> Optional[str]:
    value = container.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return None
    return value


def _read_installation_id(payload: Dict[str, Any]) -> int:
    installation_id = _positive_int(_section(payload, "installation").get("id"))
    if installation_id is None:
        raise InvalidPayload("missing installation.id in github payload", "installation.id")
    return installation_id


def _resolve_repository_url(payload: Dict[str, Any]) -> Optional[str]:
    repository = _section(payload, "repository")
    clone_url = _str_field(repository, "clone_url")
    if clone_url:
        return clone_url
    full_name = _str_field(repository, "full_name")
    if not full_name:
        return None
    return f"https://github.com/{full_name}.git"


def _resolve_legacy_prompt(payload: Dict[str, Any]) -> Optional[str]:
    return (
        _str_field(payload, "prompt")
        or _str_field(_section(payload, "client_payload"), "prompt")
        or _str_field(_section(payload, "inputs"), "prompt")
        or LEGACY_PROMPT
        or None
    )


def _route_context(meta: WebhookMeta, payload: Dict[str, Any]) -> RouteContext:
    pull_request = _section(payload, "pull_request")
    draft = pull_request.get("draft")
    return RouteContext(
        provider="github",
        event=meta.event,
        action=_str_field(payload, "action"),
        repository=_str_field(_section(payload, "repository"), "full_name"),
        base_branch=_str_field(_section(pull_request, "base"), "ref"),
        head_branch=_str_field(_section(pull_request, "head"), "ref"),
        draft=draft if isinstance(draft, bool) else None,
    )


# ---------------------------------------------------------------------------
# Task environment
# ---------------------------------------------------------------------------


def _base_environment(payload: Dict[str, Any], meta: WebhookMeta) -> "OrderedDict[str, str]":
    repository_url = _resolve_repository_url(payload)
    if not repository_url:
        raise InvalidPayload("missing repository clone url", "repository")

    env: "OrderedDict[str, str]" = OrderedDict()
    env["GITHUB_EVENT"] = meta.event
    env["GITHUB_DELIVERY"] = meta.delivery_id
    env["GITHUB_REPO"] = _str_field(_section(payload, "repository"), "full_name") or "unknown"
    env["GITHUB_ACTION"] = _str_field(payload, "action") or "none"
    env["REPOSITORY_URL"] = repository_url

    issue = _section(payload, "issue")
    issue_number = _positive_int(issue.get("number"))
    if issue_number is not None:
        env["GITHUB_ISSUE_NUMBER"] = str(issue_number)
    pr_number = _positive_int(_section(payload, "pull_request").get("number"))
    if pr_number is None and issue.get("pull_request") and issue_number is not None:
        pr_number = issue_number  # issue_comment on a pull request
    if pr_number is not None:
        env["GITHUB_PR_NUMBER"] = str(pr_number)
    comment_id = _positive_int(_section(payload, "comment").get("id"))
    if comment_id is not None:
        env["GITHUB_COMMENT_ID"] = str(comment_id)
    return env


def _format_minutes(value: float) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else repr(value)


def build_task_environment(
    payload: Dict[str, Any],
    meta: WebhookMeta,
    worker: Optional[WorkerDefinition],
    github_token: str,
) -> List[Dict[str, str]]:
    """ECS container environment for one task.

    With ``worker=None`` the legacy single-prompt environment is built. Worker
    ``env`` entries cannot replace the fixed GitHub fields or the token, and
    the token is always the final entry.
    """
    env = _base_environment(payload, meta)
    reserved = set(env) | {GITHUB_TOKEN_ENV}

    if worker is None:
        prompt = _resolve_legacy_prompt(payload)
        if not prompt:
            raise InvalidPayload("missing prompt", "prompt")
        env["PROMPT"] = prompt
    else:
        runtime = worker.runtime
        env["PROMPT"] = runtime.prompt
        env["SKIPPER_WORKER_ID"] = worker.metadata.id
        env["SKIPPER_WORKER_TYPE"] = worker.metadata.type
        env["SKIPPER_WORKER_MODE"] = runtime.effective_mode
        env["SKIPPER_ALLOW_PUSH"] = "1" if runtime.allow_push else "0"
        if runtime.max_duration_minutes is not None:
            env["SKIPPER_MAX_DURATION_MINUTES"] = _format_minutes(runtime.max_duration_minutes)
        if runtime.agent:
            env["ECS_AGENT"] = runtime.agent
        for key, value in (runtime.env or {}).items():
            if key in reserved:
                logger.warning("Worker %s env %s ignored: reserved name", worker.id, key)
                continue
            env[key] = value

    if ANTHROPIC_API_KEY and "ANTHROPIC_API_KEY" not in env:
        env["ANTHROPIC_API_KEY"] = ANTHROPIC_API_KEY
    env.pop(GITHUB_TOKEN_ENV, None)
    env[GITHUB_TOKEN_ENV] = github_token
    return [{"name": name, "value": value} for name, value in env.items()]


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


def _load_workers_manifest() -> Optional[WorkerManifest]:
    """Manifest stored in the workers stack parameters, cached by checksum."""
    if not WORKERS_STACK_NAME or not WORKERS_SHA256:
        return None
    if WORKERS_SHA256 in _manifest_cache:
        return _manifest_cache.get(WORKERS_SHA256)

    stack = describe_stack(_get_cloudformation(), WORKERS_STACK_NAME)
    if stack is None:
        raise ValueError(f"stack not found: {WORKERS_STACK_NAME}")
    values = stack_parameter_values(stack.get("Parameters") or [])
    stored_sha = (values.get(WORKERS_SHA256_PARAM) or "").strip()
    if stored_sha != WORKERS_SHA256:
        raise IntegrityError(
            "worker manifest hash mismatch between lambda env and stack params",
            expected=WORKERS_SHA256,
            actual=stored_sha,
        )
    manifest = decode_manifest(values)
    _manifest_cache.put(WORKERS_SHA256, manifest)
    logger.info(
        "Loaded worker manifest sha256=%s workers=%d",
        WORKERS_SHA256, len(manifest.workers) if manifest else 0,
    )
    return manifest


# ---------------------------------------------------------------------------
# Task launch
# ---------------------------------------------------------------------------


def dispatch_task(environment: List[Dict[str, str]], worker_id: str = "") -> str:
    """Launch one Fargate task; returns the task ARN.

    Raises DispatchError when ECS reports failures or launches nothing.
    """
    if not ECS_CLUSTER_ARN or not ECS_TASK_DEFINITION_ARN:
        raise ValueError("ECS_CLUSTER_ARN and ECS_TASK_DEFINITION_ARN must be set")
    if not ECS_SUBNET_IDS or not ECS_SECURITY_GROUP_ID:
        raise ValueError("ECS_SUBNET_IDS and ECS_SECURITY_GROUP_ID must be set")

    try:
        resp = _get_ecs().run_task(
            cluster=ECS_CLUSTER_ARN,
            taskDefinition=ECS_TASK_DEFINITION_ARN,
            launchType="FARGATE",
            networkConfiguration={
                "awsvpcConfiguration": {
                    "subnets": ECS_SUBNET_IDS,
                    "securityGroups": [ECS_SECURITY_GROUP_ID],
                    "assignPublicIp": ECS_ASSIGN_PUBLIC_IP,
                }
            },
            overrides={
                "containerOverrides": [{"name": ECS_CONTAINER_NAME, "environment": environment}]
            },
        )
    except (BotoCoreError, ClientError) as exc:
        raise DispatchError(f"ecs runTask failed: {exc}", worker_id=worker_id) from exc

    failures = resp.get("failures") or []
    if failures:
        details = ", ".join(
            f"{f.get('reason') or 'unknown'}:{f.get('detail') or ''}" for f in failures
        )
        raise DispatchError(f"ecs runTask failed {details}", worker_id=worker_id)
    tasks = resp.get("tasks") or []
    if not tasks:
        raise DispatchError("ecs runTask created no tasks", worker_id=worker_id)
    return str(tasks[0].get("taskArn") or "")


# ---------------------------------------------------------------------------
# Message processing
# ---------------------------------------------------------------------------


def process_message(body: str) -> Dict[str, Any]:
    """Run one queue message through the dispatch state machine."""
    envelope = parse_envelope(body)
    meta = require_headers(envelope.headers)
    if meta is None:
        logger.info("Skipping message without GitHub signature/event/delivery headers")
        return {"state": STATE_SKIPPED}

    raw_body = envelope.raw_body()
    verify_signature(raw_body, meta.signature, _get_webhook_secret())
    payload = _parse_payload(raw_body)
    action = _str_field(payload, "action") or "none"
    logger.info(
        "Webhook verified: event=%s action=%s delivery=%s", meta.event, action, meta.delivery_id
    )

    manifest = _load_workers_manifest()
    if manifest is None:
        targets: List[Optional[WorkerDefinition]] = [None]
    else:
        targets = list(route_workers(manifest, _route_context(meta, payload)))
        if not targets:
            logger.info(
                "No worker matched event=%s action=%s delivery=%s",
                meta.event, action, meta.delivery_id,
            )
            return {"state": STATE_NO_MATCH, "delivery_id": meta.delivery_id, "workers": []}

    installation_id = _read_installation_id(payload)
    results = []
    for worker in targets:
        worker_id = worker.id if worker else "legacy"
        token = _get_credentials().mint_installation_token(installation_id)
        environment = build_task_environment(payload, meta, worker, token)
        try:
            task_arn = dispatch_task(environment, worker_id=worker_id)
        except DispatchError as exc:
            logger.error(
                "Dispatch failed for worker %s delivery=%s: %s", worker_id, meta.delivery_id, exc
            )
            results.append({"worker_id": worker_id, "state": WORKER_DISPATCH_FAILED, "error": str(exc)})
            continue
        logger.info("Dispatched worker %s delivery=%s task=%s", worker_id, meta.delivery_id, task_arn)
        results.append({"worker_id": worker_id, "state": WORKER_SUCCESS, "task_arn": task_arn})

    return {"state": STATE_DISPATCHED, "delivery_id": meta.delivery_id, "workers": results}


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict, context: Any) -> Dict:
    records = (event or {}).get("Records") or []
    outcomes = [process_message(record.get("body") or "") for record in records]
    failed = sum(
        1
        for outcome in outcomes
        for worker in outcome.get("workers") or []
        if worker.get("state") == WORKER_DISPATCH_FAILED
    )
    return {"records": len(records), "outcomes": outcomes, "failed_dispatches": failed}
