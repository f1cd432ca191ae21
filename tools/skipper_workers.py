#!/usr/bin/env python3
"""Operator CLI for Skipper worker manifests and the workers stack.

Subcommands:
    validate      load .skipper/worker/*.json and print ids + subscribed events
    sync          encode the workers and push them onto an existing stack's
                  parameters (other parameters keep their previous values)
    deploy        create or update the stack from a template file
    installation  resolve the GitHub App installation id for owner/name

Stack names default to ``{service}-{env}`` where service comes from
SKIPPER_AWS_SERVICE (or the current directory name) and env from
SKIPPER_AWS_ENV / AWS_PROFILE (default: sandbox). Region defaults to
AWS_REGION / AWS_DEFAULT_REGION / us-east-1.
"""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from skipper_shared.errors import InvalidInput, SkipperError, StackDeployError
from skipper_shared.github_app import build_app_jwt, fetch_repository_installation_id
from skipper_shared.manifest_codec import encode_manifest
from skipper_shared.stack_deploy import (
    deploy_stack,
    describe_stack,
    merge_worker_parameters,
)
from skipper_shared.worker_contract import WorkerManifest, load_workers
from skipper_shared.worker_route import collect_github_events, collect_subscriptions

DEFAULT_SERVICE = "skipper"
DEFAULT_ENV = "sandbox"
DEFAULT_REGION = "us-east-1"
DEFAULT_TIMEOUT_MINUTES = 30

_RE_SIMPLE_NAME = re.compile(r"^[a-zA-Z0-9-]+$")


def _log(tag: str, message: str) -> None:
    print(f"[{tag}] {message}")


# ---------------------------------------------------------------------------
# Defaults and argument parsing helpers
# ---------------------------------------------------------------------------


def _to_simple_name(value: str) -> str:
    value = re.sub(r"[^a-zA-Z0-9-]+", "-", (value or "").strip())
    value = re.sub(r"--+", "-", value)
    return value.strip("-")


def is_simple_name(value: str) -> bool:
    return bool(_RE_SIMPLE_NAME.match(value or ""))


def resolve_deploy_defaults(
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Default service / env / region from the environment and cwd."""
    env = os.environ if env is None else env
    cwd = os.getcwd() if cwd is None else cwd
    service = (
        _to_simple_name(env.get("SKIPPER_AWS_SERVICE", ""))
        or _to_simple_name(Path(cwd).name)
        or DEFAULT_SERVICE
    )
    deploy_env = (
        _to_simple_name(env.get("SKIPPER_AWS_ENV", ""))
        or _to_simple_name(env.get("AWS_PROFILE", ""))
        or DEFAULT_ENV
    )
    region = env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION") or DEFAULT_REGION
    return {"service": service, "env": deploy_env, "region": region}


def parse_tags(value: Optional[str]) -> Optional[Dict[str, str]]:
    """``k=v,k2=v2`` → dict; None when nothing is given."""
    if not value:
        return None
    entries = [part.strip() for part in value.split(",") if part.strip()]
    if not entries:
        return None
    tags: Dict[str, str] = {}
    for entry in entries:
        key, _, rest = entry.partition("=")
        key, rest = key.strip(), rest.strip()
        if not key or not rest:
            raise InvalidInput(f"invalid tag: {entry}", "tags")
        tags[key] = rest
    return tags


def parse_parameters(values: Optional[Sequence[str]]) -> Dict[str, str]:
    """Repeated ``Key=Value`` options → dict (values may be empty)."""
    params: Dict[str, str] = {}
    for entry in values or []:
        key, sep, value = entry.partition("=")
        key = key.strip()
        if not sep or not key:
            raise InvalidInput(f"invalid parameter: {entry}", "parameter")
        params[key] = value
    return params


def resolve_stack_target(
    service: Optional[str],
    env: Optional[str],
    stack_name: Optional[str],
    region: Optional[str],
) -> Dict[str, str]:
    defaults = resolve_deploy_defaults()
    service = service or defaults["service"]
    env = env or defaults["env"]
    if not is_simple_name(service):
        raise InvalidInput("service must match [a-zA-Z0-9-]+", "service")
    if not is_simple_name(env):
        raise InvalidInput("env must match [a-zA-Z0-9-]+", "env")
    return {
        "stack_name": stack_name or f"{service}-{env}",
        "region": region or defaults["region"],
    }


def _cloudformation(region: str) -> Any:
    cfg = Config(retries={"max_attempts": 5, "mode": "standard"})
    return boto3.client("cloudformation", region_name=region, config=cfg)


def _load_manifest(root_dir: str, strict: bool) -> WorkerManifest:
    workers = load_workers(root_dir)
    if strict and not workers:
        raise InvalidInput("no workers found in .skipper/worker/*.json", "dir")
    return WorkerManifest(workers=tuple(workers))


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def cmd_validate(args: argparse.Namespace) -> int:
    manifest = _load_manifest(args.dir, args.strict)
    for subscription in collect_subscriptions(manifest):
        _log("worker", f"{subscription.worker_id}: {', '.join(subscription.events) or '-'}")
    disabled = [worker.id for worker in manifest.workers if not worker.enabled]
    if disabled:
        _log("validate", f"Disabled: {', '.join(sorted(disabled))}")
    events = collect_github_events(manifest.workers)
    _log("validate", f"{len(manifest.workers)} worker(s) valid; events: {','.join(events) or '-'}")
    return 0


def cmd_sync(args: argparse.Namespace, cfn: Any = None) -> int:
    target = resolve_stack_target(args.service, args.env, args.stack_name, args.region)
    manifest = _load_manifest(args.dir, args.strict)
    encoded = encode_manifest(manifest)

    if args.dry_run:
        payload = {
            "stackName": target["stack_name"],
            "region": target["region"],
            "workerCount": encoded.worker_count,
            "workerIds": [worker.id for worker in manifest.workers],
            "serializedJsonBytes": encoded.byte_length,
            "workerParameterKeys": sorted(encoded.values),
        }
        _log("DRY-RUN", json.dumps(payload, indent=2))
        return 0

    cfn = cfn or _cloudformation(target["region"])
    stack = describe_stack(cfn, target["stack_name"])
    if stack is None:
        raise StackDeployError(f"stack not found: {target['stack_name']}", stack_name=target["stack_name"])
    parameters = merge_worker_parameters(stack.get("Parameters") or [], encoded.values)
    template_body = Path(args.template_file).read_text(encoding="utf-8") if args.template_file else None

    result = deploy_stack(
        cfn,
        target["stack_name"],
        template_body,
        parameters,
        timeout_seconds=args.timeout_minutes * 60,
    )
    if result.action == "noop":
        _log("sync", "No updates are to be performed")
    _log("sync", f"Workers synced to stack {result.stack_name} ({result.status})")
    _log("sync", f"WorkersSha256={encoded.sha256 or '-'}")
    return 0


def cmd_deploy(args: argparse.Namespace, cfn: Any = None) -> int:
    target = resolve_stack_target(args.service, args.env, args.stack_name, args.region)
    template_body = Path(args.template_file).read_text(encoding="utf-8")
    parameters: Dict[str, Optional[str]] = dict(parse_parameters(args.parameter))
    if args.workers_dir:
        encoded = encode_manifest(_load_manifest(args.workers_dir, strict=False))
        parameters.update(encoded.values)
    tags = parse_tags(args.tags)

    cfn = cfn or _cloudformation(target["region"])
    result = deploy_stack(
        cfn,
        target["stack_name"],
        template_body,
        parameters,
        timeout_seconds=args.timeout_minutes * 60,
        tags=tags,
    )
    _log("deploy", f"Stack {result.stack_name}: {result.action} -> {result.status}")
    for output in result.outputs:
        _log("output", f"{output.get('OutputKey')}={output.get('OutputValue')}")
    return 0


def cmd_installation(args: argparse.Namespace) -> int:
    private_key = Path(args.private_key_file).read_text(encoding="utf-8")
    app_jwt = build_app_jwt(args.app_id, private_key)
    installation_id = fetch_repository_installation_id(args.repo, app_jwt)
    _log("installation", f"{args.repo}: {installation_id}")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _positive_int(value: str) -> int:
    try:
        parsed = int(value, 10)
    except ValueError:
        parsed = 0
    if parsed <= 0:
        raise argparse.ArgumentTypeError("timeout must be positive integer")
    return parsed


def _add_stack_target_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("service", nargs="?", default=None, help="Service name (default: cwd)")
    parser.add_argument("env", nargs="?", default=None, help="Environment (default: AWS_PROFILE or sandbox)")
    parser.add_argument("--stack-name", default=None)
    parser.add_argument("--region", default=None)
    parser.add_argument(
        "--timeout-minutes", type=_positive_int, default=DEFAULT_TIMEOUT_MINUTES
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Validate, sync and deploy Skipper worker definitions.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate", help="Validate repository worker definitions")
    validate.add_argument("--dir", default=".", help="Repository root directory")
    validate.add_argument("--strict", action="store_true", help="Fail when no workers are found")

    sync = sub.add_parser("sync", help="Sync worker definitions into the stack parameters")
    _add_stack_target_args(sync)
    sync.add_argument("--dir", default=".", help="Repository root directory")
    sync.add_argument("--template-file", default=None, help="Template to apply (default: reuse deployed)")
    sync.add_argument("--dry-run", action="store_true")
    sync.add_argument("--strict", action="store_true")

    deploy = sub.add_parser("deploy", help="Create or update the stack")
    _add_stack_target_args(deploy)
    deploy.add_argument("--template-file", required=True)
    deploy.add_argument("--parameter", action="append", default=[], help="Key=Value, repeatable")
    deploy.add_argument("--tags", default="", help="key=value CSV")
    deploy.add_argument("--workers-dir", default=None, help="Encode workers from this repository")

    installation = sub.add_parser("installation", help="Resolve an App installation id")
    installation.add_argument("--repo", required=True, help="owner/name")
    installation.add_argument("--app-id", default=os.environ.get("GITHUB_APP_ID", ""))
    installation.add_argument("--private-key-file", required=True)
    return parser


_COMMANDS = {
    "validate": cmd_validate,
    "sync": cmd_sync,
    "deploy": cmd_deploy,
    "installation": cmd_installation,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return _COMMANDS[args.command](args)
    except StackDeployError as exc:
        _log("ERROR", str(exc))
        for line in exc.summary:
            _log("ERROR", f"  {line}")
        return 1
    except SkipperError as exc:
        _log("ERROR", str(exc))
        return 1
    except (ClientError, BotoCoreError, OSError) as exc:
        _log("ERROR", str(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
