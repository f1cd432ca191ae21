"""webhook_dispatch/eventbridge_handler.py — EventBridge ingress adapter.

Deliveries relayed through EventBridge carry the ingress envelope in the
event ``detail`` instead of an SQS message body:

    {"detail-type": "github.webhook", "detail": {"rawBodyB64": "...", "headers": {...}}}

The adapter rewraps ``detail`` as a single-record SQS event and hands it to
the dispatch handler in ``lambda_function.py`` so both ingress paths share one
state machine.
"""

from __future__ import annotations

import importlib.util
import json
import logging
import os
from typing import Any, Dict

from skipper_shared.errors import InvalidEnvelope

logger = logging.getLogger()
logger.setLevel(logging.INFO)

_DISPATCH_MODULE_NAME = "skipper_webhook_dispatch"
_dispatch_module = None


def _get_dispatch_module():
    """Load the sibling dispatch module once per execution context."""
    global _dispatch_module
    if _dispatch_module is None:
        path = os.path.join(os.path.dirname(os.path.abspath(__file__)), "lambda_function.py")
        spec = importlib.util.spec_from_file_location(_DISPATCH_MODULE_NAME, path)
        if spec is None or spec.loader is None:
            raise ImportError(f"cannot load dispatch module from {path}")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        _dispatch_module = module
    return _dispatch_module


def to_sqs_event(event: Dict[str, Any]) -> Dict[str, Any]:
    """Single-record SQS event whose body is the envelope held in ``detail``.

    Raises InvalidEnvelope when ``detail`` is not an envelope.
    """
    detail = (event or {}).get("detail")
    if not isinstance(detail, dict):
        raise InvalidEnvelope("eventbridge event has no detail object", "detail")

    raw_body_b64 = detail.get("rawBodyB64")
    if raw_body_b64 is not None and not isinstance(raw_body_b64, str):
        raise InvalidEnvelope("detail.rawBodyB64 must be a string", "detail.rawBodyB64")
    headers = detail.get("headers") or {}
    if not isinstance(headers, dict) or not all(
        isinstance(value, str) for value in headers.values()
    ):
        raise InvalidEnvelope("detail.headers must map names to strings", "detail.headers")

    envelope = {"rawBodyB64": raw_body_b64, "headers": headers}
    return {"Records": [{"body": json.dumps(envelope)}]}


def lambda_handler(event: Dict, context: Any) -> Dict:
    logger.info(
        "EventBridge delivery id=%s detail-type=%s",
        (event or {}).get("id", ""), (event or {}).get("detail-type", ""),
    )
    return _get_dispatch_module().lambda_handler(to_sqs_event(event), context)
