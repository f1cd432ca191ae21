"""skipper_shared.webhook — Webhook envelope parsing and signature checks.

The ingress (API Gateway → SQS / EventBridge) wraps each GitHub delivery in an
envelope carrying the untouched request body (base64) and its headers:

    {"rawBodyB64": "<base64>", "headers": {"X-GitHub-Event": "issues", ...}}

Messages produced by the older ingress integration arrive instead as a
stringified map, which is still accepted:

    {rawBodyB64=<base64>, headers={X-GitHub-Event=issues, X-GitHub-Delivery=...}}
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from skipper_shared.errors import InvalidEnvelope, InvalidSignature

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-hub-signature-256"
EVENT_HEADER = "x-github-event"
DELIVERY_HEADER = "x-github-delivery"
SIGNATURE_PREFIX = "sha256="

_LEGACY_PREFIX = "{rawBodyB64="
_LEGACY_HEADER_MARKER = ", headers={"
_LEGACY_SUFFIX = "}}"


@dataclass(frozen=True)
class WebhookEnvelope:
    raw_body_b64: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def raw_body(self) -> bytes:
        """Decoded delivery body; an absent body decodes to empty bytes."""
        try:
            return base64.b64decode(self.raw_body_b64 or "", validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidEnvelope("rawBodyB64 is not valid base64", "rawBodyB64") from exc


@dataclass(frozen=True)
class WebhookMeta:
    signature: str
    event: str
    delivery_id: str


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


def parse_envelope(raw: str) -> WebhookEnvelope:
    """Parse a queue message body into an envelope.

    Tries the canonical JSON shape first, then the legacy stringified map.
    Raises InvalidEnvelope when neither matches.
    """
    envelope = _parse_json_envelope(raw)
    if envelope is not None:
        return envelope
    envelope = _parse_legacy_envelope(raw)
    if envelope is not None:
        logger.info("Parsed legacy webhook envelope")
        return envelope
    raise InvalidEnvelope("invalid queue envelope", "body")


def _parse_json_envelope(raw: str) -> Optional[WebhookEnvelope]:
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(parsed, dict):
        return None
    raw_body_b64 = parsed.get("rawBodyB64")
    if raw_body_b64 is not None and not isinstance(raw_body_b64, str):
        return None
    headers = parsed.get("headers")
    if headers is None:
        headers = {}
    if not _is_header_map(headers):
        return None
    return WebhookEnvelope(raw_body_b64=raw_body_b64 or None, headers=_clean_headers(headers))


def _parse_legacy_envelope(raw: str) -> Optional[WebhookEnvelope]:
    """Scan ``{rawBodyB64=..., headers={k=v, k=v}}``.

    Header values must not contain ", " (the pair separator); GitHub's
    delivery, event and signature headers never do.
    """
    if not isinstance(raw, str):
        return None
    if not raw.startswith(_LEGACY_PREFIX) or not raw.endswith(_LEGACY_SUFFIX):
        return None
    marker = raw.find(_LEGACY_HEADER_MARKER)
    if marker == -1:
        return None

    raw_body_b64 = raw[len(_LEGACY_PREFIX):marker].strip()
    header_text = raw[marker + len(_LEGACY_HEADER_MARKER):len(raw) - len(_LEGACY_SUFFIX)]
    headers: Dict[str, str] = {}
    for part in header_text.split(", "):
        key, sep, value = part.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        headers[key] = value.strip()
    return WebhookEnvelope(raw_body_b64=raw_body_b64 or None, headers=_clean_headers(headers))


def _is_header_map(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    return all(v is None or isinstance(v, str) for v in value.values())


def _clean_headers(headers: Mapping[str, Optional[str]]) -> Dict[str, str]:
    return {str(k): v for k, v in headers.items() if v is not None}


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------


def normalize_headers(headers: Mapping[str, Optional[str]]) -> Dict[str, str]:
    """Lower-case header names; drop empty values."""
    return {
        str(key).lower(): value
        for key, value in (headers or {}).items()
        if isinstance(value, str)
    }


def require_headers(headers: Mapping[str, Optional[str]]) -> Optional[WebhookMeta]:
    """Signature, event and delivery id, or None when any is missing.

    A missing header means "skip this message" (e.g. pings relayed without a
    signature), not an error.
    """
    normalized = normalize_headers(headers)
    signature = (normalized.get(SIGNATURE_HEADER) or "").strip()
    event = (normalized.get(EVENT_HEADER) or "").strip()
    delivery_id = (normalized.get(DELIVERY_HEADER) or "").strip()
    if not signature or not event or not delivery_id:
        return None
    return WebhookMeta(signature=signature, event=event, delivery_id=delivery_id)


# ---------------------------------------------------------------------------
# Signature
# ---------------------------------------------------------------------------


def compute_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(raw_body: bytes, signature: str, secret: str) -> None:
    """Verify GitHub webhook HMAC-SHA256 signature.

    Raises InvalidSignature on any mismatch, malformed header or empty secret.
    """
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    if not secret:
        raise InvalidSignature("webhook secret not configured")
    signature = (signature or "").strip()
    if not signature.startswith(SIGNATURE_PREFIX):
        raise InvalidSignature("signature header must start with sha256=")
    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8", "replace")):
        raise InvalidSignature("invalid webhook signature")
