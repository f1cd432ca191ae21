"""skipper_shared.manifest_codec — Worker manifest transport encoding.

The manifest is serialized to canonical JSON, checksummed (sha256 of the
canonical bytes), gzip-compressed, base64-encoded and split across a fixed
number of bounded parameter slots. Decoding reverses every step and refuses
anything that does not reproduce the stored checksum: a stack update that was
only partially applied (some chunks old, some new) must never be accepted.

An empty manifest encodes to the "no manifest" sentinel (zero chunks, empty
checksum) which decodes to ``None``, the same as a pre-manifest deployment.
"""

from __future__ import annotations

import base64
import binascii
import gzip
import hashlib
import json
import logging
import zlib
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from skipper_shared.errors import IntegrityError, SizeLimitError
from skipper_shared.worker_contract import WorkerManifest, manifest_to_dict, parse_worker_manifest
from skipper_shared.worker_params import (
    WORKER_CHUNK_COUNT,
    WORKER_CHUNK_SIZE,
    WORKER_SCHEMA_VERSION,
    WORKERS_CHUNK_COUNT_PARAM,
    WORKERS_ENCODING,
    WORKERS_ENCODING_PARAM,
    WORKERS_SCHEMA_VERSION_PARAM,
    WORKERS_SHA256_PARAM,
    default_worker_parameter_values,
    worker_chunk_keys,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncodedManifest:
    values: Dict[str, str]
    byte_length: int
    worker_count: int

    @property
    def sha256(self) -> str:
        return self.values.get(WORKERS_SHA256_PARAM, "")

    @property
    def chunk_count(self) -> int:
        return int(self.values.get(WORKERS_CHUNK_COUNT_PARAM) or 0)


# ---------------------------------------------------------------------------
# Encode
# ---------------------------------------------------------------------------


def canonical_manifest_bytes(manifest: WorkerManifest) -> bytes:
    """Stable JSON bytes for a manifest: sorted keys, no whitespace."""
    return json.dumps(
        manifest_to_dict(manifest),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def encode_manifest(
    manifest: WorkerManifest,
    chunk_size: int = WORKER_CHUNK_SIZE,
    max_chunks: int = WORKER_CHUNK_COUNT,
) -> EncodedManifest:
    """Encode a manifest into transport parameter values.

    Raises SizeLimitError when the payload needs more than ``max_chunks``.
    """
    if not manifest.workers:
        return EncodedManifest(
            values=default_worker_parameter_values(max_chunks),
            byte_length=0,
            worker_count=0,
        )

    raw = canonical_manifest_bytes(manifest)
    # mtime=0 keeps the compressed bytes reproducible for identical input
    compressed = gzip.compress(raw, mtime=0)
    encoded = base64.b64encode(compressed).decode("ascii")
    chunks = _split(encoded, chunk_size)
    if len(chunks) > max_chunks:
        raise SizeLimitError(len(chunks), max_chunks)

    values = default_worker_parameter_values(max_chunks)
    values[WORKERS_ENCODING_PARAM] = WORKERS_ENCODING
    values[WORKERS_SCHEMA_VERSION_PARAM] = WORKER_SCHEMA_VERSION
    values[WORKERS_SHA256_PARAM] = hashlib.sha256(raw).hexdigest()
    values[WORKERS_CHUNK_COUNT_PARAM] = str(len(chunks))
    for key, chunk in zip(worker_chunk_keys(max_chunks), chunks):
        values[key] = chunk

    logger.info(
        "Encoded %d worker(s): %d bytes -> %d chunk(s)",
        len(manifest.workers), len(raw), len(chunks),
    )
    return EncodedManifest(values=values, byte_length=len(raw), worker_count=len(manifest.workers))


def _split(value: str, size: int) -> List[str]:
    return [value[offset:offset + size] for offset in range(0, len(value), size)]


# ---------------------------------------------------------------------------
# Decode
# ---------------------------------------------------------------------------


def decode_manifest(
    values: Mapping[str, Optional[str]],
    max_chunks: int = WORKER_CHUNK_COUNT,
) -> Optional[WorkerManifest]:
    """Decode transport parameter values back into a manifest.

    Returns None when no manifest is present. Raises IntegrityError on any
    encoding, schema, chunk or checksum mismatch, and ValidationError when a
    worker entry no longer passes the contract.
    """
    chunk_count = _read_chunk_count(values.get(WORKERS_CHUNK_COUNT_PARAM), max_chunks)
    stored_sha = (values.get(WORKERS_SHA256_PARAM) or "").strip()
    if chunk_count == 0 or not stored_sha:
        return None

    encoding = (values.get(WORKERS_ENCODING_PARAM) or "").strip()
    if encoding != WORKERS_ENCODING:
        raise IntegrityError(
            f"unsupported workers encoding: {encoding}",
            expected=WORKERS_ENCODING,
            actual=encoding,
        )
    schema_version = (values.get(WORKERS_SCHEMA_VERSION_PARAM) or "").strip()
    if schema_version != WORKER_SCHEMA_VERSION:
        raise IntegrityError(
            f"unsupported workers schema version: {schema_version}",
            expected=WORKER_SCHEMA_VERSION,
            actual=schema_version,
        )

    chunks = []
    for index, key in enumerate(worker_chunk_keys(chunk_count)):
        chunk = (values.get(key) or "").strip()
        if not chunk:
            raise IntegrityError(f"worker chunk {index} missing ({key})")
        chunks.append(chunk)

    try:
        compressed = base64.b64decode("".join(chunks), validate=True)
        raw = gzip.decompress(compressed)
    except (binascii.Error, OSError, EOFError, zlib.error) as exc:
        raise IntegrityError(f"worker manifest payload unreadable: {exc}") from exc

    actual_sha = hashlib.sha256(raw).hexdigest()
    if actual_sha != stored_sha:
        raise IntegrityError(
            f"worker manifest checksum mismatch: computed {actual_sha}, stored {stored_sha}",
            expected=stored_sha,
            actual=actual_sha,
        )

    try:
        document = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise IntegrityError(f"worker manifest is not valid JSON: {exc}") from exc
    return parse_worker_manifest(document, "manifest")


def _read_chunk_count(value: Optional[str], max_chunks: int) -> int:
    text = (value or "").strip()
    if not text:
        return 0
    try:
        count = int(text, 10)
    except ValueError:
        raise IntegrityError(f"invalid worker chunk count: {text}") from None
    if count < 0 or count > max_chunks:
        raise IntegrityError(f"invalid worker chunk count: {count} (max {max_chunks})")
    return count


# ---------------------------------------------------------------------------
# Per-context cache
# ---------------------------------------------------------------------------


class DecodedManifestCache:
    """Decoded manifests keyed by checksum, kept for the execution context.

    Entries are never invalidated: a checksum names exactly one manifest.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Optional[WorkerManifest]] = {}

    def get(self, sha256: str) -> Optional[WorkerManifest]:
        return self._entries.get(sha256)

    def __contains__(self, sha256: str) -> bool:
        return sha256 in self._entries

    def put(self, sha256: str, manifest: Optional[WorkerManifest]) -> None:
        self._entries[sha256] = manifest

    def clear(self) -> None:
        self._entries.clear()


__all__ = [
    "DecodedManifestCache",
    "EncodedManifest",
    "canonical_manifest_bytes",
    "decode_manifest",
    "encode_manifest",
]
