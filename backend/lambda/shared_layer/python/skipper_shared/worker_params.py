"""skipper_shared.worker_params — Manifest transport keys and limits.

The encoded worker manifest travels as CloudFormation stack parameters, so
values are bounded by the per-parameter size limit and the number of
parameter slots reserved for chunks.
"""

from __future__ import annotations

from typing import Dict, List

WORKER_SCHEMA_VERSION = "1"
WORKER_CHUNK_COUNT = 12
WORKER_CHUNK_SIZE = 3500

WORKERS_ENCODING = "gzip-base64-v1"

WORKERS_ENCODING_PARAM = "WorkersEncoding"
WORKERS_SHA256_PARAM = "WorkersSha256"
WORKERS_SCHEMA_VERSION_PARAM = "WorkersSchemaVersion"
WORKERS_CHUNK_COUNT_PARAM = "WorkersChunkCount"
WORKERS_CHUNK_PARAM_PREFIX = "WorkersChunk"


def worker_chunk_key(index: int) -> str:
    """Chunk parameter key for ``index`` (``WorkersChunk00`` ...)."""
    return f"{WORKERS_CHUNK_PARAM_PREFIX}{index:02d}"


def worker_chunk_keys(count: int = WORKER_CHUNK_COUNT) -> List[str]:
    return [worker_chunk_key(index) for index in range(count)]


def default_worker_parameter_values(count: int = WORKER_CHUNK_COUNT) -> Dict[str, str]:
    """Empty encoding: no checksum, zero chunks, every chunk slot blank."""
    values: Dict[str, str] = {
        WORKERS_ENCODING_PARAM: "",
        WORKERS_SHA256_PARAM: "",
        WORKERS_SCHEMA_VERSION_PARAM: WORKER_SCHEMA_VERSION,
        WORKERS_CHUNK_COUNT_PARAM: "0",
    }
    for key in worker_chunk_keys(count):
        values[key] = ""
    return values
