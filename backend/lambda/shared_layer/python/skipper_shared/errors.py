"""skipper_shared.errors — Error taxonomy shared by Lambdas and tooling."""

from __future__ import annotations

from typing import List, Optional


class SkipperError(Exception):
    """Base class for every error raised by skipper_shared."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(SkipperError, ValueError):
    """Malformed worker, trigger, payload or input value.

    ``path`` names the offending field (e.g. ``runtime.mode in review.json``).
    """

    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(message)
        self.path = path


class InvalidInput(ValidationError):
    pass


class InvalidPayload(ValidationError):
    pass


class InvalidEnvelope(ValidationError):
    pass


# ---------------------------------------------------------------------------
# Manifest transport
# ---------------------------------------------------------------------------


class IntegrityError(SkipperError):
    """Encoded manifest failed checksum, encoding or schema checks."""

    def __init__(
        self,
        message: str,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class SizeLimitError(SkipperError):
    """Encoded manifest does not fit in the transport's chunk slots."""

    def __init__(self, chunk_count: int, max_chunks: int) -> None:
        super().__init__(
            f"worker manifest too large: {chunk_count} chunks > {max_chunks}"
        )
        self.chunk_count = chunk_count
        self.max_chunks = max_chunks


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class AuthError(SkipperError):
    pass


class SecretUnavailable(AuthError):
    pass


class InvalidSignature(AuthError):
    pass


class UpstreamAuthError(AuthError):
    def __init__(self, message: str, status: int = 0) -> None:
        super().__init__(message)
        self.status = status


# ---------------------------------------------------------------------------
# Dispatch and deploy
# ---------------------------------------------------------------------------


class DispatchError(SkipperError):
    def __init__(self, message: str, worker_id: str = "") -> None:
        super().__init__(message)
        self.worker_id = worker_id


class StackDeployError(SkipperError):
    """Stack reached a failure status (or could not be operated on)."""

    def __init__(
        self,
        message: str,
        stack_name: str = "",
        status: str = "",
        summary: Optional[List[str]] = None,
    ) -> None:
        super().__init__(message)
        self.stack_name = stack_name
        self.status = status
        self.summary = list(summary or [])


class StackBusyError(StackDeployError):
    pass


class StackTimeoutError(SkipperError, TimeoutError):
    def __init__(self, stack_name: str, timeout_seconds: float, last_status: str = "") -> None:
        super().__init__(
            f"Timed out after {int(timeout_seconds)}s waiting for stack {stack_name}"
            + (f" (last_status={last_status})" if last_status else "")
        )
        self.stack_name = stack_name
        self.timeout_seconds = timeout_seconds
        self.last_status = last_status
