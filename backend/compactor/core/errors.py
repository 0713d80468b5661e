"""Exception hierarchy for the compaction pipeline.

Every pipeline error carries the partition and the sequence range that was
being processed, so an operator can choose between a retry and a manual
repair from the log line alone.
"""

from __future__ import annotations

from typing import Any

from compactor.models.execution import PartitionKey


class CompactorError(Exception):
    """Base exception."""

    def __init__(
        self,
        message: str,
        error_code: str = "COMPACTOR_ERROR",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}


class PipelineError(CompactorError):
    """Error tied to one partition cycle."""

    def __init__(
        self,
        message: str,
        partition: PartitionKey | None = None,
        sequence_range: tuple[int, int] | None = None,
        error_code: str = "PIPELINE_ERROR",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, error_code, details)
        self.partition = partition
        self.sequence_range = sequence_range

    @property
    def kind(self) -> str:
        return self.error_code.lower()

    def __str__(self) -> str:
        parts = [f"[{self.error_code}]"]
        if self.partition is not None:
            parts.append(f"partition={self.partition}")
        if self.sequence_range is not None:
            parts.append(f"sequences={self.sequence_range[0]}..{self.sequence_range[1]}")
        parts.append(self.message)
        return " ".join(parts)


# ── Transient ────────────────────────────────────────────────────


class TransientError(PipelineError):
    """Retryable with backoff; does not affect other partitions."""


class TransientSourceError(TransientError):
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("error_code", "SOURCE_UNAVAILABLE")
        super().__init__(message, **kwargs)


class TransientDestinationError(TransientError):
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("error_code", "DESTINATION_UNAVAILABLE")
        super().__init__(message, **kwargs)


class CommitTimeoutError(TransientError):
    """Commit outcome unknown; the next attempt re-checks the watermark."""

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("error_code", "COMMIT_TIMEOUT")
        super().__init__(message, **kwargs)


class StaleBatchError(TransientError):
    """Watermark moved between fetch and commit; the batch must be re-read."""

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("error_code", "STALE_BATCH")
        super().__init__(message, **kwargs)


class LeaseLostError(TransientError):
    """Another worker holds the partition lease."""

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("error_code", "LEASE_LOST")
        super().__init__(message, **kwargs)


# ── Encoding ─────────────────────────────────────────────────────


class EncodingError(PipelineError):
    """Batch cannot be reduced or encoded; never skipped, needs an operator."""


class MalformedExecutionError(EncodingError):
    def __init__(self, message: str, sequence: int | None = None, **kwargs: Any):
        kwargs.setdefault("error_code", "MALFORMED_EXECUTION")
        super().__init__(message, **kwargs)
        self.sequence = sequence
        if sequence is not None:
            self.details["sequence"] = sequence


class PayloadEncodingError(EncodingError):
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("error_code", "PAYLOAD_ENCODING")
        super().__init__(message, **kwargs)


class BulkLoadMismatchError(EncodingError):
    """COPY reported a different row count than the payload carries."""

    def __init__(self, message: str, expected: int, loaded: int, **kwargs: Any):
        kwargs.setdefault("error_code", "BULK_LOAD_MISMATCH")
        super().__init__(message, **kwargs)
        self.expected = expected
        self.loaded = loaded
        self.details.update(expected=expected, loaded=loaded)


# ── Conflict ─────────────────────────────────────────────────────


class DuplicateAggregateError(PipelineError):
    """Destination rejected a natural key that already exists."""

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("error_code", "DUPLICATE_AGGREGATE")
        super().__init__(message, **kwargs)


class ConsistencyError(PipelineError):
    """Watermark and destination disagree; needs manual reconciliation."""

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("error_code", "CONSISTENCY")
        super().__init__(message, **kwargs)


class WatermarkRegressionError(ConsistencyError):
    def __init__(self, message: str, current: int, requested: int, **kwargs: Any):
        kwargs.setdefault("error_code", "WATERMARK_REGRESSION")
        super().__init__(message, **kwargs)
        self.current = current
        self.requested = requested
        self.details.update(current=current, requested=requested)


# ── Fatal ────────────────────────────────────────────────────────


class FatalConfigError(CompactorError):
    """Bad configuration or connectivity; halts all partitions."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, "FATAL_CONFIG", details)
