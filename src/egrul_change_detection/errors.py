"""Error taxonomy for the change detection engine.

- ChangeDetectionError   - base class for every engine error
- InvalidSnapshotError   - snapshot misses its mandatory identity; not retryable
- DependencyError        - a collaborator (source, store, persistence) failed;
                           retryable by the caller, never retried internally
- PartialBatchFailure    - some entities of a submitted batch were not persisted
- SubmissionCancelled    - submission was cancelled while talking to persistence

PartialBatchFailure and SubmissionCancelled both carry the structured
BatchResult so the caller can retry exactly the failed entities.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from egrul_change_detection.core.batching import BatchResult


class ChangeDetectionError(Exception):
    """Base class for change detection errors."""


class InvalidSnapshotError(ChangeDetectionError):
    """Raised when a snapshot is structurally incomplete.

    Indicates upstream data corruption. The entity is skipped for the
    current cycle and the error is logged by the caller.

    Args:
        entity_id: Identifier the caller asked about (may be empty).
        reason: Human-readable description of what is missing.
    """

    def __init__(self, entity_id: str, reason: str) -> None:
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Invalid snapshot for entity '{entity_id}': {reason}")


class DependencyError(ChangeDetectionError):
    """Raised when a collaborator call fails.

    Args:
        dependency: Name of the failing collaborator (e.g. "entity_source").
        message: Failure description.
    """

    def __init__(self, dependency: str, message: str) -> None:
        self.dependency = dependency
        self.message = message
        super().__init__(f"{dependency} failed: {message}")


class PartialBatchFailure(ChangeDetectionError):
    """Raised on request when a batch was only partially persisted.

    Args:
        result: The BatchResult describing succeeded and failed entities.
    """

    def __init__(self, result: BatchResult) -> None:
        self.result = result
        failed = ", ".join(sorted(outcome.entity_id for outcome in result.failed))
        super().__init__(f"{len(result.failed)} entities failed to persist: {failed}")


class SubmissionCancelled(asyncio.CancelledError):
    """Cancellation raised from inside a batch submission.

    Subclasses CancelledError so task cancellation keeps propagating, while
    still exposing which entities were acknowledged before the cancel.

    Args:
        result: Partial BatchResult at the moment of cancellation.
    """

    def __init__(self, result: BatchResult) -> None:
        self.result = result
        super().__init__("batch submission cancelled")
