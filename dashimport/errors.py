"""
Import Engine Errors

Row-level errors are recoverable: the row is excluded and reported.
Storage failures abort the batch and roll it back.
"""

from typing import List, Optional


class ImportEngineError(Exception):
    """Base class for all import engine errors."""


# ============================================================================
# Row-level (recoverable)
# ============================================================================

class RowError(ImportEngineError):
    """A single source row could not be imported."""


class ParseError(RowError):
    """Malformed cell or row."""

    def __init__(self, message: str, column: Optional[str] = None):
        self.column = column
        if column:
            message = f"{column}: {message}"
        super().__init__(message)


class AmbiguousReferenceError(RowError):
    """A reference matched more than one canonical entity."""

    def __init__(self, entity: str, reference: str, candidates: List[str]):
        self.entity = entity
        self.reference = reference
        self.candidates = sorted(candidates)
        super().__init__(
            f"Ambiguous {entity} '{reference}': matches {', '.join(self.candidates)}"
        )


class UnresolvedReferenceError(RowError):
    """A required reference was blank or missing."""

    def __init__(self, entity: str, detail: str = "reference is blank"):
        self.entity = entity
        super().__init__(f"Missing {entity}: {detail}")


# ============================================================================
# Sheet / workbook level
# ============================================================================

class SheetDetectionError(ImportEngineError):
    """A sheet could not be matched to a known sheet type."""


class WorkbookReadError(ImportEngineError):
    """The uploaded bytes are not a readable workbook."""


# ============================================================================
# Batch level (fatal)
# ============================================================================

class FatalStorageError(ImportEngineError):
    """The persistence collaborator failed; the batch must roll back."""


class BatchStateError(ImportEngineError):
    """Illegal import batch state transition."""


class BatchInProgressError(ImportEngineError):
    """Another batch is already active for the same dataset."""

    def __init__(self, dataset_id: str):
        self.dataset_id = dataset_id
        super().__init__(f"An import is already in progress for dataset '{dataset_id}'")


class ImportCancelledError(ImportEngineError):
    """The batch was cancelled before commit."""
