"""
Error taxonomy for the rule retrieval core.

Every error carries a stable ``kind`` string so transport adapters can map
failures to their own status codes without matching on class names.
"""

from __future__ import annotations


class RuleServiceError(Exception):
    """Base exception for all rule service errors."""

    kind = "error"

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": str(self)}


class InvalidInput(RuleServiceError):
    """Malformed or out-of-range request data."""

    kind = "invalid_input"


class RuleNotFound(RuleServiceError):
    """Referenced rule does not exist."""

    kind = "rule_not_found"


class RuleTypeNotFound(RuleServiceError):
    """Referenced rule type does not exist."""

    kind = "rule_type_not_found"


class DuplicateEntry(RuleServiceError):
    """A unique constraint (rule type name) would be violated."""

    kind = "duplicate_entry"


class EmbeddingFailed(RuleServiceError):
    """The embedding provider could not produce a vector."""

    kind = "embedding_failed"

    def __init__(self, message: str, index: int | None = None) -> None:
        super().__init__(message)
        self.index = index


class DimensionMismatch(RuleServiceError):
    """Vector length disagreement between layers (configuration error)."""

    kind = "dimension_mismatch"

    def __init__(
        self,
        message: str,
        expected: int | None = None,
        actual: int | None = None,
        index: int | None = None,
    ) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual
        self.index = index


class StorageUnavailable(RuleServiceError):
    """Relational store or vector index unreachable or erroring."""

    kind = "storage_unavailable"


class OperationCancelled(RuleServiceError):
    """The caller cancelled the operation before it completed."""

    kind = "cancelled"
