"""
snipgate.core.exceptions — Error taxonomy for the persistence and editing paths.

Execution problems are never raised; they come back as ExecutionResult values.
"""

from __future__ import annotations

from snipgate.utils.types import ValidationResult


class SnipgateError(Exception):
    """Base class for every error raised by snipgate."""


class InvariantViolation(SnipgateError):
    """A fragment would be saved in a state the data model forbids."""


class ValidationFailed(SnipgateError):
    """Syntax validation refused a fragment on save or import."""

    def __init__(self, result: ValidationResult):
        self.result = result
        super().__init__(result.describe())


class FragmentNotFound(SnipgateError):
    def __init__(self, ref):
        self.ref = ref
        super().__init__(f"Fragment not found: {ref!r}")


class PersistenceError(SnipgateError):
    """The store could not read or write its backing file."""
